# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package"""

SSDP_MULTICAST_ADDRESS = "239.255.255.250"
"""The multicast address used by SSDP for UDP multicast."""

SSDP_PORT = 1900
"""The port number used by SSDP for UDP multicast."""

HEOS_SEARCH_TARGET = "urn:schemas-denon-com:device:ACT-Denon:1"
"""The SSDP search target (ST) of HEOS devices. Replies that do not contain this
   string are not HEOS devices and are ignored."""

DEFAULT_MX = 5
"""The default MX (maximum wait, in seconds) header sent in an M-SEARCH request."""

DEFAULT_MULTICAST_TTL = 2
"""The default IP multicast TTL for discovery requests."""

DEFAULT_DISCOVERY_TIMEOUT_MS = 5000
"""The default amount of time (in milliseconds) to wait for discovery replies."""

HEOS_PORT = 1255
"""The TCP port on which HEOS devices accept command and event connections."""

HEOS_URL_SCHEME = "heos://"
"""The prefix of every HEOS command."""

FRAME_DELIMITER = b'\r\n'
"""The byte sequence that terminates every HEOS message on a stream connection."""

EVENT_GROUP = "event"
"""The command group used by device-initiated event messages."""

COMMAND_UNDER_PROCESS = "command under process"
"""The message text of an interim response, which is followed later by the real response."""
