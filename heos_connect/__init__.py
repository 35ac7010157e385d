# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package heos_connect finds HEOS network audio devices and talks to them.

HEOS devices (Denon, Marantz and others) answer SSDP-style multicast searches on
239.255.255.250:1900 for the search target "urn:schemas-denon-com:device:ACT-Denon:1",
and accept line-oriented text commands on TCP port 1255.

A session uses two TCP connections to the same device: one for commands and their
responses, and one on which the device pushes change events. Responses carry no
correlation ID, so they are matched to commands by their "group/name" key in the
order the commands were sent.

Usage:
    async with await discover_and_connect() as session:
        response = await session.send_command("player", "get_players")
        print(response.payload)
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict, HostAndPort

from .exceptions import (
    HeosError,
    DiscoveryError,
    NoDevicesFoundError,
    ConnectionClosedError,
    DeviceError,
    ProtocolError,
  )

from .ssdp_datagram import SsdpDatagram
from .discovery import HeosDiscovery, DiscoverySession, DiscoveredDevice, discover_devices
from .message import HeosCommand, HeosMessage, HeosResponse, HeosEvent, parse_message, parse_message_string
from .channel import HeosChannel
from .session import HeosSession, PendingCommand, connect, discover_and_connect
from .util import CaseInsensitiveDict
from .constants import (
    SSDP_MULTICAST_ADDRESS,
    SSDP_PORT,
    HEOS_SEARCH_TARGET,
    HEOS_PORT,
    DEFAULT_DISCOVERY_TIMEOUT_MS,
  )

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict', 'HostAndPort',
    'HeosError', 'DiscoveryError', 'NoDevicesFoundError', 'ConnectionClosedError', 'DeviceError', 'ProtocolError',
    'SsdpDatagram',
    'HeosDiscovery', 'DiscoverySession', 'DiscoveredDevice', 'discover_devices',
    'HeosCommand', 'HeosMessage', 'HeosResponse', 'HeosEvent', 'parse_message', 'parse_message_string',
    'HeosChannel',
    'HeosSession', 'PendingCommand', 'connect', 'discover_and_connect',
    'CaseInsensitiveDict',
    'SSDP_MULTICAST_ADDRESS', 'SSDP_PORT', 'HEOS_SEARCH_TARGET', 'HEOS_PORT', 'DEFAULT_DISCOVERY_TIMEOUT_MS',
]
