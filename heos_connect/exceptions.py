#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package"""

from __future__ import annotations

from typing import Optional

class HeosError(Exception):
  """Base class for all error exceptions defined by this package."""
  pass

class DiscoveryError(HeosError):
  """Discovery could not be completed; e.g., the UDP socket failed."""
  pass

class NoDevicesFoundError(DiscoveryError):
  """Discovery timed out without finding any devices."""
  pass

class ConnectionClosedError(HeosError):
  """A channel or session was closed (locally or by the device) before an operation completed."""
  pass

class ProtocolError(HeosError):
  """A message received from a device could not be parsed or correlated with a pending command."""
  pass

class DeviceError(HeosError):
  """A device answered a command with a failure result."""
  eid: Optional[int]
  """The HEOS error ID reported by the device, if any."""

  text: str
  """The error text reported by the device."""

  command_key: str
  """The "group/name" key of the command that failed."""

  def __init__(self, command_key: str, eid: Optional[int]=None, text: Optional[str]=None):
    self.command_key = command_key
    self.eid = eid
    self.text = "" if text is None else text
    msg = f"Device rejected command {command_key}"
    if eid is not None:
      msg += f" (eid={eid})"
    if self.text != "":
      msg += f": {self.text}"
    super().__init__(msg)
