#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
HeosDiscovery -- An SSDP client that can:

  1. Send an M-SEARCH request for HEOS devices to a multicast UDP address (typically 239.255.255.250:1900)
  2. Receive replies, ignoring any that do not carry the HEOS device signature
  3. Collect and return the responding devices until a maximum count is reached or a timeout expires

Each call to HeosDiscovery.discover() owns its own socket, so concurrent discoveries
do not interfere with each other.
"""

from __future__ import annotations

import asyncio
from asyncio import Future
import socket

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    SSDP_MULTICAST_ADDRESS,
    SSDP_PORT,
    HEOS_SEARCH_TARGET,
    DEFAULT_MX,
    DEFAULT_MULTICAST_TTL,
    DEFAULT_DISCOVERY_TIMEOUT_MS,
  )
from .exceptions import DiscoveryError, NoDevicesFoundError
from .ssdp_datagram import SsdpDatagram
from .util import CaseInsensitiveDict

class DiscoveredDevice:
    """The address of a device that answered a discovery request. Immutable.

    Two DiscoveredDevice instances are equal if they have the same address and port; the
    reply headers are informational only.
    """
    __slots__ = ('_address', '_port', '_headers')

    _address: str
    _port: int
    _headers: CaseInsensitiveDict[str]

    def __init__(self, address: str, port: int, headers: Optional[Mapping[str, str]]=None):
        self._address = address
        self._port = port
        self._headers = CaseInsensitiveDict() if headers is None else CaseInsensitiveDict(headers)

    @property
    def address(self) -> str:
        """The IP address the reply was sent from"""
        return self._address

    @property
    def port(self) -> int:
        """The UDP port the reply was sent from"""
        return self._port

    @property
    def headers(self) -> CaseInsensitiveDict[str]:
        """A copy of the headers of the SSDP reply (e.g., LOCATION, ST, USN)"""
        return self._headers.copy()

    @property
    def host_and_port(self) -> HostAndPort:
        return (self._address, self._port)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, DiscoveredDevice):
            return NotImplemented
        return self._address == other._address and self._port == other._port

    def __hash__(self) -> int:
        return hash((self._address, self._port))

    def __str__(self) -> str:
        return f"DiscoveredDevice(address={self._address}, port={self._port})"

    def __repr__(self) -> str:
        return str(self)

DiscoverHandler = Callable[[DiscoveredDevice], None]
"""A callback invoked once for each accepted discovery reply."""

TimeoutHandler = Callable[[List[DiscoveredDevice]], None]
"""A callback invoked with the devices collected so far when discovery times out."""

class _DiscoveryProtocol(asyncio.DatagramProtocol):
    """An adapter between the asyncio datagram transport and a DiscoverySession."""
    session: DiscoverySession

    def __init__(self, session: DiscoverySession):
        self.session = session

    def connection_made(self, transport: asyncio.BaseTransport):
        """Called when the socket is ready; sends the search request."""
        self.session.connection_made(transport) # type: ignore[arg-type]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        """Called when some datagram is received."""
        self.session.datagram_received(data, addr)

    def error_received(self, exc: Exception):
        """Called when a send or receive operation raises an OSError.

        (Other than BlockingIOError or InterruptedError.)
        """
        self.session.error_received(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        """Called when the socket is closed."""
        self.session.connection_lost(exc)

class DiscoverySession:
    """The state of a single discovery call.

    A DiscoverySession settles exactly once, on whichever of these happens first:

      1. max_devices matching replies have been received (success; on_timeout is not called)
      2. the timeout expires (on_timeout is called; success if any device was found, otherwise
         NoDevicesFoundError)
      3. the socket fails (DiscoveryError)
    """

    discovery: HeosDiscovery
    max_devices: int
    """The maximum number of devices to collect. 0 means no limit."""

    timeout_ms: float
    on_discover: Optional[DiscoverHandler]
    on_timeout: Optional[TimeoutHandler]

    devices: List[DiscoveredDevice]
    """The accepted devices, in the order their replies arrived."""

    final_result: Future[List[DiscoveredDevice]]
    transport: Optional[asyncio.DatagramTransport] = None
    _timer: Optional[asyncio.TimerHandle] = None

    def __init__(
            self,
            discovery: HeosDiscovery,
            max_devices: Optional[int]=None,
            timeout_ms: float=DEFAULT_DISCOVERY_TIMEOUT_MS,
            on_discover: Optional[DiscoverHandler]=None,
            on_timeout: Optional[TimeoutHandler]=None,
          ):
        if max_devices is not None and max_devices < 0:
            raise ValueError(f"max_devices must not be negative: {max_devices}")
        if timeout_ms < 0:
            raise ValueError(f"timeout_ms must not be negative: {timeout_ms}")
        self.discovery = discovery
        self.max_devices = 0 if max_devices is None else max_devices
        self.timeout_ms = timeout_ms
        self.on_discover = on_discover
        self.on_timeout = on_timeout
        self.devices = []
        self.final_result = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self.final_result.done()

    def start_timer(self) -> None:
        assert self._timer is None
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.timeout_ms / 1000.0, self._on_timer_expired)

    async def run(self) -> List[DiscoveredDevice]:
        """Opens the socket, sends the search request and waits for the session to settle."""
        loop = asyncio.get_running_loop()
        self.start_timer()
        try:
            sock = self.discovery.create_socket()
            try:
                await loop.create_datagram_endpoint(lambda: _DiscoveryProtocol(self), sock=sock)
            except BaseException:
                sock.close()
                raise
            return await self.final_result
        except OSError as e:
            raise DiscoveryError(f"Discovery socket failed: {e}") from e
        finally:
            self._cancel_timer()
            self._close_transport()

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        self.transport = transport
        if self.done:
            # The timer expired while the socket was being set up
            self._close_transport()
            return
        request = self.discovery.search_request
        dest = (self.discovery.multicast_address, self.discovery.multicast_port)
        logger.debug(f"Sending discovery request to {dest}: {request}")
        transport.sendto(request.raw_data, dest)

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        if self.done:
            return
        if self.discovery.signature not in data:
            logger.debug(f"Ignoring non-matching datagram from {addr}: {data!r}")
            return
        headers: Optional[CaseInsensitiveDict[str]] = None
        try:
            headers = SsdpDatagram(raw_data=data).headers
        except Exception as e:
            logger.warning(f"Error parsing discovery reply headers from {addr}, raw=[{data!r}]: {e}")
        device = DiscoveredDevice(addr[0], addr[1], headers)
        logger.debug(f"Discovered {device}")
        self.devices.append(device)
        if self.on_discover is not None:
            try:
                self.on_discover(device)
            except Exception as e:
                logger.warning(f"on_discover handler raised exception processing {device}: {e}")
        if self.max_devices > 0 and len(self.devices) >= self.max_devices:
            self._finish(early=True)

    def error_received(self, exc: Exception) -> None:
        logger.info(f"Error received from discovery socket: {exc}")
        self._fail(DiscoveryError(f"Discovery socket error: {exc}"))

    def connection_lost(self, exc: Optional[Exception]) -> None:
        logger.debug(f"Discovery socket closed, exc={exc}")
        self.transport = None
        if not self.done:
            if exc is None:
                self._fail(DiscoveryError("Discovery socket closed unexpectedly"))
            else:
                self._fail(DiscoveryError(f"Discovery socket lost: {exc}"))

    def _on_timer_expired(self) -> None:
        self._timer = None
        self._finish(early=False)

    def _finish(self, early: bool) -> None:
        if self.done:
            return
        self._close_transport()
        self._cancel_timer()
        devices = list(self.devices)
        if not early and self.on_timeout is not None:
            try:
                self.on_timeout(devices)
            except Exception as e:
                logger.warning(f"on_timeout handler raised exception: {e}")
        if len(devices) > 0:
            logger.debug(f"Discovery finished with {len(devices)} device(s), early={early}")
            self.final_result.set_result(devices)
        else:
            logger.debug("Discovery timed out without finding any devices")
            self.final_result.set_exception(NoDevicesFoundError("No devices found!"))

    def _fail(self, exc: BaseException) -> None:
        if self.done:
            return
        self._cancel_timer()
        self._close_transport()
        self.final_result.set_exception(exc)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _close_transport(self) -> None:
        transport = self.transport
        if transport is not None:
            self.transport = None
            try:
                transport.close()
            except Exception as e:
                logger.error(f"Error closing discovery transport: {e}")

class HeosDiscovery:
    """
    A HEOS device finder, configured with the SSDP multicast group and the device signature.

    Usage:
        discovery = HeosDiscovery()
        devices = await discovery.discover(max_devices=1, timeout_ms=3000)
    """

    multicast_address: str = SSDP_MULTICAST_ADDRESS
    """The multicast address to send search requests to."""

    multicast_port: int = SSDP_PORT
    """The multicast port to send search requests to."""

    search_target: str = HEOS_SEARCH_TARGET
    """The ST sent in search requests. Replies must contain this string to be accepted."""

    mx: int = DEFAULT_MX
    """The MX header value sent in search requests."""

    bind_address: str = ''
    """The local address to bind the ephemeral discovery socket to. '' means any."""

    multicast_interface: Optional[str] = None
    """The local IPv4 address of the interface to send multicasts from. None lets the OS choose."""

    multicast_ttl: int = DEFAULT_MULTICAST_TTL

    def __init__(
            self,
            multicast_address: str=SSDP_MULTICAST_ADDRESS,
            multicast_port: int=SSDP_PORT,
            search_target: str=HEOS_SEARCH_TARGET,
            mx: int=DEFAULT_MX,
            bind_address: Optional[str]=None,
            multicast_interface: Optional[str]=None,
            multicast_ttl: int=DEFAULT_MULTICAST_TTL,
          ) -> None:
        self.multicast_address = multicast_address
        self.multicast_port = multicast_port
        self.search_target = search_target
        self.mx = mx
        self.bind_address = '' if bind_address is None else bind_address
        self.multicast_interface = multicast_interface
        self.multicast_ttl = multicast_ttl

    @property
    def signature(self) -> bytes:
        """The byte string that a reply payload must contain to be accepted."""
        return self.search_target.encode('utf-8')

    @property
    def search_request(self) -> SsdpDatagram:
        return SsdpDatagram.create_search_request(
            self.multicast_address, self.multicast_port, self.search_target, self.mx)

    def create_socket(self) -> socket.socket:
        """Creates a non-blocking UDP socket bound to an ephemeral port, ready to send search requests."""
        addrinfo = socket.getaddrinfo(self.multicast_address, self.multicast_port, type=socket.SOCK_DGRAM)[0]
        address_family = addrinfo[0]
        assert address_family in (socket.AF_INET, socket.AF_INET6)
        sock = socket.socket(address_family, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if address_family == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_HOPS, self.multicast_ttl)
            else:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.multicast_ttl)
                if self.multicast_interface is not None:
                    sock.setsockopt(
                        socket.IPPROTO_IP, socket.IP_MULTICAST_IF, socket.inet_aton(self.multicast_interface))
            sock.bind((self.bind_address, 0))
            sock.setblocking(False)
            logger.debug(f"Created discovery socket bound to {sock.getsockname()}")
        except BaseException:
            sock.close()
            raise
        return sock

    async def discover(
            self,
            max_devices: Optional[int]=None,
            timeout_ms: float=DEFAULT_DISCOVERY_TIMEOUT_MS,
            on_discover: Optional[DiscoverHandler]=None,
            on_timeout: Optional[TimeoutHandler]=None,
          ) -> List[DiscoveredDevice]:
        """Discover HEOS devices on the local network.

        Stops after timeout_ms milliseconds, or as soon as max_devices devices have been found.

        Parameters:
            max_devices: The maximum number of devices to discover. None or 0 (the default) means no limit.
            timeout_ms:  The time to wait for replies, in milliseconds. Default: 5000.
            on_discover: Called with each device as it is discovered.
            on_timeout:  Called with the devices found so far if the timeout expires before
                         max_devices devices have been found.

        Returns the discovered devices in the order their replies arrived. A device that replies
        more than once appears more than once.

        Raises NoDevicesFoundError if the timeout expires without any device being found, or
        DiscoveryError if the socket fails.
        """
        session = DiscoverySession(
            self,
            max_devices=max_devices,
            timeout_ms=timeout_ms,
            on_discover=on_discover,
            on_timeout=on_timeout,
          )
        return await session.run()

    def __str__(self) -> str:
        return f"HeosDiscovery({self.multicast_address}:{self.multicast_port}, st={self.search_target})"

    def __repr__(self) -> str:
        return str(self)

async def discover_devices(
        max_devices: Optional[int]=None,
        timeout_ms: float=DEFAULT_DISCOVERY_TIMEOUT_MS,
        on_discover: Optional[DiscoverHandler]=None,
        on_timeout: Optional[TimeoutHandler]=None,
        **kwargs: Any,
      ) -> List[DiscoveredDevice]:
    """Discover HEOS devices with a HeosDiscovery constructed from kwargs. See HeosDiscovery.discover()."""
    return await HeosDiscovery(**kwargs).discover(
        max_devices=max_devices,
        timeout_ms=timeout_ms,
        on_discover=on_discover,
        on_timeout=on_timeout,
      )
