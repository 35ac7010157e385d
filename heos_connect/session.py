#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
HeosSession -- a connection to one HEOS device, made of two HeosChannels:

  1. A command channel carrying commands and their responses. Because the protocol has no
     correlation ID, each response is matched to the oldest outstanding command with the
     same "group/name" key.
  2. An event channel on which the device pushes change events, which are delivered to
     registered event handlers.

A failure of either channel, or an explicit close(), ends the session: every outstanding
command fails with ConnectionClosedError and no further events are delivered. The session
does not reconnect; callers that want to retry open a new session.
"""

from __future__ import annotations

import asyncio
from asyncio import Future
from collections import deque

from .internal_types import *
from .pkg_logging import logger
from .constants import HEOS_PORT
from .exceptions import ConnectionClosedError, DeviceError, ProtocolError
from .channel import HeosChannel
from .message import HeosCommand, HeosResponse, HeosEvent, parse_message
from .discovery import DiscoveredDevice, HeosDiscovery

EventHandler = Callable[[HeosEvent], None]
"""A callback for events pushed by the device."""

ProtocolErrorHandler = Callable[[ProtocolError], None]
"""A callback for messages that could not be parsed or matched to a command."""

class PendingCommand:
    """A command that has been sent and is waiting for its response."""
    command: HeosCommand
    registration_order: int
    """A session-wide sequence number, increasing in the order commands were sent"""

    future: Future[HeosResponse]

    def __init__(self, command: HeosCommand, registration_order: int, future: Future[HeosResponse]):
        self.command = command
        self.registration_order = registration_order
        self.future = future

    @property
    def command_key(self) -> str:
        return self.command.command_key

    def __str__(self) -> str:
        return f"PendingCommand({self.registration_order}: {self.command.text})"

    def __repr__(self) -> str:
        return str(self)

class HeosSession(AsyncContextManager['HeosSession']):
    host: str
    command_port: int
    event_port: int
    connect_timeout: Optional[float]

    command_channel: Optional[HeosChannel] = None
    event_channel: Optional[HeosChannel] = None

    pending_commands: Dict[str, Deque[PendingCommand]]
    """Outstanding commands, in send order, indexed by command key."""

    event_handlers: Dict[int, EventHandler]
    """Registered event handlers, indexed by ID number. Handlers are called in registration order."""

    i_next_event_handler: int = 0
    i_next_registration: int = 0

    protocol_error_count: int = 0
    """The number of messages that could not be parsed or matched to a pending command."""

    on_protocol_error: Optional[ProtocolErrorHandler] = None

    final_result: Future[None]
    """A future that is set when the session has been torn down."""

    _closed: bool = False

    def __init__(
            self,
            host: str,
            command_port: int=HEOS_PORT,
            event_port: Optional[int]=None,
            connect_timeout: Optional[float]=None,
            on_protocol_error: Optional[ProtocolErrorHandler]=None,
          ):
        self.host = host
        self.command_port = command_port
        self.event_port = command_port if event_port is None else event_port
        self.connect_timeout = connect_timeout
        self.on_protocol_error = on_protocol_error
        self.pending_commands = {}
        self.event_handlers = {}
        self.final_result = asyncio.get_running_loop().create_future()

    @classmethod
    async def connect(
            cls,
            device: Union[DiscoveredDevice, str],
            command_port: int=HEOS_PORT,
            event_port: Optional[int]=None,
            register_for_events: bool=True,
            connect_timeout: Optional[float]=None,
            on_protocol_error: Optional[ProtocolErrorHandler]=None,
          ) -> Self:
        """Opens the command and event channels to a device and returns the session once both
           are established.

        Parameters:
            device:              A DiscoveredDevice or a host name/IP address.
            command_port:        The TCP port of the command channel. Default: 1255.
            event_port:          The TCP port of the event channel. Default: same as command_port.
            register_for_events: If True (the default), ask the device to push change events
                                 on the event channel.
            connect_timeout:     Timeout (in seconds) for establishing each channel. Default: none.
            on_protocol_error:   Called with a ProtocolError for each message that cannot be parsed
                                 or matched to a command.
        """
        host = device.address if isinstance(device, DiscoveredDevice) else device
        self = cls(
            host,
            command_port=command_port,
            event_port=event_port,
            connect_timeout=connect_timeout,
            on_protocol_error=on_protocol_error,
          )
        try:
            await self.open(register_for_events=register_for_events)
        except BaseException as e:
            logger.info(f"{self}: connection failed: {e}")
            await self.close()
            raise
        return self

    async def open(self, register_for_events: bool=True) -> None:
        assert self.command_channel is None and self.event_channel is None
        logger.debug(f"Connecting: {self}")
        self.command_channel = await HeosChannel.open(
            self.host,
            self.command_port,
            self._on_command_message,
            self._on_channel_closed,
            name=f"{self.host}:{self.command_port}/command",
            connect_timeout=self.connect_timeout,
          )
        self.event_channel = await HeosChannel.open(
            self.host,
            self.event_port,
            self._on_event_message,
            self._on_channel_closed,
            name=f"{self.host}:{self.event_port}/event",
            connect_timeout=self.connect_timeout,
          )
        if self._closed:
            # Teardown ran while the event channel was connecting and could not close it
            self.event_channel.close()
            raise ConnectionClosedError(f"{self}: closed while connecting")
        if register_for_events:
            command = HeosCommand("system", "register_for_change_events", { "enable": "on" })
            self.event_channel.send(command.text)
        logger.info(f"{self} connected")

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def send_command(self, group: str, name: str, params: Optional[Mapping[str, Any]]=None) -> HeosResponse:
        """Sends a command on the command channel and waits for its response.

        Returns the HeosResponse, which is a mapping over the decoded response message
        (e.g., {"pid": 1, "state": "play"}) and carries any payload and options.

        Raises DeviceError if the device reports that the command failed, or
        ConnectionClosedError if the session is closed before the response arrives.
        """
        command = HeosCommand(group, name, params)
        return await self.command(command)

    async def command(self, command: HeosCommand) -> HeosResponse:
        if self._closed or self.command_channel is None:
            raise ConnectionClosedError(f"{self} is closed")
        pending = PendingCommand(command, self.i_next_registration, asyncio.get_running_loop().create_future())
        self.i_next_registration += 1
        queue = self.pending_commands.setdefault(command.command_key, deque())
        queue.append(pending)
        try:
            self.command_channel.send(command.text)
        except BaseException:
            queue.remove(pending)
            if len(queue) == 0:
                self.pending_commands.pop(command.command_key, None)
            raise
        return await pending.future

    def add_event_handler(self, handler: EventHandler) -> int:
        """Adds a handler to be called, in registration order, for each event pushed by the device.
           Returns an ID that can be passed to remove_event_handler()."""
        i = self.i_next_event_handler
        self.i_next_event_handler += 1
        self.event_handlers[i] = handler
        return i

    def remove_event_handler(self, i: int) -> None:
        """Removes a previously added event handler."""
        del self.event_handlers[i]

    def _report_protocol_error(self, error: ProtocolError) -> None:
        self.protocol_error_count += 1
        logger.warning(f"{self}: {error}")
        if self.on_protocol_error is not None:
            try:
                self.on_protocol_error(error)
            except Exception as e:
                logger.warning(f"{self}: protocol error handler raised exception: {e}")

    def _on_command_message(self, frame: str) -> None:
        if self._closed:
            return
        try:
            message = parse_message(frame)
        except ProtocolError as e:
            self._report_protocol_error(e)
            return
        if not isinstance(message, HeosResponse):
            logger.debug(f"{self}: ignoring event received on command channel: {message}")
            return
        if message.is_under_process:
            logger.debug(f"{self}: command {message.command_key} is under process")
            return
        queue = self.pending_commands.get(message.command_key)
        if queue is None or len(queue) == 0:
            self._report_protocol_error(ProtocolError(f"Response with no pending command: {frame!r}"))
            return
        pending = queue.popleft()
        if len(queue) == 0:
            del self.pending_commands[message.command_key]
        if pending.future.done():
            logger.debug(f"{self}: discarding response for abandoned {pending}")
            return
        if message.is_error:
            pending.future.set_exception(DeviceError(message.command_key, message.error_id, message.error_text))
        else:
            pending.future.set_result(message)

    def _on_event_message(self, frame: str) -> None:
        if self._closed:
            return
        try:
            message = parse_message(frame)
        except ProtocolError as e:
            self._report_protocol_error(e)
            return
        if not isinstance(message, HeosEvent):
            if isinstance(message, HeosResponse) and message.is_error:
                logger.warning(f"{self}: device rejected request on event channel: {message}")
            else:
                logger.debug(f"{self}: ignoring non-event message on event channel: {message}")
            return
        self._dispatch_event(message)

    def _dispatch_event(self, event: HeosEvent) -> None:
        for handler in list(self.event_handlers.values()):
            if self._closed:
                break
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"{self}: event handler raised exception processing {event}: {e}")

    def _on_channel_closed(self, exc: Optional[BaseException]) -> None:
        if self._closed:
            return
        reason = "closed by device" if exc is None else f"lost: {exc}"
        logger.info(f"{self}: channel {reason}; closing session")
        self._teardown(f"Connection {reason}")

    def _teardown(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self.event_handlers.clear()
        pending_commands = sorted(
            (pending for queue in self.pending_commands.values() for pending in queue),
            key=lambda pending: pending.registration_order
          )
        self.pending_commands.clear()
        for pending in pending_commands:
            if not pending.future.done():
                pending.future.set_exception(ConnectionClosedError(f"{reason}: {pending.command.text}"))
        for channel in (self.command_channel, self.event_channel):
            if channel is not None:
                channel.close()
        if not self.final_result.done():
            self.final_result.set_result(None)

    async def close(self) -> None:
        """Closes both channels and fails all outstanding commands with ConnectionClosedError."""
        self._teardown("Session closed")
        for channel in (self.command_channel, self.event_channel):
            if channel is not None:
                channel.close()
        await self.wait_closed()

    async def wait_closed(self) -> None:
        """Waits until the session has been torn down and both channels are closed."""
        await asyncio.shield(self.final_result)
        for channel in (self.command_channel, self.event_channel):
            if channel is not None:
                await channel.wait_closed()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.close()
        return False

    def __str__(self) -> str:
        return f"HeosSession(host={self.host}, command_port={self.command_port}, event_port={self.event_port})"

    def __repr__(self) -> str:
        return str(self)

async def connect(device: Union[DiscoveredDevice, str], **kwargs: Any) -> HeosSession:
    """Opens a HeosSession to a device. See HeosSession.connect()."""
    return await HeosSession.connect(device, **kwargs)

async def discover_and_connect(
        discovery: Optional[HeosDiscovery]=None,
        timeout_ms: Optional[float]=None,
        **kwargs: Any
      ) -> HeosSession:
    """Discovers HEOS devices, stopping at the first one found, and connects to it.

    kwargs are passed to HeosSession.connect(). Raises NoDevicesFoundError if no device answers.
    """
    if discovery is None:
        discovery = HeosDiscovery()
    if timeout_ms is None:
        devices = await discovery.discover(max_devices=1)
    else:
        devices = await discovery.discover(max_devices=1, timeout_ms=timeout_ms)
    return await HeosSession.connect(devices[0], **kwargs)
