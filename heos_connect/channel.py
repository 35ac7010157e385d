#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
HeosChannel -- one persistent TCP connection to a HEOS device that:

  1. Splits the inbound byte stream into '\r\n'-terminated text frames and delivers
     them, one at a time and in order, to a message handler
  2. Writes outbound frames (fire-and-forget; matching replies is the session's job)
  3. Reports the end of the connection (EOF, socket error, or local close) exactly once
     to a closed handler. The channel never reconnects.
"""

from __future__ import annotations

import asyncio
from asyncio import Future

from .internal_types import *
from .pkg_logging import logger
from .constants import FRAME_DELIMITER
from .exceptions import ConnectionClosedError
from .util import extract_frames

MessageHandler = Callable[[str], None]
"""A callback that receives each complete frame, without its delimiter."""

ClosedHandler = Callable[[Optional[BaseException]], None]
"""A callback that is invoked once when the channel is closed. The argument is the
   exception that caused the close, or None for EOF or a local close."""

class HeosChannel(asyncio.Protocol):
    name: str
    """The name of the channel as it should be displayed in logs, etc"""

    on_message: MessageHandler
    on_closed: Optional[ClosedHandler]

    transport: Optional[asyncio.Transport] = None

    final_result: Future[None]
    """A future that is set when the connection has been lost or closed."""

    _buffer: bytearray
    """Bytes received but not yet terminated by a delimiter."""

    _closed: bool = False

    def __init__(self, on_message: MessageHandler, on_closed: Optional[ClosedHandler]=None, name: str="channel"):
        self.on_message = on_message
        self.on_closed = on_closed
        self.name = name
        self._buffer = bytearray()
        self.final_result = asyncio.get_running_loop().create_future()

    @classmethod
    async def open(
            cls,
            host: str,
            port: int,
            on_message: MessageHandler,
            on_closed: Optional[ClosedHandler]=None,
            name: Optional[str]=None,
            connect_timeout: Optional[float]=None,
          ) -> Self:
        """Connects to host:port and returns the connected channel."""
        loop = asyncio.get_running_loop()
        channel_name = f"{host}:{port}" if name is None else name
        logger.debug(f"Connecting channel {channel_name} to {host}:{port}")
        _, protocol = await asyncio.wait_for(
            loop.create_connection(lambda: cls(on_message, on_closed, name=channel_name), host, port),
            connect_timeout
          )
        assert isinstance(protocol, cls)
        return protocol

    @property
    def is_closed(self) -> bool:
        return self._closed

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        """Called when the connection is established."""
        assert self.transport is None
        self.transport = transport # type: ignore[assignment]
        logger.info(f"Channel {self.name} connected")

    def data_received(self, data: bytes) -> None:
        """Called when some bytes are received; delivers every frame they complete."""
        if self._closed:
            return
        self._buffer.extend(data)
        for frame in extract_frames(self._buffer, FRAME_DELIMITER):
            if self._closed:
                break
            if len(frame) == 0:
                continue
            text = frame.decode('utf-8', errors='replace')
            logger.debug(f"Channel {self.name} received: {text}")
            try:
                self.on_message(text)
            except Exception as e:
                logger.warning(f"Channel {self.name}: message handler raised exception processing {text!r}: {e}")

    def eof_received(self) -> Optional[bool]:
        """Called when the device closes its end of the connection."""
        logger.debug(f"Channel {self.name}: EOF received")
        # Returning a false value lets the transport close itself
        return None

    def connection_lost(self, exc: Optional[Exception]) -> None:
        """Called when the connection is lost or closed."""
        if exc is None:
            logger.info(f"Channel {self.name} closed")
        else:
            logger.info(f"Channel {self.name} lost: {exc}")
        self.transport = None
        self._set_closed(exc)

    def send(self, text: str) -> None:
        """Writes one frame. Raises ConnectionClosedError if the channel is closed."""
        transport = self.transport
        if self._closed or transport is None or transport.is_closing():
            raise ConnectionClosedError(f"Channel {self.name} is closed")
        logger.debug(f"Channel {self.name} sending: {text}")
        transport.write(text.encode('utf-8') + FRAME_DELIMITER)

    def close(self) -> None:
        """Closes the channel. The closed handler is invoked once the transport is gone."""
        transport = self.transport
        if transport is not None and not transport.is_closing():
            logger.debug(f"Closing channel {self.name}")
            transport.close()

    async def wait_closed(self) -> None:
        await asyncio.shield(self.final_result)

    async def close_and_wait(self) -> None:
        self.close()
        await self.wait_closed()

    def _set_closed(self, exc: Optional[BaseException]) -> None:
        if self._closed:
            return
        self._closed = True
        if len(self._buffer) > 0:
            logger.warning(f"Channel {self.name}: discarding partial frame at close: {bytes(self._buffer)!r}")
            self._buffer.clear()
        if not self.final_result.done():
            self.final_result.set_result(None)
        if self.on_closed is not None:
            try:
                self.on_closed(exc)
            except Exception as e:
                logger.warning(f"Channel {self.name}: closed handler raised exception: {e}")

    def __str__(self) -> str:
        return f"HeosChannel({self.name})"

    def __repr__(self) -> str:
        return str(self)
