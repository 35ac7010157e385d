#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Type hints used internally by this package"""

from __future__ import annotations

from typing import (
    Dict, List, Optional, Type, Union, Any, Tuple, Set, Callable, Awaitable,
    Iterable, Iterator, Mapping, MutableMapping, Sequence, Deque,
    AsyncContextManager, AsyncIterable, AsyncIterator, TYPE_CHECKING,
  )
from types import TracebackType
from typing_extensions import Self

HostAndPort = Tuple[str, int]
"""An (ip_address, port) tuple as used by asyncio and the socket module."""

Jsonable = Union[Dict[str, 'Jsonable'], List['Jsonable'], str, int, float, bool, None]
"""A value that can be serialized to JSON."""

JsonableDict = Dict[str, Jsonable]
"""A JSON object."""

MessageValue = Union[str, int, None]
"""A decoded value in a HEOS message string (e.g., "pid=1&state=play")."""

__all__ = [
    'Dict', 'List', 'Optional', 'Type', 'Union', 'Any', 'Tuple', 'Set', 'Callable', 'Awaitable',
    'Iterable', 'Iterator', 'Mapping', 'MutableMapping', 'Sequence', 'Deque',
    'AsyncContextManager', 'AsyncIterable', 'AsyncIterator', 'TYPE_CHECKING',
    'TracebackType', 'Self',
    'HostAndPort', 'Jsonable', 'JsonableDict', 'MessageValue',
]
