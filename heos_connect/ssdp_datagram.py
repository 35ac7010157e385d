#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Abstraction of a datagram used in SSDP discovery (M-SEARCH requests and their replies).
"""

from __future__ import annotations

from heos_connect.internal_types import *

from .util import (
    CaseInsensitiveDict,
    split_statement_line,
    parse_http_headers,
    encode_http_header,
)

class SsdpDatagram(Mapping[str, str]):
    """Wrapper for a raw SSDP datagram.

    This class provides parsing and formatting of the HTTP-like packets, and a read-only
    dict-like interface to the (case-insensitive) headers. Header values are kept as the
    raw strings sent on the wire; SSDP quotes some of them (e.g., MAN: "ssdp:discover")
    and those quotes are preserved.
    """

    _raw_data: bytes
    """The raw UDP datagram contents"""

    _statement_line: str
    """The first line of the datagram; e.g., "HTTP/1.1 200 OK", "M-SEARCH * HTTP/1.1"."""

    _headers: CaseInsensitiveDict[str]
    """The headers, in the order they appeared (or were provided)."""

    _body: bytes
    """The body of the datagram, if any. If there is no body, b'' is returned."""

    def __init__(
            self,
            statement: Optional[str]=None,
            headers: Optional[Iterable[Tuple[str, str]]]=None,
            body: Optional[bytes]=None,
            raw_data: Optional[bytes]=None,
          ):
        if raw_data is None:
            if statement is None:
                raise ValueError("Either statement or raw_data must be provided")
            self._statement_line = statement
            self._headers = CaseInsensitiveDict()
            if headers is not None:
                for name, value in headers:
                    self._headers[name] = value
            self._body = b'' if body is None else body
            self._rebuild_raw_data()
        else:
            if not (statement is None and headers is None and body is None):
                raise ValueError("If raw_data is provided, statement, headers, and body must be None")
            self._set_raw_data(raw_data)

    @classmethod
    def create_search_request(
            cls,
            multicast_address: str,
            multicast_port: int,
            search_target: str,
            mx: int,
          ) -> SsdpDatagram:
        """Creates an M-SEARCH request for devices matching `search_target`."""
        return cls(
            "M-SEARCH * HTTP/1.1",
            headers=[
                ("HOST", f"{multicast_address}:{multicast_port}"),
                ("ST", search_target),
                ("MX", str(mx)),
                ("MAN", '"ssdp:discover"'),
              ],
          )

    def __str__(self) -> str:
        return f"SsdpDatagram('{self._statement_line}', headers={dict(self._headers)}, body={self._body!r})"

    def __repr__(self) -> str:
        return str(self)

    @property
    def raw_data(self) -> bytes:
        """The raw UDP datagram contents"""
        return self._raw_data

    @property
    def statement_line(self) -> str:
        return self._statement_line

    @property
    def headers(self) -> CaseInsensitiveDict[str]:
        """A copy of the headers as a CaseInsensitiveDict[str]."""
        return self._headers.copy()

    @property
    def body(self) -> bytes:
        return self._body

    @property
    def search_target(self) -> Optional[str]:
        """The ST header of the datagram, or None if there is none."""
        return self._headers.get("ST")

    @property
    def location(self) -> Optional[str]:
        """The LOCATION header of a search reply (the device description URL), or None."""
        return self._headers.get("LOCATION")

    def __getitem__(self, key: str) -> str:
        return self._headers[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._headers)

    def __len__(self) -> int:
        return len(self._headers)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, SsdpDatagram):
            return False
        return (self._statement_line == other._statement_line and
                self._headers == other._headers and
                self._body == other._body)

    def _set_raw_data(self, value: bytes) -> None:
        self._raw_data = value
        self._statement_line, headers_and_body = split_statement_line(value)
        self._headers, self._body = parse_http_headers(headers_and_body)

    def _rebuild_raw_data(self) -> None:
        """Rebuild the raw data from the statement line, headers, and body. Header order is preserved;
           the header block is always terminated with an empty line."""
        raw_data = self._statement_line.encode('utf-8') + b'\r\n'
        for k, v in self._headers.items():
            raw_data += encode_http_header(k, v)
        raw_data += b'\r\n'
        raw_data += self._body
        self._raw_data = raw_data
