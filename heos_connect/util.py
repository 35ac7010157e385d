#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Byte-level helpers: SSDP (HTTP-over-UDP) header parsing and formatting, and
delimiter framing for HEOS stream connections.
"""

from __future__ import annotations

import re

from heos_connect.internal_types import *

from email.parser import BytesHeaderParser
from requests.structures import CaseInsensitiveDict

# Devices are not consistent about CRLF, so a bare LF is accepted as a line break
_line_break_re = re.compile(rb'\r?\n')
_blank_line_re = re.compile(rb'\r?\n\r?\n')

def split_statement_line(data: bytes) -> Tuple[str, bytes]:
    """Splits an HTTP-style message into its first line (e.g., "HTTP/1.1 200 OK") and the
       remainder (headers and optional body). The line break is not included in either part."""
    m = _line_break_re.search(data)
    if m is None:
        return (data.decode('utf-8', errors='replace'), b'')
    return (data[:m.start()].decode('utf-8', errors='replace'), data[m.end():])

def parse_http_headers(data: bytes) -> Tuple[CaseInsensitiveDict[str], bytes]:
    """Parses HTTP-style headers, without the preceding statement line.

    The headers end at the first blank line; anything after it is the body. If there is no
    blank line, the whole of `data` is headers and the body is b''. Header values are returned
    as sent; quoted values are not unquoted.

    Returns (headers, body).
    """
    m = _blank_line_re.search(data)
    if m is None:
        headers_data, body = data, b''
    else:
        headers_data, body = data[:m.start()], data[m.end():]
    headers_data = _line_break_re.sub(b'\r\n', headers_data)
    msg = BytesHeaderParser().parsebytes(headers_data)
    return (CaseInsensitiveDict(msg.items()), body)

def encode_http_header(name: str, value: str) -> bytes:
    """Encodes one "Name: value" header line, terminated with '\r\n'.

    SSDP receivers are not required to accept folded header lines, so values are never wrapped,
    and a value containing a line break is rejected with ValueError.
    """
    if '\r' in value or '\n' in value:
        raise ValueError(f"Header {name} value contains a line break: {value!r}")
    return f"{name}: {value}\r\n".encode('utf-8')

def extract_frames(buffer: bytearray, delimiter: bytes) -> List[bytes]:
    """Removes every complete delimiter-terminated frame from the front of `buffer`, in order.

    The delimiters are not included in the returned frames. Any trailing partial frame
    is left in `buffer`, which is modified in place.
    """
    frames: List[bytes] = []
    start = 0
    while True:
        i = buffer.find(delimiter, start)
        if i == -1:
            break
        frames.append(bytes(buffer[start:i]))
        start = i + len(delimiter)
    if start > 0:
        del buffer[:start]
    return frames
