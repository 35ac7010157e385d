"""Tests for SSDP datagram formatting and parsing (ssdp_datagram.py)."""

from heos_connect import SsdpDatagram

from mock_heos_device import HEOS_REPLY


def test_search_request_wire_format():
    request = SsdpDatagram.create_search_request(
        "239.255.255.250", 1900, "urn:schemas-denon-com:device:ACT-Denon:1", 5
    )
    assert request.raw_data == (
        b"M-SEARCH * HTTP/1.1\r\n"
        b"HOST: 239.255.255.250:1900\r\n"
        b"ST: urn:schemas-denon-com:device:ACT-Denon:1\r\n"
        b"MX: 5\r\n"
        b'MAN: "ssdp:discover"\r\n'
        b"\r\n"
    )


def test_parse_reply():
    datagram = SsdpDatagram(raw_data=HEOS_REPLY)
    assert datagram.statement_line == "HTTP/1.1 200 OK"
    assert datagram.search_target == "urn:schemas-denon-com:device:ACT-Denon:1"
    assert datagram.location == "http://10.0.0.5:60006/upnp/desc/aios_device/aios_device.xml"
    assert datagram["cache-control"] == "max-age=180"
    assert len(datagram) == 4


def test_parse_formatted_request_round_trip():
    request = SsdpDatagram.create_search_request("239.255.255.250", 1900, "urn:x", 3)
    parsed = SsdpDatagram(raw_data=request.raw_data)
    assert parsed == request
    assert parsed["MAN"] == '"ssdp:discover"'


def test_headers_are_a_copy():
    datagram = SsdpDatagram(raw_data=HEOS_REPLY)
    headers = datagram.headers
    headers["ST"] = "changed"
    assert datagram.search_target == "urn:schemas-denon-com:device:ACT-Denon:1"
