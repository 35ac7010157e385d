#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Enumeration of local IPv4 interfaces, for choosing the interface that discovery
multicasts are sent from on multi-homed hosts (HeosDiscovery(multicast_interface=...)).
"""

from __future__ import annotations

import netifaces
from ipaddress import IPv4Address

from heos_connect.internal_types import *

def get_default_gateway_interface() -> Optional[str]:
    """Returns the name of the interface that carries the default IPv4 route, or None."""
    default_gateways = netifaces.gateways().get("default", {})
    if netifaces.AF_INET in default_gateways:
        return default_gateways[netifaces.AF_INET][1]
    return None

def get_local_ip_addresses_and_interfaces(include_loopback: bool=True) -> List[Tuple[str, str]]:
    """Returns a list of (ip_address, interface_name) for the local IPv4 addresses, best candidates first:

           1. Addresses on the default gateway interface.
           2. Other non-loopback addresses, with 172.* (usually docker bridges) last.
           3. Loopback addresses, if include_loopback is True.
    """
    gateway_ifname = get_default_gateway_interface()
    candidates: List[Tuple[int, str, str]] = []
    for ifname in netifaces.interfaces():
        for addrinfo in netifaces.ifaddresses(ifname).get(netifaces.AF_INET, []):
            ip_str: str = addrinfo['addr']
            if IPv4Address(ip_str).is_loopback:
                if not include_loopback:
                    continue
                priority = 3
            elif ifname == gateway_ifname:
                priority = 0
            elif ip_str.startswith('172.'):
                priority = 2
            else:
                priority = 1
            candidates.append((priority, ip_str, ifname))
    return [ (ip, ifname) for _, ip, ifname in sorted(candidates) ]
