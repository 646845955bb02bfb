"""Network identity, interface XML and address discovery for zm."""

from __future__ import annotations

import ipaddress
import time
from typing import Callable, List, Optional, Tuple
from xml.etree.ElementTree import Element, SubElement

from zm.constants import DEFAULT_NETWORK, MAC_PREFIX
from zm.exceptions import IpNotFoundError
from zm.models import InterfaceAddress
from zm.utils import log


_WYHASH_SECRET = (0xA0761D6478BD642F, 0xE7037ED1A0B428DB, 0x8EBC6AF09C88C6E3, 0x589965CC75374CC3)
_MASK64 = (1 << 64) - 1


def _mum(a: int, b: int) -> Tuple[int, int]:
    product = a * b
    return product & _MASK64, product >> 64


def _mix(a: int, b: int) -> int:
    low, high = _mum(a, b)
    return low ^ high


def _read(data: bytes, offset: int, size: int) -> int:
    return int.from_bytes(data[offset : offset + size], "little")


def wyhash(data: bytes, seed: int = 0) -> int:
    """Final-version wyhash (as shipped in Zig's ``std.hash.Wyhash``)."""
    secret = _WYHASH_SECRET
    seed ^= _mix(seed ^ secret[0], secret[1])
    length = len(data)

    if length <= 16:
        if length >= 4:
            quarter = (length >> 3) << 2
            a = (_read(data, 0, 4) << 32) | _read(data, quarter, 4)
            b = (_read(data, length - 4, 4) << 32) | _read(data, length - 4 - quarter, 4)
        elif length > 0:
            a = (data[0] << 16) | (data[length >> 1] << 8) | data[-1]
            b = 0
        else:
            a = b = 0
    else:
        pos, remaining = 0, length
        if remaining > 48:
            see1 = see2 = seed
            while remaining > 48:
                seed = _mix(_read(data, pos, 8) ^ secret[1], _read(data, pos + 8, 8) ^ seed)
                see1 = _mix(_read(data, pos + 16, 8) ^ secret[2], _read(data, pos + 24, 8) ^ see1)
                see2 = _mix(_read(data, pos + 32, 8) ^ secret[3], _read(data, pos + 40, 8) ^ see2)
                pos += 48
                remaining -= 48
            seed ^= see1 ^ see2
        while remaining > 16:
            seed = _mix(_read(data, pos, 8) ^ secret[1], _read(data, pos + 8, 8) ^ seed)
            pos += 16
            remaining -= 16
        # The last 16 bytes may overlap the block already consumed
        a = _read(data, pos + remaining - 16, 8)
        b = _read(data, pos + remaining - 8, 8)

    a, b = _mum(a ^ secret[1], b ^ seed)
    return _mix(a ^ secret[0] ^ length, b ^ secret[1])


def identity_hash(name: str) -> int:
    """Stable 64-bit hash of a guest name.

    Wyhash with seed 0 over the UTF-8 name. Changing this breaks address
    matching for every guest already defined, so it is versioned via
    ``IDENTITY_HASH_VERSION``.
    """
    return wyhash(name.encode("utf-8"), 0)


def derive_mac(name: str) -> str:
    value = identity_hash(name)
    octets = list(MAC_PREFIX) + [(value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF]
    return ":".join(f"{octet:02x}" for octet in octets)


def instance_id(name: str) -> str:
    return f"{name}-{identity_hash(name):x}"


def render_interface_xml(mac_address: str, network: str = DEFAULT_NETWORK, model: str = "virtio") -> Element:
    """Build a libvirt <interface> bound to a virtual network."""
    iface = Element("interface", type="network")
    SubElement(iface, "mac", address=mac_address.lower())
    SubElement(iface, "source", network=network)
    SubElement(iface, "model", type=model)
    return iface


def _is_ipv4(address: str) -> bool:
    try:
        return ipaddress.ip_address(address).version == 4
    except ValueError:
        return ":" not in address


def select_address(addresses: List[InterfaceAddress], mac: str) -> Optional[str]:
    """Pick the address for ``mac``: first IPv4, else first IPv6, else None."""
    matches = [entry.ip for entry in addresses if entry.mac.lower() == mac.lower()]
    if not matches:
        return None
    for address in matches:
        if _is_ipv4(address):
            return address
    return matches[0]


def discover_address(
    hypervisor,
    guest,
    mac: str,
    max_retries: int,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Poll the hypervisor until ``mac`` reports an address.

    One query per attempt; an attempt with no interfaces (or none matching)
    just consumes a retry. Raises IpNotFoundError once ``max_retries``
    attempts are used up.
    """
    log("INFO", f"Attempting to get IP (MAC: {mac})...")
    for attempt in range(1, max_retries + 1):
        addresses = hypervisor.interface_addresses(guest)
        found = select_address(addresses, mac)
        if found is not None:
            log("DEBUG", f"Address {found} found on attempt {attempt}")
            return found
        if not addresses:
            log("DEBUG", f"No interfaces reported yet (attempt {attempt}/{max_retries})")
        if attempt < max_retries:
            sleep(interval)
    raise IpNotFoundError(f"Could not retrieve IP address for MAC {mac} after {max_retries} attempts")
