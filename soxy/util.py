"""String framing helpers and local address discovery."""

from __future__ import annotations

import ipaddress
import socket
import struct
from dataclasses import dataclass
from typing import BinaryIO, Optional, Tuple

import psutil

_LEN = struct.Struct("<Q")


@dataclass(frozen=True)
class BestAddress:
    """The widest-network IPv4 and IPv6 addresses found on local interfaces."""

    cidr4: Optional[Tuple[ipaddress.IPv4Address, int]] = None
    cidr6: Optional[Tuple[ipaddress.IPv6Address, int]] = None


def _usable(ip) -> bool:
    return not (ip.is_loopback or ip.is_multicast or ip.is_unspecified)


def find_best_address() -> BestAddress:
    """Pick, per family, the non-loopback address with the shortest prefix."""
    best = {socket.AF_INET: None, socket.AF_INET6: None}

    for addresses in psutil.net_if_addrs().values():
        for addr in addresses:
            if addr.family not in best or not addr.netmask:
                continue
            try:
                ip = ipaddress.ip_address(addr.address.split("%", 1)[0])
                mask = ipaddress.ip_address(addr.netmask.split("%", 1)[0])
            except ValueError:
                continue
            if not _usable(ip) or mask.version != ip.version:
                continue
            prefix = int(mask).bit_count()
            current = best[addr.family]
            if current is None or prefix < current[1]:
                best[addr.family] = (ip, prefix)

    return BestAddress(cidr4=best[socket.AF_INET], cidr6=best[socket.AF_INET6])


def _write_all(stream: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = stream.write(view)
        if written is None:
            return
        view = view[written:]


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    parts = []
    remaining = size
    while remaining > 0:
        part = stream.read(remaining)
        if not part:
            raise EOFError(f"expected {size} bytes, got {size - remaining}")
        parts.append(part)
        remaining -= len(part)
    return b"".join(parts)


def serialize_string(stream: BinaryIO, s: str) -> None:
    """Write s as a little-endian u64 byte length followed by UTF-8 bytes."""
    encoded = s.encode("utf-8")
    _write_all(stream, _LEN.pack(len(encoded)))
    _write_all(stream, encoded)


def deserialize_string(stream: BinaryIO) -> str:
    """Read a string written by serialize_string; bad UTF-8 is replaced."""
    (size,) = _LEN.unpack(_read_exact(stream, _LEN.size))
    return _read_exact(stream, size).decode("utf-8", errors="replace")