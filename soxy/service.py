"""Service descriptions, the service registry and stream copying."""

from __future__ import annotations

import logging
import socket
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from soxy.api import ApiError, Chunk
from soxy.rdp import RdpStream

logger = logging.getLogger(__name__)

LOGO = r"""
 ___   ___  __  __ _   _
/ __| / _ \ \ \/ /| | | |
\__ \| (_) | >  < | |_| |
|___/ \___/ /_/\_\ \__, |
                   |___/"""


class Kind(Enum):
    BACKEND = "backend"
    FRONTEND = "frontend"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FrontendTcp:
    """How a service accepts local TCP clients on the frontend side."""

    default_port: int
    handler: Callable[..., None]


@dataclass(frozen=True)
class Service:
    """A named service with optional frontend and backend handlers."""

    name: str
    internal: bool = False
    frontend: Optional[FrontendTcp] = None
    backend: Optional[Callable[[RdpStream], None]] = None

    def __str__(self) -> str:
        return self.name


_registry: Dict[str, Service] = {}
_registry_lock = threading.Lock()


def register(service: Service) -> Service:
    """Add a service to the registry; names must be unique."""
    with _registry_lock:
        if service.name in _registry:
            raise ValueError(f"service {service.name!r} is already registered")
        _registry[service.name] = service
    return service


def lookup(name: str) -> Optional[Service]:
    with _registry_lock:
        return _registry.get(name)


def lookup_bytes(data: bytes) -> Service:
    """Find a service by its encoded name; raises LookupError with the name."""
    name = bytes(data).decode("utf-8", errors="replace")
    service = lookup(name)
    if service is None:
        raise LookupError(name)
    return service


def services() -> Tuple[Service, ...]:
    with _registry_lock:
        return tuple(_registry.values())


def _write_all(dest: Any, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = dest.write(view)
        if written is None:
            return
        view = view[written:]


def stream_copy(source: Any, dest: Any, flush: bool) -> None:
    """Copy source into dest until end of stream, then flush dest."""
    size = 10 * Chunk.max_payload_length()
    read = getattr(source, "read1", None) or source.read
    while True:
        data = read(size)
        if not data:
            dest.flush()
            return
        _write_all(dest, data)
        if flush:
            dest.flush()
        time.sleep(0)


class _SocketReader:
    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def read(self, size: int) -> bytes:
        return self._sock.recv(size)


class _SocketWriter:
    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def flush(self) -> None:
        pass


def _shutdown(sock: socket.socket) -> None:
    with suppress(OSError):
        sock.shutdown(socket.SHUT_RDWR)


def double_stream_copy(
    service_kind: Kind,
    service: Service,
    rdp_stream: RdpStream,
    sock: socket.socket,
    flush: bool,
) -> None:
    """Relay both directions between an RDP stream and a socket until both end."""
    client_id = rdp_stream.client_id
    reader, writer = rdp_stream.split()

    def rdp_to_socket() -> None:
        try:
            stream_copy(reader, _SocketWriter(sock), flush)
        except (OSError, ApiError) as exc:
            logger.debug("error: %s", exc)
        else:
            logger.debug("stopped")
        finally:
            reader.close()
            _shutdown(sock)

    thread = threading.Thread(
        target=rdp_to_socket,
        name=f"{service_kind} {service} {client_id:x} stream copy",
        daemon=True,
    )
    thread.start()

    try:
        stream_copy(_SocketReader(sock), writer, flush)
    except (OSError, ApiError) as exc:
        logger.debug("error: %s", exc)
    else:
        logger.debug("stopped")
    finally:
        writer.close()
        _shutdown(sock)

    thread.join()