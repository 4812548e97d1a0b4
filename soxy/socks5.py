"""SOCKS5 proxy service: client handshake, wire protocol, backend and frontend."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO, Tuple, Union

from soxy.logs import TRACE
from soxy.service import FrontendTcp, Kind, Service, double_stream_copy
from soxy.util import deserialize_string, find_best_address, serialize_string

logger = logging.getLogger(__name__)

VERSION = 0x05
AUTHENTICATION_NONE = 0x00

_ID_CMD_CONNECT = 0xC1
_ID_CMD_BIND = 0xC2

_RSP_OK = 0x00
_RSP_GENERAL_SOCKS_SERVER_FAILURE = 0x01
_RSP_NETWORK_UNREACHABLE = 0x03
_RSP_HOST_UNREACHABLE = 0x04
_RSP_CONNECTION_REFUSED = 0x05
_RSP_COMMAND_NOT_SUPPORTED = 0x07
_RSP_ADDRESS_TYPE_NOT_SUPPORTED = 0x08

_ATYP_IPV4 = 0x01
_ATYP_DOMAIN = 0x03
_ATYP_IPV6 = 0x04

_LEN = struct.Struct("<I")


def _failure_reply(code: int) -> bytes:
    return bytes([VERSION, code, 0x00, _ATYP_IPV4, 0, 0, 0, 0, 0, 0])


class Socks5Error(Exception):
    """A SOCKS5 client sent something this server does not support."""

    def __init__(self, value: int, message: str) -> None:
        self.value = value
        super().__init__(message)


class UnsupportedVersion(Socks5Error):
    def __init__(self, value: int) -> None:
        super().__init__(value, f"unsupported version {value}")


class UnsupportedAuthentication(Socks5Error):
    def __init__(self, value: int) -> None:
        super().__init__(value, f"unsupported authentication {value}")


class UnsupportedCommand(Socks5Error):
    def __init__(self, value: int) -> None:
        super().__init__(value, f"unsupported command {value}")


class AddressTypeNotSupported(Socks5Error):
    def __init__(self, value: int) -> None:
        super().__init__(value, f"address type not supported {value}")


def _read_exact(reader: Any, size: int) -> bytes:
    parts = []
    remaining = size
    while remaining > 0:
        part = reader.read(remaining)
        if not part:
            raise EOFError(f"expected {size} bytes, got {size - remaining}")
        parts.append(part)
        remaining -= len(part)
    return b"".join(parts)


class _SocketIO:
    """Unbuffered file-like view of a socket, so nothing is read ahead."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def read(self, size: int) -> bytes:
        return self._sock.recv(size)

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def flush(self) -> None:
        pass


@dataclass(frozen=True)
class Connect:
    """Ask the backend to connect to a "host:port" destination."""

    destination: str

    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_CMD_CONNECT]))
        serialize_string(stream, self.destination)
        stream.flush()


@dataclass(frozen=True)
class Bind:
    """Ask the backend to listen and relay the first incoming connection."""

    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_CMD_BIND]))
        stream.flush()


Command = Union[Connect, Bind]


def read_command(reader: Any) -> Command:
    """Read a SOCKS5 request sent by a client after the greeting."""
    header = _read_exact(reader, 4)

    if header[0] != VERSION:
        raise UnsupportedVersion(header[0])

    address_type = header[3]
    if address_type == _ATYP_IPV4:
        ip = ipaddress.IPv4Address(_read_exact(reader, 4))
        (port,) = struct.unpack(">H", _read_exact(reader, 2))
        destination = f"{ip}:{port}"
    elif address_type == _ATYP_DOMAIN:
        size = _read_exact(reader, 1)[0]
        name = _read_exact(reader, size).decode("utf-8", errors="replace")
        (port,) = struct.unpack(">H", _read_exact(reader, 2))
        destination = f"{name}:{port}"
    elif address_type == _ATYP_IPV6:
        ip = ipaddress.IPv6Address(_read_exact(reader, 16))
        (port,) = struct.unpack(">H", _read_exact(reader, 2))
        destination = f"{ip}:{port}"
    else:
        raise AddressTypeNotSupported(address_type)

    logger.info("connect to %s", destination)
    logger.log(TRACE, "READ %r", header)

    command = header[1]
    if command == 0x01:
        return Connect(destination)
    if command == 0x02:
        return Bind()
    raise UnsupportedCommand(command)


def receive_command(stream: BinaryIO) -> Command:
    """Read a command sent over the virtual channel."""
    ident = _read_exact(stream, 1)[0]
    if ident == _ID_CMD_CONNECT:
        return Connect(deserialize_string(stream))
    if ident == _ID_CMD_BIND:
        return Bind()
    raise ValueError(f"unsupported socks command {ident}")


class ResponseKind(Enum):
    OK = 0xD0
    NETWORK_UNREACHABLE = 0xD1
    HOST_UNREACHABLE = 0xD2
    CONNECTION_REFUSED = 0xD3
    BIND_FAILED = 0xD4


_REPLY_CODES = {
    ResponseKind.NETWORK_UNREACHABLE: _RSP_NETWORK_UNREACHABLE,
    ResponseKind.HOST_UNREACHABLE: _RSP_HOST_UNREACHABLE,
    ResponseKind.CONNECTION_REFUSED: _RSP_CONNECTION_REFUSED,
    ResponseKind.BIND_FAILED: _RSP_GENERAL_SOCKS_SERVER_FAILURE,
}


@dataclass(frozen=True)
class Response:
    """Outcome of a backend operation; OK carries an encoded address."""

    kind: ResponseKind
    data: bytes = b""

    def is_ok(self) -> bool:
        return self.kind is ResponseKind.OK

    def answer_to_client(self, writer: Any) -> None:
        """Write the matching SOCKS5 reply to the client."""
        if self.is_ok():
            writer.write(bytes([VERSION, _RSP_OK, 0x00]))
            writer.write(self.data)
        else:
            writer.write(_failure_reply(_REPLY_CODES[self.kind]))
        writer.flush()

    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([self.kind.value]))
        if self.is_ok():
            if len(self.data) > 0xFFFFFFFF:
                raise ValueError("response data is too large")
            stream.write(_LEN.pack(len(self.data)))
            stream.write(self.data)
        stream.flush()

    @classmethod
    def receive(cls, stream: BinaryIO) -> Response:
        code = _read_exact(stream, 1)[0]
        try:
            kind = ResponseKind(code)
        except ValueError:
            raise ValueError(f"unsupported socks response {code}") from None
        if kind is ResponseKind.OK:
            (size,) = _LEN.unpack(_read_exact(stream, _LEN.size))
            return cls(kind, _read_exact(stream, size))
        return cls(kind)


def encode_addr(host: Any, port: int) -> bytes:
    """Encode an address the way a SOCKS5 reply carries it."""
    ip = ipaddress.ip_address(str(host).split("%", 1)[0])
    address_type = _ATYP_IPV4 if ip.version == 4 else _ATYP_IPV6
    return bytes([address_type]) + ip.packed + struct.pack(">H", port)


def handshake(sock: socket.socket) -> Command:
    """Negotiate no authentication with a client and read its request."""
    io = _SocketIO(sock)
    version, nb_auth = _read_exact(io, 2)
    if version != VERSION:
        raise UnsupportedVersion(version)

    methods = _read_exact(io, nb_auth)
    if AUTHENTICATION_NONE not in methods:
        raise UnsupportedAuthentication(AUTHENTICATION_NONE)

    io.write(bytes([VERSION, AUTHENTICATION_NONE]))
    return read_command(io)


def _split_destination(destination: str) -> Tuple[str, int]:
    host, sep, port = destination.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError("invalid socket address")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    value = int(port)
    if value > 0xFFFF:
        raise ValueError("invalid port value")
    return host, value


def _sockname(sock: socket.socket) -> bytes:
    host, port = sock.getsockname()[:2]
    return encode_addr(host, port)


def _command_connect(stream: Any, destination: str) -> None:
    logger.info("connecting to %r", destination)
    try:
        server = socket.create_connection(_split_destination(destination))
    except (ConnectionAbortedError, TimeoutError) as exc:
        logger.error("failed to connect to %r: %s", destination, exc)
        Response(ResponseKind.HOST_UNREACHABLE).send(stream)
        return
    except ConnectionRefusedError as exc:
        logger.error("failed to connect to %r: %s", destination, exc)
        Response(ResponseKind.CONNECTION_REFUSED).send(stream)
        return
    except (OSError, ValueError) as exc:
        logger.error("failed to connect to %r: %s", destination, exc)
        Response(ResponseKind.NETWORK_UNREACHABLE).send(stream)
        return

    with server:
        logger.debug("connected to %r", destination)
        Response(ResponseKind.OK, _sockname(server)).send(stream)
        logger.debug("starting stream copy")
        double_stream_copy(Kind.BACKEND, SERVICE, stream, server, True)


def _command_bind(stream: Any) -> None:
    try:
        best = find_best_address()
    except Exception as exc:  # interface enumeration failures of any kind
        logger.error("failed to enumerate network interfaces: %s", exc)
        Response(ResponseKind.NETWORK_UNREACHABLE).send(stream)
        return

    chosen = best.cidr4 or best.cidr6
    if chosen is None:
        logger.error("failed to find a suitable network interfaces")
        Response(ResponseKind.NETWORK_UNREACHABLE).send(stream)
        return

    ip = chosen[0]
    family = socket.AF_INET if ip.version == 4 else socket.AF_INET6
    logger.info("binding to %s", ip)
    try:
        listener = socket.create_server((str(ip), 0), family=family)
    except OSError as exc:
        logger.error("failed to bind to %s: %s", ip, exc)
        Response(ResponseKind.BIND_FAILED).send(stream)
        return

    with listener:
        Response(ResponseKind.OK, _sockname(listener)).send(stream)
        try:
            client, client_addr = listener.accept()
        except OSError as exc:
            logger.error("failed to accept on %s: %s", ip, exc)
            Response(ResponseKind.BIND_FAILED).send(stream)
            return

    with client:
        Response(ResponseKind.OK, encode_addr(client_addr[0], client_addr[1])).send(stream)
        logger.debug("starting stream copy")
        double_stream_copy(Kind.BACKEND, SERVICE, stream, client, True)


def backend_handler(stream: Any) -> None:
    """Serve one SOCKS command received over the virtual channel."""
    logger.debug("starting")
    command = receive_command(stream)
    if isinstance(command, Connect):
        _command_connect(stream, command.destination)
    else:
        _command_bind(stream)


def _relay_responses(client: socket.socket, rdp: Any, count: int) -> bool:
    writer = _SocketIO(client)
    for _ in range(count):
        response = Response.receive(rdp)
        response.answer_to_client(writer)
        if not response.is_ok():
            return False
    return True


def tcp_handler(server: Any, client: socket.socket, channel: Any) -> None:
    """Serve a local SOCKS5 client through the remote backend."""
    try:
        command = handshake(client)
    except (UnsupportedVersion, UnsupportedAuthentication):
        client.sendall(bytes([VERSION, 0xFF]))
        return
    except UnsupportedCommand:
        client.sendall(_failure_reply(_RSP_COMMAND_NOT_SUPPORTED))
        return
    except AddressTypeNotSupported:
        client.sendall(_failure_reply(_RSP_ADDRESS_TYPE_NOT_SUPPORTED))
        return

    with channel.connect(SERVICE) as rdp:
        command.send(rdp)
        # a bind answers once when listening and once when a peer connects
        expected = 1 if isinstance(command, Connect) else 2
        if not _relay_responses(client, rdp, expected):
            return
        logger.debug("starting stream copy")
        double_stream_copy(Kind.FRONTEND, SERVICE, rdp, client, True)


SERVICE = Service(
    name="socks5",
    internal=False,
    frontend=FrontendTcp(default_port=1080, handler=tcp_handler),
    backend=backend_handler,
)