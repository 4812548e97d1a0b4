"""Port forwarding service: wire protocol, backend handler and TCP frontend."""

from __future__ import annotations

import logging
import socket
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, BinaryIO, Tuple, Union

from soxy.service import FrontendTcp, Kind, Service, double_stream_copy
from soxy.util import deserialize_string, serialize_string

logger = logging.getLogger(__name__)

_ID_COMMAND_CONNECT = 0xF1

_ID_RESPONSE_CONNECTED = 0xE0
_ID_RESPONSE_ERROR = 0xE1


def _read_id(stream: BinaryIO) -> int:
    data = stream.read(1)
    if not data:
        raise EOFError("stream closed")
    return data[0]


@dataclass(frozen=True)
class ConnectCommand:
    """Ask the backend to connect to a "host:port" destination."""

    destination: str

    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_COMMAND_CONNECT]))
        serialize_string(stream, self.destination)
        stream.flush()


def receive_command(stream: BinaryIO) -> ConnectCommand:
    ident = _read_id(stream)
    if ident == _ID_COMMAND_CONNECT:
        return ConnectCommand(deserialize_string(stream))
    raise ValueError("invalid command")


@dataclass(frozen=True)
class ConnectedResponse:
    """The backend reached the destination."""

    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_RESPONSE_CONNECTED]))
        stream.flush()


@dataclass(frozen=True)
class ErrorResponse:
    """The backend failed to reach the destination."""

    message: str

    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_RESPONSE_ERROR]))
        serialize_string(stream, self.message)
        stream.flush()


Response = Union[ConnectedResponse, ErrorResponse]


def receive_response(stream: BinaryIO) -> Response:
    ident = _read_id(stream)
    if ident == _ID_RESPONSE_CONNECTED:
        return ConnectedResponse()
    if ident == _ID_RESPONSE_ERROR:
        return ErrorResponse(deserialize_string(stream))
    raise ValueError("invalid response")


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


def backend_handler(stream: Any) -> None:
    """Connect to the requested destination and relay traffic to it."""
    logger.debug("starting")
    command = receive_command(stream)
    destination = command.destination
    logger.info("connecting to %r", destination)

    try:
        server = socket.create_connection(_split_destination(destination))
    except (OSError, ValueError) as exc:
        logger.warning("failed to connect to %r: %s", destination, exc)
        ErrorResponse(str(exc)).send(stream)
        return

    with server:
        logger.debug("connected to %r", destination)
        ConnectedResponse().send(stream)
        logger.debug("starting stream copy")
        double_stream_copy(Kind.BACKEND, SERVICE, stream, server, True)


def tcp_handler(server: Any, client: socket.socket, channel: Any) -> None:
    """Forward a local TCP client to the destination held in the server's data."""
    with channel.connect(SERVICE) as rdp:
        destination = server.custom_data
        if destination is None:
            raise ValueError("missing destination")

        ConnectCommand(destination).send(rdp)
        response = receive_response(rdp)

        if isinstance(response, ErrorResponse):
            logger.warning("port forwarding error: %s", response.message)
            with suppress(OSError):
                client.shutdown(socket.SHUT_RDWR)
        else:
            double_stream_copy(Kind.FRONTEND, SERVICE, rdp, client, True)


SERVICE = Service(
    name="forward",
    internal=True,
    frontend=FrontendTcp(default_port=0, handler=tcp_handler),
    backend=backend_handler,
)