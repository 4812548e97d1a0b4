import io
import socket
from queue import Queue
from types import SimpleNamespace

import pytest

from soxy.api import Chunk, ChunkType
from soxy.forward import (
    SERVICE,
    ConnectCommand,
    ConnectedResponse,
    ErrorResponse,
    backend_handler,
    receive_command,
    receive_response,
    tcp_handler,
)
from soxy.rdp import RdpStream


class _Channel:
    def __init__(self, incoming=()):
        self.sent = []
        self.queue = Queue()
        self.services = []
        for chunk in incoming:
            self.queue.put(chunk)

    def send_chunk(self, chunk):
        self.sent.append(chunk)

    def connect(self, service):
        self.services.append(service)
        return RdpStream(self, service, 3, self.queue)

    def data(self):
        return b"".join(c.payload() for c in self.sent if c.chunk_type() is ChunkType.DATA)


def _encode(message):
    buf = io.BytesIO()
    message.send(buf)
    return buf.getvalue()


def test_connect_command_wire_bytes():
    assert _encode(ConnectCommand("ab")) == b"\xf1" + (2).to_bytes(8, "little") + b"ab"


def test_connected_response_wire_bytes():
    assert _encode(ConnectedResponse()) == b"\xe0"


def test_command_round_trip():
    data = _encode(ConnectCommand("example.com:443"))
    assert receive_command(io.BytesIO(data)) == ConnectCommand("example.com:443")


@pytest.mark.parametrize("response", [ConnectedResponse(), ErrorResponse("refused")])
def test_response_round_trip(response):
    assert receive_response(io.BytesIO(_encode(response))) == response


def test_invalid_command_id():
    with pytest.raises(ValueError):
        receive_command(io.BytesIO(b"\x00"))


def test_invalid_response_id():
    with pytest.raises(ValueError):
        receive_response(io.BytesIO(b"\xf1"))


def test_empty_stream_raises_eof():
    with pytest.raises(EOFError):
        receive_response(io.BytesIO(b""))


def _closed_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_backend_reports_connection_error():
    port = _closed_port()
    payload = _encode(ConnectCommand(f"127.0.0.1:{port}"))
    channel = _Channel([Chunk.data(3, payload), Chunk.end(3)])
    stream = RdpStream(channel, SERVICE, 3, channel.queue)

    backend_handler(stream)
    stream.close()

    response = receive_response(io.BytesIO(channel.data()))
    assert isinstance(response, ErrorResponse)
    assert response.message


def test_backend_rejects_malformed_destination():
    payload = _encode(ConnectCommand("no-port-here"))
    channel = _Channel([Chunk.data(3, payload), Chunk.end(3)])
    stream = RdpStream(channel, SERVICE, 3, channel.queue)

    backend_handler(stream)
    stream.close()

    response = receive_response(io.BytesIO(channel.data()))
    assert isinstance(response, ErrorResponse)
    assert response.message
    assert channel.sent[-1].chunk_type() is ChunkType.END


def test_frontend_handles_error_response():
    channel = _Channel([Chunk.data(3, _encode(ErrorResponse("refused")))])
    server = SimpleNamespace(custom_data="127.0.0.1:9")
    local, peer = socket.socketpair()
    with local, peer:
        tcp_handler(server, local, channel)
        assert peer.recv(16) == b""

    assert channel.services == [SERVICE]
    assert receive_command(io.BytesIO(channel.data())) == ConnectCommand("127.0.0.1:9")
    assert channel.sent[-1].chunk_type() is ChunkType.END


def test_frontend_requires_destination():
    channel = _Channel()
    server = SimpleNamespace(custom_data=None)
    local, peer = socket.socketpair()
    with local, peer:
        with pytest.raises(ValueError):
            tcp_handler(server, local, channel)


def test_service_is_internal():
    channel = _Channel()
    stream = RdpStream(channel, SERVICE, 3, channel.queue)
    stream.connect()
    assert channel.sent[0].chunk_type() is ChunkType.START
    assert channel.sent[0].payload() == b"forward"
    assert SERVICE.internal is True
    assert SERVICE.frontend.default_port == 0