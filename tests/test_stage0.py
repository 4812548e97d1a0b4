import socket
from queue import Queue

import pytest

from soxy import stage0
from soxy.api import Chunk, ChunkType
from soxy.channel import Channel


def _drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def _read_all(sock):
    parts = []
    while True:
        data = sock.recv(65536)
        if not data:
            return b"".join(parts)
        parts.append(data)


def _run(request_bytes):
    to_rdp = Queue()
    channel = Channel(to_rdp)
    server_sock, client_sock = socket.socketpair()
    with server_sock, client_sock:
        client_sock.sendall(request_bytes)
        stage0.tcp_handler(None, server_sock, channel)
        output = _read_all(client_sock)
    return output, _drain(to_rdp)


def test_upload_sends_file_content_in_data_chunks(tmp_path):
    content = bytes(range(256)) * 20
    path = tmp_path / "payload.bin"
    path.write_bytes(content)

    output, messages = _run(f"upload {path}\n".encode())

    assert f"file sent ({len(content)} bytes)".encode() in output
    types = [m.chunk_type() for m in messages]
    assert types[0] is ChunkType.START
    assert types[-1] is ChunkType.END
    assert all(t is ChunkType.DATA for t in types[1:-1])
    sent = b"".join(m.payload() for m in messages[1:-1])
    assert sent == content


def test_start_chunk_names_service_and_prompt_shown(tmp_path):
    output, messages = _run(b"quit\r\n")

    assert isinstance(messages[0], Chunk)
    assert messages[0].payload() == b"stage0"
    assert stage0.LOGO.encode() in output
    assert output.endswith(stage0.PROMPT.encode())
    assert stage0.SERVICE.frontend.default_port == 1082
    assert stage0.SERVICE.backend is None


def test_quit_sends_no_data():
    _, messages = _run(b"exit\n")
    assert [m.chunk_type() for m in messages] == [ChunkType.START, ChunkType.END]


@pytest.mark.parametrize("verb", ["cat", "PUSH", "put", "Send"])
def test_all_upload_verbs(tmp_path, verb):
    path = tmp_path / "small.txt"
    path.write_bytes(b"hello")
    output, messages = _run(f"{verb} {path}\n".encode())
    assert b"file sent (5 bytes)" in output
    assert b"".join(m.payload() for m in messages[1:-1]) == b"hello"


def test_invalid_command():
    output, messages = _run(b"dance\n")
    assert output.endswith(b"invalid command\n")
    assert len(messages) == 2


def test_missing_file_reports_error(tmp_path):
    output, messages = _run(f"cat {tmp_path / 'absent'}\n".encode())
    assert b"failed to open file for reading" in output
    assert [m.chunk_type() for m in messages] == [ChunkType.START, ChunkType.END]


def test_unterminated_line_raises():
    to_rdp = Queue()
    channel = Channel(to_rdp)
    server_sock, client_sock = socket.socketpair()
    with server_sock, client_sock:
        client_sock.sendall(b"cat x")
        client_sock.shutdown(socket.SHUT_WR)
        with pytest.raises(BrokenPipeError):
            stage0.tcp_handler(None, server_sock, channel)