import copy
from queue import Queue
from types import SimpleNamespace

import pytest

from soxy.api import Chunk, ChunkType
from soxy.rdp import RdpStream, StreamState

CLIENT = 0x42


class FakeChannel:
    def __init__(self):
        self.sent = []

    def send_chunk(self, chunk):
        self.sent.append(chunk)


def make_stream():
    channel = FakeChannel()
    queue = Queue()
    stream = RdpStream(channel, SimpleNamespace(name="echo"), CLIENT, queue)
    return stream, channel, queue


def types(channel):
    return [c.chunk_type() for c in channel.sent]


def test_connect_sends_start_with_service_name():
    stream, channel, _ = make_stream()
    stream.connect()
    assert len(channel.sent) == 1
    chunk = channel.sent[0]
    assert chunk.chunk_type() is ChunkType.START
    assert chunk.payload() == b"echo"
    assert chunk.client_id == CLIENT


def test_small_write_is_buffered_until_flush():
    stream, channel, _ = make_stream()
    assert stream.write(b"abc") == 3
    assert channel.sent == []
    stream.flush()
    assert [c.payload() for c in channel.sent] == [b"abc"]
    assert types(channel) == [ChunkType.DATA]


def test_large_write_is_cut_into_full_chunks():
    stream, channel, _ = make_stream()
    data = bytes(range(256)) * 20
    stream.write(data)
    cap = Chunk.max_payload_length()
    assert channel.sent
    assert all(len(c.payload()) == cap for c in channel.sent)
    stream.flush()
    assert b"".join(c.payload() for c in channel.sent) == data
    assert all(len(c.payload()) == cap for c in channel.sent[:-1])


def test_read_splits_pending_payload():
    stream, _, queue = make_stream()
    queue.put(Chunk.data(CLIENT, b"hello world"))
    assert stream.read(5) == b"hello"
    assert stream.read(100) == b" world"


def test_end_chunk_ends_reading():
    stream, _, queue = make_stream()
    queue.put(Chunk.end(CLIENT))
    assert stream.read(10) == b""
    assert stream.state is StreamState.WRITE_ONLY
    with pytest.raises(ConnectionAbortedError):
        stream.read(10)


def test_write_allowed_after_remote_end():
    stream, channel, queue = make_stream()
    queue.put(Chunk.end(CLIENT))
    stream.read(10)
    stream.write(b"late")
    stream.flush()
    assert channel.sent[-1].payload() == b"late"


def test_broken_pipeline_aborts_read():
    stream, _, queue = make_stream()
    queue.put(None)
    with pytest.raises(ConnectionAbortedError):
        stream.read(10)


def test_close_sends_single_end():
    stream, channel, _ = make_stream()
    stream.write(b"tail")
    stream.close()
    assert types(channel) == [ChunkType.DATA, ChunkType.END]
    assert channel.sent[0].payload() == b"tail"
    assert stream.state is StreamState.CLOSED


def test_context_manager_closes():
    stream, channel, _ = make_stream()
    with stream:
        pass
    assert types(channel) == [ChunkType.END]


def test_writer_close_leaves_read_only():
    stream, channel, queue = make_stream()
    reader, writer = stream.split()
    other = copy.copy(writer)
    writer.close()
    assert stream.state is StreamState.READ_ONLY
    assert types(channel) == [ChunkType.END]
    other.write(b"x")
    with pytest.raises(ConnectionAbortedError):
        other.flush()
    queue.put(Chunk.data(CLIENT, b"still"))
    assert reader.read(10) == b"still"


def test_split_stream_cannot_be_used():
    stream, _, _ = make_stream()
    stream.split()
    with pytest.raises(ValueError):
        stream.write(b"x")


def test_reader_and_writer_close_after_split():
    stream, channel, _ = make_stream()
    reader, writer = stream.split()
    reader.close()
    assert stream.state is StreamState.WRITE_ONLY
    writer.close()
    assert stream.state is StreamState.CLOSED
    assert types(channel) == [ChunkType.END]


def test_state_str():
    read_only, _, _ = make_stream()
    _, writer = read_only.split()
    writer.close()
    assert str(read_only.state) == "ReadOnly"

    write_only, _, _ = make_stream()
    reader, _ = write_only.split()
    reader.close()
    assert str(write_only.state) == "WriteOnly"
    assert write_only.state.can_send
    assert not write_only.state.can_receive