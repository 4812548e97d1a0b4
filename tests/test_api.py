import pytest

from soxy.api import (
    PDU_DATA_MAX_SIZE,
    ApiError,
    Chunk,
    ChunkType,
    InvalidChunkSize,
    InvalidChunkType,
    PipelineBroken,
    new_client_id,
)


def test_start_chunk_wire_bytes():
    chunk = Chunk.start(1, "ftp")
    assert chunk.serialized() == b"\x01\x00\xf0\x03\x00ftp"


def test_end_chunk_wire_bytes():
    chunk = Chunk.end(0x1234)
    assert chunk.serialized() == b"\x34\x12\xf2\x00\x00"
    assert chunk.payload() == b""
    assert chunk.chunk_type() is ChunkType.END


def test_data_round_trip():
    chunk = Chunk.data(0xBEEF, b"hello world")
    back = Chunk.deserialize(chunk.serialized())
    assert back == chunk
    assert back.client_id == 0xBEEF
    assert back.chunk_type() is ChunkType.DATA
    assert back.payload() == b"hello world"


def test_start_payload_is_service_name():
    chunk = Chunk.deserialize(Chunk.start(7, "clipboard").serialized())
    assert chunk.payload().decode() == "clipboard"
    assert chunk.chunk_type() is ChunkType.START


def test_max_payload_fills_pdu():
    chunk = Chunk.data(3, b"x" * Chunk.max_payload_length())
    assert len(chunk.serialized()) == PDU_DATA_MAX_SIZE
    assert Chunk.deserialize(chunk.serialized()) == chunk


def test_payload_too_large():
    with pytest.raises(ValueError):
        Chunk.data(3, b"x" * (Chunk.max_payload_length() + 1))


def test_overhead_matches_end_chunk():
    assert len(Chunk.end(0).serialized()) == Chunk.serialized_overhead()


def test_deserialize_too_short():
    with pytest.raises(InvalidChunkSize) as info:
        Chunk.deserialize(b"\x00\x00")
    assert info.value.size == 2


def test_deserialize_too_long():
    with pytest.raises(InvalidChunkSize):
        Chunk.deserialize(b"\x00" * (PDU_DATA_MAX_SIZE + 1))


def test_deserialize_inconsistent_length():
    data = Chunk.data(1, b"abc").serialized() + b"extra"
    with pytest.raises(InvalidChunkSize):
        Chunk.deserialize(data)


def test_invalid_chunk_type():
    chunk = Chunk.deserialize(b"\x01\x00\x42\x00\x00")
    with pytest.raises(InvalidChunkType) as info:
        chunk.chunk_type()
    assert info.value.value == 0x42
    assert str(info.value) == "invalid chunk type: 0x42"


def test_error_messages_and_hierarchy():
    assert str(InvalidChunkSize(0x10)) == "invalid chunk size: 0x10"
    assert str(PipelineBroken()) == "broken pipeline"
    assert isinstance(PipelineBroken(), ApiError)


def test_can_deserialize_from():
    serialized = Chunk.data(5, b"payload").serialized()
    assert Chunk.can_deserialize_from(serialized[:3]) is None
    assert Chunk.can_deserialize_from(serialized[:-1]) is None
    assert Chunk.can_deserialize_from(serialized) == len(serialized)
    assert Chunk.can_deserialize_from(serialized + b"trailing") == len(serialized)


def test_new_client_id_increments():
    first = new_client_id()
    second = new_client_id()
    assert second == (first + 1) & 0xFFFF


def test_display():
    chunk = Chunk.data(0xAB, b"abc")
    assert str(chunk) == "client ab chunk_type = Data data = 3 byte(s)"
    assert str(ChunkType.START) == "Start"