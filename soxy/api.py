"""Chunks exchanged over the virtual channel and the messages that carry them."""

from __future__ import annotations

import itertools
import struct
import threading
from dataclasses import dataclass
from enum import IntEnum

# Largest PDU that can be received over Dynamic Virtual Channels.
PDU_MAX_SIZE = 1600
# The DYNVC_DATA_FIRST PDU header can be up to 10 bytes long.
PDU_DVC_HEADER_MAX_SIZE = 10
# Largest amount of data that can be sent in any kind of PDU.
PDU_DATA_MAX_SIZE = PDU_MAX_SIZE - PDU_DVC_HEADER_MAX_SIZE

# client id (u16) + chunk type (u8) + payload length (u16), little endian
_HEADER = struct.Struct("<HBH")
_SERIALIZE_OVERHEAD = _HEADER.size


class ApiError(Exception):
    """Base class of the errors raised while handling chunks."""


class InvalidChunkType(ApiError):
    """A chunk carries an unknown type byte."""

    def __init__(self, value: int) -> None:
        self.value = value
        super().__init__(f"invalid chunk type: 0x{value:x}")


class InvalidChunkSize(ApiError):
    """A serialized chunk has an impossible or inconsistent size."""

    def __init__(self, size: int) -> None:
        self.size = size
        super().__init__(f"invalid chunk size: 0x{size:x}")


class PipelineBroken(ApiError):
    """The queue towards or from the virtual channel is gone."""

    def __init__(self) -> None:
        super().__init__("broken pipeline")


class ChunkType(IntEnum):
    START = 0xF0
    DATA = 0xF1
    END = 0xF2

    def __str__(self) -> str:
        return self.name.capitalize()


_client_ids = itertools.count()
_client_ids_lock = threading.Lock()


def new_client_id() -> int:
    """Return a fresh 16-bit client identifier, wrapping around."""
    with _client_ids_lock:
        return next(_client_ids) & 0xFFFF


@dataclass(frozen=True)
class Chunk:
    """One serialized unit of traffic for a given client."""

    content: bytes

    @classmethod
    def _build(cls, chunk_type: ChunkType, client_id: int, data: bytes | None) -> Chunk:
        payload = b"" if data is None else bytes(data)
        if len(payload) > cls.max_payload_length():
            raise ValueError("payload is too large!")
        return cls(_HEADER.pack(client_id, chunk_type, len(payload)) + payload)

    @classmethod
    def start(cls, client_id: int, service_name: str) -> Chunk:
        return cls._build(ChunkType.START, client_id, service_name.encode("utf-8"))

    @classmethod
    def data(cls, client_id: int, data: bytes) -> Chunk:
        return cls._build(ChunkType.DATA, client_id, data)

    @classmethod
    def end(cls, client_id: int) -> Chunk:
        return cls._build(ChunkType.END, client_id, None)

    @property
    def client_id(self) -> int:
        return int.from_bytes(self.content[0:2], "little")

    def chunk_type(self) -> ChunkType:
        value = self.content[2]
        try:
            return ChunkType(value)
        except ValueError:
            raise InvalidChunkType(value) from None

    def _payload_len(self) -> int:
        return int.from_bytes(self.content[3:5], "little")

    def payload(self) -> bytes:
        return self.content[_SERIALIZE_OVERHEAD:_SERIALIZE_OVERHEAD + self._payload_len()]

    @staticmethod
    def can_deserialize_from(data: bytes) -> int | None:
        """Length of the first complete chunk at the head of data, if any."""
        if len(data) < _SERIALIZE_OVERHEAD:
            return None
        expected = _SERIALIZE_OVERHEAD + int.from_bytes(data[3:5], "little")
        if len(data) < expected:
            return None
        return expected

    @classmethod
    def deserialize(cls, content: bytes) -> Chunk:
        content = bytes(content)
        size = len(content)
        if not _SERIALIZE_OVERHEAD <= size <= PDU_DATA_MAX_SIZE:
            raise InvalidChunkSize(size)
        chunk = cls(content)
        if _SERIALIZE_OVERHEAD + chunk._payload_len() != size:
            raise InvalidChunkSize(size)
        return chunk

    def serialized(self) -> bytes:
        return self.content

    @staticmethod
    def serialized_overhead() -> int:
        return _SERIALIZE_OVERHEAD

    @staticmethod
    def max_payload_length() -> int:
        return PDU_DATA_MAX_SIZE - _SERIALIZE_OVERHEAD

    def __str__(self) -> str:
        return (
            f"client {self.client_id:x} chunk_type = {self.chunk_type()} "
            f"data = {self._payload_len()} byte(s)"
        )


@dataclass(frozen=True)
class Shutdown:
    """Message asking the channel to close every client and stop."""


@dataclass(frozen=True)
class ResetClient:
    """Message asking the remote side to reset its input client."""