"""Byte streams carried by chunks over the virtual channel."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from queue import Queue
from typing import Any, Optional

from soxy.api import ApiError, Chunk, ChunkType, PipelineBroken
from soxy.logs import TRACE

logger = logging.getLogger(__name__)


class StreamState(Enum):
    """Which directions of a stream are still open."""

    READ_WRITE = "ReadWrite"
    READ_ONLY = "ReadOnly"
    WRITE_ONLY = "WriteOnly"
    CLOSED = "Closed"

    @property
    def can_send(self) -> bool:
        return self in (StreamState.READ_WRITE, StreamState.WRITE_ONLY)

    @property
    def can_receive(self) -> bool:
        return self in (StreamState.READ_WRITE, StreamState.READ_ONLY)

    def __str__(self) -> str:
        return self.value


class _Mode(Enum):
    READ = "read"
    WRITE = "write"
    BOTH = "both"


class _Handle:
    """State shared by the reading and writing halves of one client stream."""

    def __init__(self, channel: Any, service: Any, client_id: int, from_rdp: Queue) -> None:
        self.channel = channel
        self.service = service
        self.client_id = client_id
        self.from_rdp = from_rdp
        self.state = StreamState.READ_WRITE
        self._lock = threading.Lock()
        self._holders = 0

    def acquire(self) -> None:
        with self._lock:
            self._holders += 1

    def release(self) -> None:
        with self._lock:
            self._holders -= 1
            last = self._holders == 0
        if last:
            logger.log(TRACE, "closing RDP handle of %x", self.client_id)
            self.close(_Mode.BOTH)

    def send(self, chunk: Chunk) -> None:
        with self._lock:
            state = self.state
        if not state.can_send:
            raise BrokenPipeError(f"cannot send in state {state}")

        is_end = chunk.chunk_type() is ChunkType.END
        logger.log(TRACE, "RDP send %s", chunk)
        self.channel.send_chunk(chunk)

        if is_end:
            logger.debug("RDP send End for %x", self.client_id)
            with self._lock:
                if self.state is StreamState.READ_WRITE:
                    self.state = StreamState.READ_ONLY
                elif self.state is StreamState.WRITE_ONLY:
                    self.state = StreamState.CLOSED

    def receive(self) -> Chunk:
        with self._lock:
            state = self.state
        if not state.can_receive:
            raise BrokenPipeError(f"cannot receive in state {state}")

        chunk = self.from_rdp.get()
        if chunk is None:
            # keep the disconnection visible to any later receive
            self.from_rdp.put(None)
            raise PipelineBroken()

        logger.log(TRACE, "RDP receive %s", chunk)

        if chunk.chunk_type() is ChunkType.END:
            logger.debug("RDP received End for %x", self.client_id)
            with self._lock:
                if self.state is StreamState.READ_WRITE:
                    self.state = StreamState.WRITE_ONLY
                elif self.state is StreamState.READ_ONLY:
                    self.state = StreamState.CLOSED
        return chunk

    def close(self, mode: _Mode) -> None:
        with self._lock:
            state = self.state
            send_end = False
            if mode is _Mode.BOTH:
                send_end = state.can_send
                self.state = StreamState.CLOSED
            elif mode is _Mode.READ:
                if state is StreamState.READ_WRITE:
                    self.state = StreamState.WRITE_ONLY
                elif state is StreamState.READ_ONLY:
                    self.state = StreamState.CLOSED
            else:
                if state is StreamState.READ_WRITE:
                    send_end = True
                    self.state = StreamState.READ_ONLY
                elif state is StreamState.READ_ONLY:
                    send_end = True
                    self.state = StreamState.CLOSED
            if send_end:
                try:
                    self.channel.send_chunk(Chunk.end(self.client_id))
                except ApiError:
                    pass


class RdpReader:
    """Reading half of a stream: yields the payloads of received Data chunks."""

    def __init__(self, handle: _Handle) -> None:
        handle.acquire()
        self._handle = handle
        self._pending = b""
        self._closed = False

    def read(self, size: int = -1) -> bytes:
        """Return up to size bytes; an empty result means end of stream."""
        if self._closed:
            raise ValueError("read on a closed reader")
        if size == 0:
            return b""
        if not self._pending:
            try:
                chunk = self._handle.receive()
            except (ApiError, OSError) as exc:
                raise ConnectionAbortedError(str(exc)) from exc
            payload = chunk.payload()
            if not payload:
                return b""
            self._pending = payload

        if size is None or size < 0 or size >= len(self._pending):
            data, self._pending = self._pending, b""
            return data
        data, self._pending = self._pending[:size], self._pending[size:]
        return data

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.log(TRACE, "closing RDP reader")
        self._handle.close(_Mode.READ)
        self._handle.release()

    def __enter__(self) -> RdpReader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class RdpWriter:
    """Writing half of a stream: buffers bytes into full-size Data chunks."""

    def __init__(self, handle: _Handle, pending: bytes = b"") -> None:
        handle.acquire()
        self._handle = handle
        self._pending = bytearray(pending)
        self._closed = False

    def __copy__(self) -> RdpWriter:
        return RdpWriter(self._handle, bytes(self._pending))

    def _send(self, chunk: Chunk) -> None:
        try:
            self._handle.send(chunk)
        except (ApiError, OSError) as exc:
            raise ConnectionAbortedError(str(exc)) from exc

    def write(self, data: bytes) -> int:
        """Queue all of data, sending every full chunk; return its length."""
        if self._closed:
            raise ValueError("write on a closed writer")
        logger.log(TRACE, "RDP write %d bytes", len(data))
        self._pending += data
        capacity = Chunk.max_payload_length()
        while len(self._pending) >= capacity:
            piece = bytes(self._pending[:capacity])
            del self._pending[:capacity]
            self._send(Chunk.data(self._handle.client_id, piece))
        return len(data)

    def flush(self) -> None:
        """Send whatever is buffered as one Data chunk."""
        logger.log(TRACE, "RDP flush %d bytes", len(self._pending))
        if self._pending:
            chunk = Chunk.data(self._handle.client_id, bytes(self._pending))
            self._pending.clear()
            self._send(chunk)

    def close(self) -> None:
        if self._closed:
            return
        logger.log(TRACE, "closing RDP writer")
        try:
            self.flush()
        except (ApiError, OSError):
            pass
        self._closed = True
        self._handle.close(_Mode.WRITE)
        self._handle.release()

    def __enter__(self) -> RdpWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class RdpStream:
    """A bidirectional stream for one client of one service."""

    def __init__(self, channel: Any, service: Any, client_id: int, from_rdp: Queue) -> None:
        self._handle = _Handle(channel, service, client_id, from_rdp)
        self._reader: Optional[RdpReader] = RdpReader(self._handle)
        self._writer: Optional[RdpWriter] = RdpWriter(self._handle)

    @property
    def client_id(self) -> int:
        return self._handle.client_id

    @property
    def service(self) -> Any:
        return self._handle.service

    @property
    def state(self) -> StreamState:
        return self._handle.state

    def accept(self) -> None:
        logger.log(TRACE, "accepted %s 0x%x", self._handle.service, self.client_id)

    def connect(self) -> None:
        """Announce this client to the other side with a Start chunk."""
        chunk = Chunk.start(self.client_id, self._handle.service.name)
        try:
            self._handle.send(chunk)
        except (ApiError, OSError) as exc:
            raise BrokenPipeError(str(exc)) from exc

    def _halves(self) -> tuple:
        if self._reader is None or self._writer is None:
            raise ValueError("stream has been split")
        return self._reader, self._writer

    def split(self) -> tuple:
        """Hand over the reader and writer; the stream is unusable afterwards."""
        halves = self._halves()
        self._reader = None
        self._writer = None
        return halves

    def read(self, size: int = -1) -> bytes:
        return self._halves()[0].read(size)

    def write(self, data: bytes) -> int:
        return self._halves()[1].write(data)

    def flush(self) -> None:
        self._halves()[1].flush()

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._writer is not None:
            self._writer.close()
            self._writer = None

    def __enter__(self) -> RdpStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()