"""Routing of chunks between the virtual channel and per-client streams."""

from __future__ import annotations

import logging
import threading
from queue import Queue
from typing import Any, Dict, List

from soxy.api import (
    Chunk,
    ChunkType,
    InvalidChunkType,
    PipelineBroken,
    ResetClient,
    Shutdown,
    new_client_id,
)
from soxy.logs import TRACE
from soxy.rdp import RdpStream
from soxy.service import Kind, Service, lookup_bytes

logger = logging.getLogger(__name__)


class Channel:
    """Dispatches chunks coming from the virtual channel to client streams.

    Outgoing messages are put on the ``to_rdp`` queue. Incoming messages are
    read by :meth:`run`; a ``None`` item on that queue means the other side
    is gone.
    """

    def __init__(self, to_rdp: Queue) -> None:
        self._clients: Dict[int, Queue] = {}
        self._lock = threading.Lock()
        self._to_rdp = to_rdp

    def shutdown(self) -> None:
        """End every client stream and forward a shutdown request."""
        with self._lock:
            clients = list(self._clients.items())
            self._clients.clear()
        for client_id, queue in clients:
            queue.put(Chunk.end(client_id))
        self._to_rdp.put(Shutdown())

    def send_chunk(self, chunk: Chunk) -> None:
        logger.log(TRACE, "CHANNEL send %s", chunk)
        self._to_rdp.put(chunk)

    def reset_client(self) -> None:
        self._to_rdp.put(ResetClient())

    def send_input_setting(self, setting: Any) -> None:
        self._to_rdp.put(setting)

    def send_input_action(self, action: Any) -> None:
        self._to_rdp.put(action)

    def connect(self, service: Service) -> RdpStream:
        """Open a new client stream for service and announce it."""
        client_id = new_client_id()
        queue: Queue = Queue()
        stream = RdpStream(self, service, client_id, queue)

        with self._lock:
            self._clients[client_id] = queue

        try:
            stream.connect()
        except BaseException:
            with self._lock:
                self._clients.pop(client_id, None)
            raise

        return stream

    def _serve_backend(self, service: Service, stream: RdpStream) -> None:
        stream.accept()
        try:
            service.backend(stream)
        except Exception as exc:  # the thread boundary: report and move on
            logger.debug("error: %s", exc)
        finally:
            stream.close()

    def _handle_backend_start(
        self, client_id: int, payload: bytes, workers: List[threading.Thread]
    ) -> None:
        with self._lock:
            if client_id in self._clients:
                logger.error("discarding start for already existing client %x", client_id)
                return
            try:
                service = lookup_bytes(payload)
            except LookupError as exc:
                logger.error("new client for unknown service %s!", exc.args[0])
                self._to_rdp.put(Chunk.end(client_id))
                return

            logger.debug("new %s client %x", service, client_id)

            if service.backend is None:
                logger.warning("no backend to handle client %x", client_id)
                return

            queue: Queue = Queue()
            stream = RdpStream(self, service, client_id, queue)
            self._clients[client_id] = queue

        worker = threading.Thread(
            target=self._serve_backend,
            args=(service, stream),
            name=f"{Kind.BACKEND} {service} {client_id:x}",
            daemon=True,
        )
        workers.append(worker)
        worker.start()

    def _dispatch(
        self, service_kind: Kind, chunk: Chunk, workers: List[threading.Thread]
    ) -> None:
        try:
            chunk_type = chunk.chunk_type()
        except InvalidChunkType as exc:
            logger.error("discarding invalid chunk: %s", exc)
            return

        client_id = chunk.client_id

        if chunk_type is ChunkType.START:
            logger.debug("CHANNEL received %s", chunk)
            if service_kind is Kind.FRONTEND:
                raise NotImplementedError("accept connections")
            self._handle_backend_start(client_id, chunk.payload(), workers)

        elif chunk_type is ChunkType.DATA:
            logger.log(TRACE, "CHANNEL received %s", chunk)
            with self._lock:
                queue = self._clients.get(client_id)
            if queue is None:
                logger.warning("received Data for unknown client %x", client_id)
                self._to_rdp.put(Chunk.end(client_id))
            else:
                queue.put(chunk)

        else:
            logger.debug("CHANNEL received %s", chunk)
            with self._lock:
                queue = self._clients.pop(client_id, None)
            if queue is None:
                logger.warning("received End for unknown client %x", client_id)
            else:
                queue.put(chunk)

    def run(self, service_kind: Kind, from_rdp: Queue) -> None:
        """Process incoming messages until the incoming queue is disconnected.

        Raises PipelineBroken once a ``None`` item is read, after every
        backend client started here has finished.
        """
        workers: List[threading.Thread] = []
        try:
            while True:
                message = from_rdp.get()
                if message is None:
                    raise PipelineBroken()
                if isinstance(message, Chunk):
                    self._dispatch(service_kind, message, workers)
                elif isinstance(message, Shutdown):
                    self.shutdown()
                elif isinstance(message, ResetClient):
                    logger.error("discarding reset client request")
                else:
                    logger.error("discarding input request")
        finally:
            for worker in workers:
                worker.join()