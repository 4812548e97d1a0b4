"""TCP listener that hands local clients to a service's frontend handler."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from typing import Any, List, Optional, Tuple

from soxy.service import Kind, Service

logger = logging.getLogger(__name__)

_ACCEPT_POLL = 0.2


def _family(host: str) -> int:
    try:
        version = ipaddress.ip_address(host.split("%", 1)[0]).version
    except ValueError:
        return socket.AF_INET
    return socket.AF_INET6 if version == 6 else socket.AF_INET


class FrontendTcpServer:
    """A bound TCP listener serving one service's frontend."""

    def __init__(self, service: Service, sock: socket.socket, custom_data: Optional[str]) -> None:
        self._service = service
        self._sock = sock
        self._custom_data = custom_data
        self._closed = False
        host = sock.getsockname()[0]
        self.ip = ipaddress.ip_address(host.split("%", 1)[0])

    @property
    def service(self) -> Service:
        return self._service

    @property
    def custom_data(self) -> Optional[str]:
        return self._custom_data

    @property
    def address(self) -> Tuple[str, int]:
        host, port = self._sock.getsockname()[:2]
        return host, port

    @classmethod
    def bind(
        cls,
        service: Service,
        address: Tuple[str, int],
        custom_data: Optional[str] = None,
    ) -> FrontendTcpServer:
        host, port = address
        suffix = f" ({custom_data})" if custom_data is not None else ""
        logger.info("binding %s%s clients on %s:%s", service, suffix, host, port)
        sock = socket.create_server((host, port), family=_family(host))
        return cls(service, sock, custom_data)

    def _serve(self, handler: Any, client: socket.socket, channel: Any) -> None:
        with client:
            try:
                handler(self, client, channel)
            except Exception as exc:  # the thread boundary: report and move on
                logger.debug("error: %s", exc)

    def start(self, channel: Any) -> None:
        """Accept clients until the server is closed, one thread per client."""
        frontend = self._service.frontend
        if frontend is None:
            return

        self._sock.settimeout(_ACCEPT_POLL)
        workers: List[threading.Thread] = []
        try:
            while not self._closed:
                try:
                    client, client_addr = self._sock.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if self._closed:
                        return
                    raise

                logger.debug("new client %s", client_addr)
                worker = threading.Thread(
                    target=self._serve,
                    args=(frontend.handler, client, channel),
                    name=f"{Kind.FRONTEND} {self._service} {client_addr}",
                    daemon=True,
                )
                workers.append(worker)
                worker.start()
        finally:
            for worker in workers:
                worker.join()

    def close(self) -> None:
        """Stop accepting clients; a running start() returns soon after."""
        self._closed = True
        self._sock.close()

    def __enter__(self) -> FrontendTcpServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()