"""Remote shell service: relays a shell's standard streams over a stream."""

from __future__ import annotations

import copy
import logging
import socket
import subprocess
import sys
import threading
from typing import Any, Tuple

from soxy.api import ApiError
from soxy.service import FrontendTcp, Kind, Service, double_stream_copy, stream_copy

logger = logging.getLogger(__name__)


def shell_command() -> Tuple[str, ...]:
    """The interactive shell started for each client."""
    if sys.platform == "win32":
        return ("cmd.exe",)
    return ("sh", "-i")


def _copy_then_close(source: Any, writer: Any) -> None:
    try:
        stream_copy(source, writer, True)
    except (OSError, ApiError) as exc:
        logger.debug("error: %s", exc)
    else:
        logger.debug("stopped")
    finally:
        writer.close()


def backend_handler(stream: Any) -> None:
    """Start a shell and relay its input and outputs until the stream ends."""
    client_id = stream.client_id
    command = shell_command()
    logger.debug("starting %r", command[0])

    process = subprocess.Popen(
        list(command),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )

    reader, writer_out = stream.split()
    writer_err = copy.copy(writer_out)

    threads = [
        threading.Thread(
            target=_copy_then_close,
            args=(process.stdout, writer_out),
            name=f"{Kind.BACKEND} {SERVICE} {client_id:x} stdout",
            daemon=True,
        ),
        threading.Thread(
            target=_copy_then_close,
            args=(process.stderr, writer_err),
            name=f"{Kind.BACKEND} {SERVICE} {client_id:x} stderr",
            daemon=True,
        ),
    ]
    for thread in threads:
        thread.start()

    try:
        stream_copy(reader, process.stdin, True)
    except (OSError, ApiError) as exc:
        logger.debug("error: %s", exc)
    else:
        logger.debug("stopped")
    finally:
        try:
            process.stdin.close()
        except OSError:
            pass
        reader.close()

    for thread in threads:
        thread.join()
    process.wait()
    process.stdout.close()
    process.stderr.close()


def tcp_handler(server: Any, client: socket.socket, channel: Any) -> None:
    """Relay a local TCP client to a remote shell."""
    rdp = channel.connect(SERVICE)
    double_stream_copy(Kind.FRONTEND, SERVICE, rdp, client, True)


SERVICE = Service(
    name="command",
    internal=False,
    frontend=FrontendTcp(default_port=3031, handler=tcp_handler),
    backend=backend_handler,
)