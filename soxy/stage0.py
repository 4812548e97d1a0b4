"""Stage0 service: uploads a local file to the remote side over a stream."""

from __future__ import annotations

import logging
import socket
from contextlib import suppress
from typing import Any, BinaryIO

from soxy.api import Chunk
from soxy.logs import TRACE
from soxy.service import LOGO as SOXY_LOGO
from soxy.service import FrontendTcp, Service

logger = logging.getLogger(__name__)

LOGO = r"""
      _                         ___
 ___ | |_   __ _   __ _   ___  / _ \
/ __|| __| / _` | / _` | / _ \| | | |
\__ \| |_ | (_| || (_| ||  __/| |_| |
|___/ \__| \__,_| \__, | \___| \___/
                  |___/"""

HELP = """
Available commands:
- "cat FILE" or "push FILE" or "put FILE" or "send FILE" or "upload FILE" to uplaod the content of FILE;
- "exit" or "quit" to exit this intrerface.
"""

PROMPT = "stage0> "

_UPLOAD_COMMANDS = frozenset(("CAT", "PUSH", "PUT", "SEND", "UPLOAD"))

_READ_SIZE = Chunk.max_payload_length() + Chunk.serialized_overhead()


def _upload(rdp: Any, out: BinaryIO, path: str) -> None:
    try:
        file = open(path, "rb")
    except OSError as exc:
        out.write(f"failed to open file for reading: {exc}\n".encode("utf-8"))
        return

    total = 0
    with file:
        for block in iter(lambda: file.read(_READ_SIZE), b""):
            logger.log(TRACE, "%d bytes read", len(block))
            rdp.write(block)
            total += len(block)

    out.write(f"file sent ({total} bytes)\n".encode("utf-8"))


def tcp_handler(server: Any, client: socket.socket, channel: Any) -> None:
    """Read one command from a local TCP client and upload the named file."""
    with client.makefile("rb") as client_read, client.makefile("wb") as client_write:
        client_write.write(f"{SOXY_LOGO}\n{LOGO}\n{HELP}\n".encode("utf-8"))
        client_write.flush()

        with channel.connect(SERVICE) as rdp:
            client_write.write(PROMPT.encode("utf-8"))
            client_write.flush()

            raw = client_read.readline()
            if not raw.endswith(b"\n"):
                raise BrokenPipeError("interrupted")
            line = raw[:-1].decode("utf-8")
            if line.endswith("\r"):
                line = line[:-1]

            command, _, args = line.partition(" ")
            command = command.upper()

            logger.debug("%r", line)
            logger.log(TRACE, "COMMAND = %r", command)
            logger.log(TRACE, "ARGS = %r", args)

            if command in ("EXIT", "QUIT"):
                pass
            elif command in _UPLOAD_COMMANDS:
                _upload(rdp, client_write, args)
            else:
                client_write.write(b"invalid command\n")

            client_write.flush()

        with suppress(OSError):
            client.shutdown(socket.SHUT_RDWR)


SERVICE = Service(
    name="stage0",
    internal=False,
    frontend=FrontendTcp(default_port=1082, handler=tcp_handler),
    backend=None,
)