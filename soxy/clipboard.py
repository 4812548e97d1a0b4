"""Remote clipboard service: wire protocol, backend handler and TCP frontend."""

from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
import sys
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, BinaryIO, Sequence, Tuple, Union

from soxy.logs import TRACE
from soxy.service import LOGO as SOXY_LOGO
from soxy.service import FrontendTcp, Service
from soxy.util import deserialize_string, serialize_string

logger = logging.getLogger(__name__)

_ID_READ = 0x00
_ID_WRITE_TEXT = 0x01

_ID_TEXT = 0x00
_ID_FAILED = 0x01
_ID_WRITE_DONE = 0x02

_TOOL_TIMEOUT = 10

LOGO = r"""
       _  _         _                              _
  ___ | |(_) _ __  | |__    ___    __ _  _ __   __| |
 / __|| || || '_ \ | '_ \  / _ \  / _` || '__| / _` |
| (__ | || || |_) || |_) || (_) || (_| || |   | (_| |
 \___||_||_|| .__/ |_.__/  \___/  \__,_||_|    \__,_|
            |_|"""

HELP = """
Available commands:
- "read" or "get" to get remote clipboard content;
- "write XXX" or "put XXX" to set remote clipboard content to XXX;
- "exit" or "quit" to exit this intrerface.
"""

PROMPT = "clipboard> "


def _read_id(stream: BinaryIO) -> int:
    data = stream.read(1)
    if not data:
        raise EOFError("stream closed")
    return data[0]


@dataclass(frozen=True)
class ReadCommand:
    """Ask for the remote clipboard text."""

    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_READ]))
        stream.flush()


@dataclass(frozen=True)
class WriteTextCommand:
    """Set the remote clipboard text."""

    text: str

    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_WRITE_TEXT]))
        serialize_string(stream, self.text)
        stream.flush()


Command = Union[ReadCommand, WriteTextCommand]


def receive_command(stream: BinaryIO) -> Command:
    ident = _read_id(stream)
    if ident == _ID_READ:
        return ReadCommand()
    if ident == _ID_WRITE_TEXT:
        return WriteTextCommand(deserialize_string(stream))
    raise ValueError("invalid command")


@dataclass(frozen=True)
class TextResponse:
    text: str

    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_TEXT]))
        serialize_string(stream, self.text)
        stream.flush()


@dataclass(frozen=True)
class FailedResponse:
    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_FAILED]))
        stream.flush()


@dataclass(frozen=True)
class WriteDoneResponse:
    def send(self, stream: BinaryIO) -> None:
        stream.write(bytes([_ID_WRITE_DONE]))
        stream.flush()


Response = Union[TextResponse, FailedResponse, WriteDoneResponse]


def receive_response(stream: BinaryIO) -> Response:
    ident = _read_id(stream)
    if ident == _ID_TEXT:
        return TextResponse(deserialize_string(stream))
    if ident == _ID_FAILED:
        return FailedResponse()
    if ident == _ID_WRITE_DONE:
        return WriteDoneResponse()
    raise ValueError("invalid response")


class ClipboardUnavailable(Exception):
    """The system clipboard could not be read or written."""


def _clipboard_tools() -> Tuple[Sequence[str], Sequence[str]]:
    if sys.platform == "darwin":
        candidates = [(("pbpaste",), ("pbcopy",))]
    elif sys.platform == "win32":
        candidates = [
            (("powershell", "-NoProfile", "-Command", "Get-Clipboard -Raw"), ("clip",)),
        ]
    else:
        candidates = []
        if os.environ.get("WAYLAND_DISPLAY"):
            candidates.append((("wl-paste", "--no-newline"), ("wl-copy",)))
        candidates.append(
            (("xclip", "-selection", "clipboard", "-o"), ("xclip", "-selection", "clipboard", "-i"))
        )
        candidates.append((("xsel", "--clipboard", "--output"), ("xsel", "--clipboard", "--input")))

    for read_cmd, write_cmd in candidates:
        if shutil.which(read_cmd[0]) and shutil.which(write_cmd[0]):
            return read_cmd, write_cmd
    raise ClipboardUnavailable("no clipboard tool available")


def _read_clipboard() -> str:
    read_cmd, _ = _clipboard_tools()
    try:
        done = subprocess.run(
            list(read_cmd), capture_output=True, check=True, timeout=_TOOL_TIMEOUT
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise ClipboardUnavailable(str(exc)) from exc
    return done.stdout.decode("utf-8", errors="replace")


def _write_clipboard(text: str) -> None:
    _, write_cmd = _clipboard_tools()
    try:
        # some tools keep running to own the selection: do not wait on their output
        subprocess.run(
            list(write_cmd),
            input=text.encode("utf-8"),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
            timeout=_TOOL_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise ClipboardUnavailable(str(exc)) from exc


def backend_handler(stream: Any) -> None:
    """Answer clipboard commands until the stream ends."""
    logger.debug("starting")
    while True:
        command = receive_command(stream)
        if isinstance(command, ReadCommand):
            logger.debug("read")
            try:
                text = _read_clipboard()
            except ClipboardUnavailable as exc:
                logger.error("failed to get clipboard content: %s", exc)
                FailedResponse().send(stream)
            else:
                TextResponse(text).send(stream)
        else:
            logger.debug("write_text %r", command.text)
            try:
                _write_clipboard(command.text)
            except ClipboardUnavailable as exc:
                logger.error("failed to set clipboard: %s", exc)
                FailedResponse().send(stream)
            else:
                WriteDoneResponse().send(stream)


_ESCAPES = {"\t": "\\t", "\r": "\\r", "\n": "\\n", "\\": "\\\\", '"': '\\"', "\0": "\\0"}


def _debug_quote(text: str) -> str:
    parts = []
    for char in text:
        if char in _ESCAPES:
            parts.append(_ESCAPES[char])
        elif not char.isprintable() and char != " ":
            parts.append(f"\\u{{{ord(char):x}}}")
        else:
            parts.append(char)
    return '"' + "".join(parts) + '"'


def tcp_handler(server: Any, client: socket.socket, channel: Any) -> None:
    """Interactive line-based clipboard console for a local TCP client."""
    with client.makefile("rb") as client_read, client.makefile("wb") as client_write:
        client_write.write(f"{SOXY_LOGO}\n{LOGO}\n{HELP}\n".encode("utf-8"))
        client_write.flush()

        with channel.connect(SERVICE) as rdp:
            while True:
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

                if command == "":
                    pass
                elif command in ("READ", "GET"):
                    ReadCommand().send(rdp)
                    response = receive_response(rdp)
                    if isinstance(response, TextResponse):
                        client_write.write(f"ok {_debug_quote(response.text)}\n".encode("utf-8"))
                    elif isinstance(response, FailedResponse):
                        client_write.write(b"KO\n")
                    else:
                        raise ValueError("unexpected response to read")
                elif command in ("WRITE", "PUT"):
                    WriteTextCommand(args).send(rdp)
                    response = receive_response(rdp)
                    if isinstance(response, WriteDoneResponse):
                        client_write.write(b"ok\n")
                    elif isinstance(response, FailedResponse):
                        client_write.write(b"KO\n")
                    else:
                        raise ValueError("unexpected response to write")
                elif command in ("EXIT", "QUIT"):
                    with suppress(OSError):
                        client.shutdown(socket.SHUT_RDWR)
                    return
                else:
                    client_write.write(b"invalid command\n")
                client_write.flush()


SERVICE = Service(
    name="clipboard",
    internal=False,
    frontend=FrontendTcp(default_port=3032, handler=tcp_handler),
    backend=backend_handler,
)