"""Keyboard input service: input actions and the interactive TCP console."""

from __future__ import annotations

import logging
import socket
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Optional, Union

from soxy.logs import TRACE
from soxy.service import LOGO as SOXY_LOGO
from soxy.service import FrontendTcp, Service

logger = logging.getLogger(__name__)

LOGO = r"""
 _                       _
(_) _ __   _ __   _   _ | |_
| || '_ \ | '_ \ | | | || __|
| || | | || |_) || |_| || |_
|_||_| |_|| .__/  \__,_| \__|
          |_|"""

HELP = """
Available commands:
- "delay <delay>" where "<delay>" is a integer representing an amount
  of time in milliseconds: sets the default delay between two input
  events;
- "pause <delay>" where "<delay>" is a integer representing an amount
  of time in milliseconds: waits the given amount of time before
  sending the next input event;
- "keydown <key>" where "<key>" in a supported keyword associated to a
  keyboard key: presses the given keyboard key until the corresponding
  "keyup <key>" command is emitted;
- "key <key>" where "<key>" in a supported keyword associated to a
  keyboard key: emulates the given key stroke (i.e. pressed then released);
- "write <input>" (resp. "writeln <input>") where "<input>" a
  newline-terminated string: emulates the typing of the given text
  input on the keyboard (resp. including a carriage return at the
  end);
- "cat <file path>" where "<file path>" is a path to a "text" file:
  emulates the typing of the content of the given file on the keyboard;
- "exit" or "quit" to exit this intrerface.
"""

PROMPT = "input> "


class InputError(Exception):
    """A keyboard event could not be produced."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"keyboard error: {self.message}"


class Key(Enum):
    ALT_LEFT = "AltLeft"
    ALT_RIGHT = "AltRight"
    BACKSPACE = "Backspace"
    CONTROL = "Control"
    DELETE = "Delete"
    DOWN = "Down"
    ESCAPE = "Escape"
    F1 = "F1"
    F2 = "F2"
    F3 = "F3"
    F4 = "F4"
    F5 = "F5"
    F6 = "F6"
    F7 = "F7"
    F8 = "F8"
    F9 = "F9"
    F10 = "F10"
    F11 = "F11"
    HYPER_LEFT = "HyperLeft"
    HYPER_RIGHT = "HyperRight"
    LEFT = "Left"
    LEVEL3_SHIFT = "Level3Shift"
    LEVEL5_SHIFT = "Level5Shift"
    META_LEFT = "MetaLeft"
    META_RIGHT = "MetaRight"
    RETURN = "Return"
    RIGHT = "Right"
    SHIFT = "Shift"
    SUPER_LEFT = "SuperLeft"
    SUPER_RIGHT = "SuperRight"
    TAB = "Tab"
    UP = "Up"
    WINDOWS = "Windows"

    def __str__(self) -> str:
        return self.value


_CHAR_ESCAPES = {"\\": "\\\\", "'": "\\'", "\n": "\\n", "\r": "\\r", "\t": "\\t", "\0": "\\0"}


@dataclass(frozen=True)
class PrintableKey:
    """A key producing a single character."""

    char: str

    def __str__(self) -> str:
        char = _CHAR_ESCAPES.get(self.char, self.char)
        return f"Printable('{char}')"


AnyKey = Union[Key, PrintableKey]


@dataclass(frozen=True)
class KeyDown:
    key: AnyKey


@dataclass(frozen=True)
class KeyPress:
    key: AnyKey


@dataclass(frozen=True)
class KeyUp:
    key: AnyKey


@dataclass(frozen=True)
class Write:
    text: str


@dataclass(frozen=True)
class Pause:
    delay: timedelta


@dataclass(frozen=True)
class KeyboardDelay:
    """Setting: default delay between two keyboard events."""

    delay: timedelta


InputAction = Union[KeyDown, KeyPress, KeyUp, Write, Pause]
InputSetting = KeyboardDelay


class InputHandler(ABC):
    """Something that replays input actions on a machine."""

    @abstractmethod
    def set(self, setting: InputSetting) -> None:
        """Apply a setting; raise InputError on failure."""

    @abstractmethod
    def play(self, action: InputAction) -> None:
        """Play one action; raise InputError on failure."""

    @abstractmethod
    def reset(self) -> None:
        """Return to the default settings."""


_KEYS = {
    **dict.fromkeys(("ALT", "ALTL", "ALT_L", "ALT_LEFT"), Key.ALT_LEFT),
    **dict.fromkeys(("ALTR", "ALT_R", "ALT_RIGHT"), Key.ALT_RIGHT),
    "BACKSPACE": Key.BACKSPACE,
    **dict.fromkeys(("CONTROL", "CTRL"), Key.CONTROL),
    **dict.fromkeys(("DELETE", "DEL"), Key.DELETE),
    "DOWN": Key.DOWN,
    **dict.fromkeys(("ESCAPE", "ESC"), Key.ESCAPE),
    "F1": Key.F1,
    "F2": Key.F2,
    "F3": Key.F3,
    "F4": Key.F4,
    "F5": Key.F5,
    "F6": Key.F6,
    "F7": Key.F7,
    "F8": Key.F8,
    "F9": Key.F9,
    "F10": Key.F10,
    "F11": Key.F11,
    **dict.fromkeys(("HYPERL", "HYPER_L", "HYPER_LEFT"), Key.HYPER_LEFT),
    **dict.fromkeys(("HYPERR", "HYPER_R", "HYPER_RIGHT"), Key.HYPER_RIGHT),
    "LEFT": Key.LEFT,
    **dict.fromkeys(("METAL", "META_L", "META_LEFT"), Key.META_LEFT),
    **dict.fromkeys(("METAR", "META_R", "META_RIGHT"), Key.META_RIGHT),
    **dict.fromkeys(("RETURN", "ENTER"), Key.RETURN),
    "RIGHT": Key.RIGHT,
    "SHIFT": Key.SHIFT,
    **dict.fromkeys(("SUPERL", "SUPER_L", "SUPER_LEFT"), Key.SUPER_LEFT),
    **dict.fromkeys(("SUPERR", "SUPER_R", "SUPER_RIGHT"), Key.SUPER_RIGHT),
    "TAB": Key.TAB,
    "UP": Key.UP,
    **dict.fromkeys(("WIN", "WINDOWS"), Key.WINDOWS),
}


def key_lookup(s: str) -> Optional[Key]:
    """The key named by a console keyword, case-insensitively."""
    return _KEYS.get(s.upper())


_DIGITS = frozenset("0123456789")


def _parse_millis(text: str) -> timedelta:
    if not text:
        raise ValueError("cannot parse integer from empty string")
    digits = text[1:] if text.startswith("+") else text
    if not digits or not set(digits) <= _DIGITS:
        raise ValueError("invalid digit found in string")
    value = int(digits)
    if value >= 1 << 64:
        raise ValueError("number too large to fit in target type")
    try:
        return timedelta(milliseconds=value)
    except OverflowError:
        raise ValueError("number too large to fit in target type") from None


def _send_key(channel: Any, out: Any, args: str, action: type) -> None:
    key = key_lookup(args)
    if key is None:
        out.write(b"unknown key\n")
    else:
        channel.send_input_action(action(key))


def _cat(channel: Any, out: Any, path: str) -> None:
    try:
        file = open(path, encoding="utf-8", newline="")
    except OSError as exc:
        out.write(f"failed to open file for reading: {exc}\n".encode("utf-8"))
        return
    with file:
        for line in file:
            channel.send_input_action(Write(line))


def tcp_handler(server: Any, client: socket.socket, channel: Any) -> None:
    """Interactive line-based console turning commands into input actions."""
    with client.makefile("rb") as client_read, client.makefile("wb") as client_write:
        client_write.write(f"{SOXY_LOGO}\n{LOGO}\n{HELP}\n".encode("utf-8"))
        client_write.flush()

        channel.reset_client()

        while True:
            client_write.write(PROMPT.encode("utf-8"))
            client_write.flush()

            raw = client_read.readline()
            if not raw:
                raise BrokenPipeError("disconnected")
            line = raw.decode("utf-8")
            if line.endswith("\n"):
                line = line[:-1]
            if line.endswith("\r"):
                line = line[:-1]

            command, _, args = line.partition(" ")
            command = command.upper()

            logger.debug("%r", line)
            logger.log(TRACE, "COMMAND = %r", command)
            logger.log(TRACE, "ARGS = %r", args)

            if command == "":
                pass
            elif command in ("EXIT", "QUIT"):
                break
            elif command in ("PAUSE", "SLEEP", "DELAY"):
                try:
                    delay = _parse_millis(args)
                except ValueError as exc:
                    client_write.write(f"failed parse delay: {exc}\n".encode("utf-8"))
                else:
                    if command == "DELAY":
                        channel.send_input_setting(KeyboardDelay(delay))
                    else:
                        channel.send_input_action(Pause(delay))
            elif command == "WRITE":
                channel.send_input_action(Write(args))
            elif command == "WRITELN":
                channel.send_input_action(Write(args + "\n"))
            elif command == "KEYDOWN":
                _send_key(channel, client_write, args, KeyDown)
            elif command in ("KEY", "KEYPRESS"):
                _send_key(channel, client_write, args, KeyPress)
            elif command == "KEYUP":
                _send_key(channel, client_write, args, KeyUp)
            elif command == "CAT":
                _cat(channel, client_write, args)
            else:
                client_write.write(b"invalid command\n")

            client_write.flush()

        with suppress(OSError):
            client.shutdown(socket.SHUT_RDWR)


SERVICE = Service(
    name="input",
    internal=False,
    frontend=FrontendTcp(default_port=1081, handler=tcp_handler),
    backend=None,
)