"""Log level selection, log setup and virtual channel naming."""

from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import Optional, Union
import os

VIRTUAL_CHANNEL_DEFAULT_NAME = "SOXY"
LOGGER_NAME = "soxy"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_installed: list = []


def virtual_channel_name(name: str) -> bytes:
    """Return the name as a NUL-padded 8-byte channel name."""
    encoded = name.encode("utf-8")
    if len(encoded) > 7:
        raise ValueError("channel name is too long (> 7)")
    return encoded.ljust(8, b"\x00")


class Level(Enum):
    OFF = logging.CRITICAL + 10
    ERROR = logging.ERROR
    WARN = logging.WARNING
    INFO = logging.INFO
    DEBUG = logging.DEBUG
    TRACE = TRACE

    @classmethod
    def parse(cls, s: str) -> Level:
        name = s.upper()
        if name == "WARNING":
            name = "WARN"
        try:
            return cls[name]
        except KeyError:
            raise ValueError("invalid log level") from None


class _Formatter(logging.Formatter):
    """Shows the thread name only on error records."""

    def format(self, record: logging.LogRecord) -> str:
        record.thread_tag = (
            f"({record.threadName}) " if record.levelno >= logging.ERROR else ""
        )
        return super().format(record)


def init_logs(level: Level, file: Optional[Union[str, os.PathLike]] = None) -> None:
    """Send package logs to the terminal and, if it can be opened, to a file."""
    logger = logging.getLogger(LOGGER_NAME)

    for handler in _installed:
        logger.removeHandler(handler)
        handler.close()
    _installed.clear()

    formatter = _Formatter(
        "%(asctime)s [%(levelname)-5s] %(thread_tag)s%(message)s",
        datefmt="%a, %d %b %Y %H:%M:%S %z",
    )

    handlers: list = [logging.StreamHandler(sys.stderr)]
    if file is not None:
        try:
            handlers.append(logging.FileHandler(file, mode="w", encoding="utf-8"))
        except OSError:
            pass

    for handler in handlers:
        handler.setLevel(level.value)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        _installed.append(handler)

    logger.setLevel(level.value)
    logger.propagate = False