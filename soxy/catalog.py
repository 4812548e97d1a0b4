"""The set of services this package provides."""

from __future__ import annotations

from typing import Tuple

from soxy import clipboard, command, forward, input, socks5, stage0
from soxy.service import Service, lookup, register

_SERVICES: Tuple[Service, ...] = (
    clipboard.SERVICE,
    command.SERVICE,
    forward.SERVICE,
    input.SERVICE,
    socks5.SERVICE,
    stage0.SERVICE,
)


def load_services() -> Tuple[Service, ...]:
    """Register every known service once and return them in catalog order."""
    for service in _SERVICES:
        if lookup(service.name) is None:
            register(service)
    return _SERVICES