"""Multiplex TCP services (SOCKS5, forwarding, shell, clipboard, input, upload) over one channel."""

__version__ = "4.4.0"