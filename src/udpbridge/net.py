from __future__ import annotations

import logging
import socket
from typing import Tuple

from .constants import LISTEN_BACKLOG

logger = logging.getLogger(__name__)


class SetupError(RuntimeError):
    """A socket or selector needed at startup could not be created."""


class ForwardingSink:
    """Emits datagrams to one fixed UDP destination, resolved once."""

    def __init__(self, sock: socket.socket, dest: Tuple[str, int]):
        self.sock = sock
        self.dest = dest

    @classmethod
    def resolve(cls, host: str, port: int) -> "ForwardingSink":
        try:
            infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_DGRAM)
        except (socket.gaierror, UnicodeError) as e:
            raise SetupError(f"invalid UDP host {host!r}: {e}") from e
        dest = infos[0][4][:2]

        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            raise SetupError(f"udp socket: {e}") from e
        # a full send buffer drops the datagram instead of stalling the loop
        sock.setblocking(False)
        return cls(sock, dest)

    def forward(self, data: bytes) -> bool:
        try:
            self.sock.sendto(data, self.dest)
        except OSError as e:
            logger.warning("udp forward of %d bytes to %s:%d failed: %s", len(data), self.dest[0], self.dest[1], e)
            return False
        logger.debug("forwarded %d bytes to %s:%d", len(data), self.dest[0], self.dest[1])
        return True

    def close(self) -> None:
        self.sock.close()


def open_listener(
    host: str,
    port: int,
    backlog: int = LISTEN_BACKLOG,
    *,
    blocking: bool = False,
) -> socket.socket:
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as e:
        raise SetupError(f"tcp socket: {e}") from e

    step = "setsockopt SO_REUSEADDR"
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        step = "bind"
        sock.bind((host, port))
        step = "listen"
        sock.listen(backlog)
        sock.setblocking(blocking)
    except OSError as e:
        sock.close()
        raise SetupError(f"{step}: {e}") from e
    return sock


def bind_udp(host: str, port: int, timeout_s: float = 0.0) -> socket.socket:
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    except OSError as e:
        raise SetupError(f"udp socket: {e}") from e
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise SetupError(f"bind: {e}") from e
    if timeout_s > 0:
        sock.settimeout(timeout_s)
    return sock


def send_all(sock: socket.socket, data: bytes) -> None:
    """Send every byte of ``data`` over a connected stream socket.

    Partial writes are retried from where they stopped. A send that makes no
    progress raises ConnectionError; any other socket error propagates.
    """
    view = memoryview(data)
    total = len(view)
    sent = 0
    while sent < total:
        n = sock.send(view[sent:])
        if n <= 0:
            raise ConnectionError(f"send made no progress after {sent}/{total} bytes")
        sent += n
