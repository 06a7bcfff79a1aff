from __future__ import annotations

import logging
import selectors
import socket
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class Connection:
    sock: socket.socket
    addr: Tuple[str, int]
    fd: int  # cached: fileno() is -1 once the socket is closed
    registered: bool = False
    closed: bool = False

    @property
    def label(self) -> str:
        return f"{self.addr[0]}:{self.addr[1]} (fd {self.fd})"


class ConnectionTable:
    """Live client connections, keyed by descriptor.

    A connection is in the table exactly while its socket is open and
    registered with the selector. Teardown unregisters before closing so that
    a recycled descriptor number can never be dispatched to a dead entry.
    """

    def __init__(self, selector: selectors.BaseSelector):
        self.selector = selector
        self._by_fd: dict[int, Connection] = {}

    def admit(self, sock: socket.socket, addr: Tuple[str, int]) -> Optional[Connection]:
        try:
            sock.setblocking(False)
        except OSError as e:
            logger.error("cannot make connection from %s non-blocking: %s", addr, e)
            sock.close()
            return None

        conn = Connection(sock=sock, addr=addr, fd=sock.fileno())
        try:
            self.selector.register(sock, selectors.EVENT_READ, conn)
        except (OSError, ValueError, KeyError) as e:
            logger.error("cannot register connection %s: %s", conn.label, e)
            sock.close()
            return None

        conn.registered = True
        self._by_fd[conn.fd] = conn
        return conn

    def teardown(self, conn: Connection) -> None:
        if conn.closed:
            return
        if conn.registered:
            try:
                self.selector.unregister(conn.sock)
            except (KeyError, ValueError) as e:
                logger.debug("unregister of %s failed: %s", conn.label, e)
            conn.registered = False
        self._by_fd.pop(conn.fd, None)
        conn.sock.close()
        conn.closed = True

    def close_all(self) -> int:
        conns = list(self._by_fd.values())
        for conn in conns:
            self.teardown(conn)
        return len(conns)

    def get(self, fd: int) -> Optional[Connection]:
        return self._by_fd.get(fd)

    def __len__(self) -> int:
        return len(self._by_fd)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._by_fd.values()))

    def __contains__(self, conn: object) -> bool:
        return isinstance(conn, Connection) and self._by_fd.get(conn.fd) is conn
