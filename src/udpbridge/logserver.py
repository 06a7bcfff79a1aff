from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from typing import BinaryIO

from .constants import BUFFER_SIZE

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LogServer:
    """Appends the payload of every datagram received on ``sock`` to ``out``.

    ``sock`` should carry a receive timeout so the stop flag is rechecked
    even when no traffic arrives.
    """

    sock: socket.socket
    out: BinaryIO
    buffer_size: int = BUFFER_SIZE
    datagrams: int = 0
    bytes_written: int = 0

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                data, _addr = self.sock.recvfrom(self.buffer_size)
            except TimeoutError:
                continue
            except OSError as e:
                if stop.is_set() or self.sock.fileno() == -1:
                    break
                logger.warning("recvfrom failed: %s", e)
                continue

            if stop.is_set():
                break

            self.out.write(data)
            self.out.flush()
            self.datagrams += 1
            self.bytes_written += len(data)

        logger.info("log server done; datagrams=%d bytes=%d", self.datagrams, self.bytes_written)
