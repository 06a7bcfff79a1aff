from __future__ import annotations

import logging
import socket
import threading
from typing import Optional, Tuple

from .constants import BUFFER_SIZE, THREADED_ACCEPT_TIMEOUT_S
from .net import ForwardingSink, SetupError, open_listener
from .reactor import ForwarderConfig, ForwarderStats

logger = logging.getLogger(__name__)


class ThreadedForwarder:
    """TCP→UDP forwarder with one blocking reader thread per client.

    Same wire behavior as the reactor: each successful recv() becomes one
    datagram. The accept loop wakes up periodically so ``stop()`` is noticed.
    """

    def __init__(self, sock: socket.socket, sink: ForwardingSink, buffer_size: int = BUFFER_SIZE):
        self.sock = sock
        self.sink = sink
        self.buffer_size = buffer_size
        self.address: Tuple[str, int] = sock.getsockname()[:2]
        self.stats = ForwarderStats()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._clients: set[socket.socket] = set()
        self._threads: list[threading.Thread] = []
        self._closed = False

    @classmethod
    def create(cls, config: ForwarderConfig, sink: Optional[ForwardingSink] = None) -> "ThreadedForwarder":
        if sink is None:
            sink = ForwardingSink.resolve(config.udp_host, config.udp_port)
        try:
            sock = open_listener(config.listen_host, config.listen_port, config.backlog, blocking=True)
        except SetupError:
            sink.close()
            raise
        sock.settimeout(THREADED_ACCEPT_TIMEOUT_S)
        return cls(sock, sink, config.buffer_size)

    def stop(self) -> None:
        self._stop.set()

    def serve_forever(self) -> None:
        logger.info(
            "forwarding tcp %s:%d -> udp %s:%d (thread per connection)",
            self.address[0],
            self.address[1],
            self.sink.dest[0],
            self.sink.dest[1],
        )
        try:
            while not self._stop.is_set():
                try:
                    conn, addr = self.sock.accept()
                except TimeoutError:
                    continue
                except OSError as e:
                    logger.error("accept failed: %s", e)
                    continue

                conn.settimeout(None)
                with self._lock:
                    self._clients.add(conn)
                    self.stats.connections_accepted += 1
                t = threading.Thread(target=self._handle_client, args=(conn, addr[:2]), daemon=True)
                self._threads = [th for th in self._threads if th.is_alive()]
                self._threads.append(t)
                t.start()
                logger.info("new client %s:%d", addr[0], addr[1])
        finally:
            self.close()

    def _handle_client(self, conn: socket.socket, addr: Tuple[str, int]) -> None:
        with conn:
            while True:
                try:
                    data = conn.recv(self.buffer_size)
                except OSError as e:
                    if not self._stop.is_set():
                        logger.warning("read from %s:%d failed: %s", addr[0], addr[1], e)
                        with self._lock:
                            self.stats.read_errors += 1
                    break
                if not data:
                    break

                ok = self.sink.forward(data)
                with self._lock:
                    if ok:
                        self.stats.datagrams_forwarded += 1
                        self.stats.bytes_forwarded += len(data)
                    else:
                        self.stats.forward_failures += 1

        logger.info("client %s:%d disconnected", addr[0], addr[1])
        with self._lock:
            self._clients.discard(conn)
            self.stats.connections_closed += 1

    def close(self, join_timeout: float = 1.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        self.sock.close()

        with self._lock:
            clients = list(self._clients)
        for conn in clients:
            # wakes the reader thread blocked in recv()
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for t in self._threads:
            t.join(timeout=join_timeout)

        self.sink.close()
        logger.info("forwarder stopped; %s", self.stats.summary())
