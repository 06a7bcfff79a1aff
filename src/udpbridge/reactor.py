from __future__ import annotations

import enum
import errno
import logging
import selectors
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .connections import Connection, ConnectionTable
from .constants import (
    ACCEPT_RETRY_DELAY_S,
    BUFFER_SIZE,
    DEFAULT_LISTEN_HOST,
    LISTEN_BACKLOG,
    MAX_DATAGRAM_SIZE,
    POLL_TIMEOUT_MS,
)
from .control import ControlChannel
from .net import ForwardingSink, SetupError, open_listener

logger = logging.getLogger(__name__)

# accept() errors that concern only the connection being accepted
_ACCEPT_SKIP_ERRNOS = {errno.ECONNABORTED, errno.EPERM, errno.EPROTO}


@dataclass(frozen=True, slots=True)
class ForwarderConfig:
    listen_port: int
    udp_host: str
    udp_port: int
    listen_host: str = DEFAULT_LISTEN_HOST
    buffer_size: int = BUFFER_SIZE
    poll_timeout_ms: int = POLL_TIMEOUT_MS
    backlog: int = LISTEN_BACKLOG

    def __post_init__(self) -> None:
        # every read must fit in one datagram
        if not 0 < self.buffer_size <= MAX_DATAGRAM_SIZE:
            raise ValueError(f"buffer_size must be in 1..{MAX_DATAGRAM_SIZE}, got {self.buffer_size}")


@dataclass(slots=True)
class ForwarderStats:
    connections_accepted: int = 0
    connections_closed: int = 0
    datagrams_forwarded: int = 0
    bytes_forwarded: int = 0
    forward_failures: int = 0
    read_errors: int = 0
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: float | None = None

    @property
    def duration_s(self) -> float:
        end = self.end_ts if self.end_ts is not None else time.monotonic()
        return max(0.0, end - self.start_ts)

    def summary(self) -> str:
        return (
            f"connections={self.connections_accepted} closed={self.connections_closed} "
            f"datagrams={self.datagrams_forwarded} bytes={self.bytes_forwarded} "
            f"forward_failures={self.forward_failures} read_errors={self.read_errors} "
            f"uptime={self.duration_s:.1f}s"
        )


@dataclass(slots=True)
class ForwarderContext:
    """Everything one reactor instance shares between its components."""

    selector: selectors.BaseSelector
    connections: ConnectionTable
    sink: ForwardingSink
    buffer_size: int = BUFFER_SIZE
    stats: ForwarderStats = field(default_factory=ForwarderStats)


class ReadOutcome(enum.Enum):
    OPEN = "open"
    DISCONNECT = "disconnect"
    ERROR = "error"


def read_and_forward(ctx: ForwarderContext, conn: Connection) -> ReadOutcome:
    """Drain a readable connection, one datagram per successful read.

    A failed forward is counted and the drain goes on; only the TCP side can
    end the connection.
    """
    while True:
        try:
            data = conn.sock.recv(ctx.buffer_size)
        except BlockingIOError:
            return ReadOutcome.OPEN
        except InterruptedError:
            continue
        except OSError as e:
            logger.warning("read from %s failed: %s", conn.label, e)
            ctx.stats.read_errors += 1
            return ReadOutcome.ERROR

        if not data:
            logger.info("client %s disconnected", conn.label)
            return ReadOutcome.DISCONNECT

        if ctx.sink.forward(data):
            ctx.stats.datagrams_forwarded += 1
            ctx.stats.bytes_forwarded += len(data)
        else:
            ctx.stats.forward_failures += 1


class Listener:
    def __init__(self, ctx: ForwarderContext, sock: socket.socket):
        self.ctx = ctx
        self.sock = sock
        self.address: Tuple[str, int] = sock.getsockname()[:2]
        self.closed = False
        self.resume_at: float | None = None

    @property
    def paused(self) -> bool:
        return self.resume_at is not None

    def accept_all(self) -> int:
        """Accept until the backlog is empty; returns how many were admitted.

        Errors other than the per-connection ones pause the listener for
        ACCEPT_RETRY_DELAY_S. The failing connection stays in the backlog,
        and a level-triggered selector would report it again on every wait.
        """
        admitted = 0
        while True:
            try:
                sock, addr = self.sock.accept()
            except BlockingIOError:
                break
            except InterruptedError:
                continue
            except OSError as e:
                logger.error("accept failed: %s", e)
                if e.errno in _ACCEPT_SKIP_ERRNOS:
                    continue
                self.pause()
                break

            conn = self.ctx.connections.admit(sock, addr[:2])
            if conn is None:
                continue
            self.ctx.stats.connections_accepted += 1
            admitted += 1
            logger.info("new client %s", conn.label)
        return admitted

    def pause(self, delay: float = ACCEPT_RETRY_DELAY_S) -> None:
        if self.paused or self.closed:
            return
        try:
            self.ctx.selector.unregister(self.sock)
        except (KeyError, ValueError):
            pass
        self.resume_at = time.monotonic() + delay
        logger.warning("listener paused for %.2fs", delay)

    def maybe_resume(self) -> None:
        if self.resume_at is None or self.closed or time.monotonic() < self.resume_at:
            return
        self.resume_at = None
        try:
            self.ctx.selector.register(self.sock, selectors.EVENT_READ, self)
        except (OSError, ValueError, KeyError) as e:
            logger.error("cannot re-register listener: %s", e)
            self.pause()

    def close(self) -> None:
        if self.closed:
            return
        try:
            self.ctx.selector.unregister(self.sock)
        except (KeyError, ValueError):
            pass
        self.sock.close()
        self.closed = True


class Reactor:
    """Single-threaded TCP→UDP forwarder.

    One thread waits on the selector, hands readable sockets to the listener
    or to ``read_and_forward``, and checks the control channel between waits.
    ``stop()`` is the only method meant to be called from other threads.
    """

    def __init__(
        self,
        ctx: ForwarderContext,
        listener: Listener,
        control: Optional[ControlChannel] = None,
        poll_timeout: float = POLL_TIMEOUT_MS / 1000.0,
    ):
        self.ctx = ctx
        self.listener = listener
        self.control = control
        self.poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._closed = False

    @classmethod
    def create(
        cls,
        config: ForwarderConfig,
        control: Optional[ControlChannel] = None,
        sink: Optional[ForwardingSink] = None,
    ) -> "Reactor":
        if sink is None:
            sink = ForwardingSink.resolve(config.udp_host, config.udp_port)

        try:
            selector = selectors.DefaultSelector()
        except OSError as e:
            sink.close()
            raise SetupError(f"selector: {e}") from e

        try:
            listen_sock = open_listener(config.listen_host, config.listen_port, config.backlog)
        except SetupError:
            selector.close()
            sink.close()
            raise

        ctx = ForwarderContext(
            selector=selector,
            connections=ConnectionTable(selector),
            sink=sink,
            buffer_size=config.buffer_size,
        )
        listener = Listener(ctx, listen_sock)
        try:
            selector.register(listen_sock, selectors.EVENT_READ, listener)
        except (OSError, ValueError) as e:
            listen_sock.close()
            selector.close()
            sink.close()
            raise SetupError(f"register listener: {e}") from e

        return cls(ctx, listener, control, poll_timeout=config.poll_timeout_ms / 1000.0)

    @property
    def address(self) -> Tuple[str, int]:
        return self.listener.address

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    @property
    def stats(self) -> ForwarderStats:
        return self.ctx.stats

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:
        dest = self.ctx.sink.dest
        logger.info(
            "forwarding tcp %s:%d -> udp %s:%d",
            self.address[0],
            self.address[1],
            dest[0],
            dest[1],
        )
        try:
            while not self._stop.is_set():
                if self.control is not None and self.control.poll_shutdown_requested():
                    logger.info("shutdown requested from console")
                    self.stop()
                    break

                self.listener.maybe_resume()
                try:
                    events = self.ctx.selector.select(self.poll_timeout)
                except InterruptedError:
                    continue
                except OSError as e:
                    logger.error("readiness wait failed: %s", e)
                    raise

                self._dispatch(events)
        finally:
            self.close()

    def _dispatch(self, events: List[Tuple[selectors.SelectorKey, int]]) -> None:
        for key, _mask in events:
            if key.fileobj is self.listener.sock:
                self.listener.accept_all()
                continue

            conn: Connection = key.data
            if conn.closed:
                # torn down earlier in this batch
                continue
            if read_and_forward(self.ctx, conn) is not ReadOutcome.OPEN:
                self.ctx.connections.teardown(conn)
                self.ctx.stats.connections_closed += 1

    def close(self) -> None:
        """Stop accepting, close every tracked connection, release the sink."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()

        self.listener.close()
        self.ctx.stats.connections_closed += self.ctx.connections.close_all()
        self.ctx.sink.close()
        self.ctx.selector.close()

        self.ctx.stats.end_ts = time.monotonic()
        logger.info("forwarder stopped; %s", self.ctx.stats.summary())

    def __enter__(self) -> "Reactor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
