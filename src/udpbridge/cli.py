from __future__ import annotations

import argparse
import contextlib
import logging
import signal
import sys
import threading
from typing import Callable, Iterator

from .client import format_message, send_message
from .constants import (
    BUFFER_SIZE,
    DEFAULT_LISTEN_HOST,
    LISTEN_BACKLOG,
    LOG_SERVER_RECV_TIMEOUT_S,
    MAX_DATAGRAM_SIZE,
    POLL_TIMEOUT_MS,
)
from .control import ControlChannel
from .logserver import LogServer
from .net import SetupError, bind_udp
from .reactor import ForwarderConfig, Reactor
from .threaded import ThreadedForwarder

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class ArgumentParser(argparse.ArgumentParser):
    # bad arguments are a setup failure like any other: exit status 1
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def port(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from None
    if not 0 < n < 65536:
        raise argparse.ArgumentTypeError(f"port out of range: {n}")
    return n


def positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {n}")
    return n


def buffer_size(value: str) -> int:
    n = positive_int(value)
    if n > MAX_DATAGRAM_SIZE:
        raise argparse.ArgumentTypeError(f"buffer size above the largest UDP payload ({MAX_DATAGRAM_SIZE}): {n}")
    return n


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level), format="%(asctime)s [%(levelname)s] %(message)s")


@contextlib.contextmanager
def stop_on_signals(stop: Callable[[], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``stop`` for the duration of the block."""
    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, lambda *_: stop())
        except ValueError:
            # not the main thread
            pass
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def wait_for_quit(worker: threading.Thread, stop: threading.Event, interval: float = 0.5) -> None:
    control = ControlChannel.from_stdin()
    while worker.is_alive() and not stop.is_set():
        if control is not None and not control.closed:
            if control.poll_shutdown_requested(timeout=interval):
                return
        else:
            stop.wait(interval)


def add_forward_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("tcp_port", type=port, help="TCP port to accept clients on")
    p.add_argument("udp_host", help="UDP destination host")
    p.add_argument("udp_port", type=port, help="UDP destination port")
    p.add_argument("--listen-host", default=DEFAULT_LISTEN_HOST)
    p.add_argument("--buffer-size", type=buffer_size, default=BUFFER_SIZE, help="bytes per read / max datagram")
    p.add_argument("--backlog", type=positive_int, default=LISTEN_BACKLOG)


def config_from_args(args: argparse.Namespace) -> ForwarderConfig:
    return ForwarderConfig(
        listen_port=args.tcp_port,
        udp_host=args.udp_host,
        udp_port=args.udp_port,
        listen_host=args.listen_host,
        buffer_size=args.buffer_size,
        poll_timeout_ms=getattr(args, "poll_timeout_ms", POLL_TIMEOUT_MS),
        backlog=args.backlog,
    )


def cmd_forward(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    try:
        reactor = Reactor.create(config, control=ControlChannel.from_stdin())
    except SetupError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(
        f"TCP server listening on port {reactor.address[1]}, "
        f"forwarding to UDP {config.udp_host}:{config.udp_port}"
    )
    print("Type 'quit' and press Enter to exit the server gracefully.", flush=True)

    with stop_on_signals(reactor.stop):
        try:
            reactor.run()
        except OSError as e:
            print(f"error: event loop failed: {e}", file=sys.stderr)
            return 1
    return 0


def cmd_forward_threaded(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    try:
        forwarder = ThreadedForwarder.create(config)
    except SetupError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(
        f"TCP server listening on port {forwarder.address[1]}, "
        f"forwarding to UDP {config.udp_host}:{config.udp_port}"
    )
    print("Type 'quit' and press Enter to exit the server gracefully.", flush=True)

    stop = threading.Event()
    worker = threading.Thread(target=forwarder.serve_forever, daemon=True)
    with stop_on_signals(stop.set):
        worker.start()
        wait_for_quit(worker, stop)
    forwarder.stop()
    worker.join()
    return 0


def cmd_log_server(args: argparse.Namespace) -> int:
    try:
        sock = bind_udp(args.listen_host, args.udp_port, timeout_s=LOG_SERVER_RECV_TIMEOUT_S)
    except SetupError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    try:
        out = open(args.log_file, "ab", buffering=0)
    except OSError as e:
        sock.close()
        print(f"error: open {args.log_file}: {e}", file=sys.stderr)
        return 1

    print(f"UDP server listening on port {args.udp_port}, writing to {args.log_file}")
    print("Type 'quit' and press Enter to exit the server gracefully.", flush=True)

    stop = threading.Event()
    server = LogServer(sock, out)
    worker = threading.Thread(target=server.run, args=(stop,), daemon=True)
    with out, sock, stop_on_signals(stop.set):
        worker.start()
        wait_for_quit(worker, stop)
        stop.set()
        worker.join()
    print("UDP server stopped.")
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    payload = format_message(args.message)
    try:
        send_message(args.mode, args.host, args.port, payload)
    except OSError as e:
        print(f"error: failed to send {args.mode.upper()} message: {e}", file=sys.stderr)
        return 1
    print(f"{args.mode.upper()} message sent to {args.host}:{args.port}")
    return 0


def forward_main(argv: list[str] | None = None) -> int:
    """Entry point of ``tcp2udp <tcp_listen_port> <udp_target_host> <udp_target_port>``."""
    p = ArgumentParser(prog="tcp2udp", description="Forward TCP client data to a UDP destination.")
    add_forward_args(p)
    p.add_argument("--poll-timeout-ms", type=positive_int, default=POLL_TIMEOUT_MS)
    p.add_argument("--log-level", default="INFO", choices=LOG_LEVELS)
    args = p.parse_args(argv)
    configure_logging(args.log_level)
    return cmd_forward(args)


def main(argv: list[str] | None = None) -> int:
    p = ArgumentParser(prog="udpbridge", description="TCP→UDP bridge utilities.")
    p.add_argument("--log-level", default="INFO", choices=LOG_LEVELS)
    sub = p.add_subparsers(dest="cmd", required=True)

    fwd = sub.add_parser("forward", help="single-threaded selector-based forwarder")
    add_forward_args(fwd)
    fwd.add_argument("--poll-timeout-ms", type=positive_int, default=POLL_TIMEOUT_MS)
    fwd.set_defaults(func=cmd_forward)

    thr = sub.add_parser("forward-threaded", help="forwarder with one thread per client")
    add_forward_args(thr)
    thr.set_defaults(func=cmd_forward_threaded)

    logsrv = sub.add_parser("log-server", help="append received UDP datagrams to a file")
    logsrv.add_argument("udp_port", type=port)
    logsrv.add_argument("log_file")
    logsrv.add_argument("--listen-host", default=DEFAULT_LISTEN_HOST)
    logsrv.set_defaults(func=cmd_log_server)

    send = sub.add_parser("send", help="send one timestamped test message")
    send.add_argument("mode", choices=["tcp", "udp"])
    send.add_argument("host")
    send.add_argument("port", type=port)
    send.add_argument("message")
    send.set_defaults(func=cmd_send)

    args = p.parse_args(argv)
    configure_logging(args.log_level)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
