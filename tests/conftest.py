from __future__ import annotations

import socket
import threading
import time

import pytest

from udpbridge.reactor import ForwarderConfig, Reactor


def recv_bytes(sock: socket.socket, total: int) -> list[bytes]:
    """Collect datagrams until ``total`` payload bytes have arrived."""
    got: list[bytes] = []
    received = 0
    while received < total:
        data, _ = sock.recvfrom(65535)
        got.append(data)
        received += len(data)
    return got


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def udp_receiver():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


@pytest.fixture
def forwarder_config(udp_receiver) -> ForwarderConfig:
    host, port = udp_receiver.getsockname()
    return ForwarderConfig(listen_port=0, udp_host=host, udp_port=port, listen_host="127.0.0.1")


@pytest.fixture
def reactor(forwarder_config):
    r = Reactor.create(forwarder_config)
    t = threading.Thread(target=r.run, daemon=True)
    t.start()
    yield r
    r.stop()
    t.join(timeout=2.0)
