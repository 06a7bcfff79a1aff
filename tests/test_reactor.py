from __future__ import annotations

import dataclasses
import errno
import os
import socket
import threading

import pytest

from conftest import recv_bytes, wait_for
from udpbridge.constants import MAX_DATAGRAM_SIZE
from udpbridge.control import ControlChannel
from udpbridge.net import ForwardingSink
from udpbridge.reactor import Reactor


def connect(reactor: Reactor) -> socket.socket:
    return socket.create_connection(reactor.address, timeout=2.0)


def test_hello_world_then_disconnect(reactor, udp_receiver):
    with connect(reactor) as c:
        c.sendall(b"hello")
        assert udp_receiver.recvfrom(65535)[0] == b"hello"
        c.sendall(b"world")
        assert udp_receiver.recvfrom(65535)[0] == b"world"
        assert wait_for(lambda: len(reactor.ctx.connections) == 1)

    assert wait_for(lambda: len(reactor.ctx.connections) == 0)
    assert reactor.stats.connections_closed == 1

    # listener keeps accepting after a client leaves
    with connect(reactor) as c:
        c.sendall(b"again")
        assert udp_receiver.recvfrom(65535)[0] == b"again"


def test_large_burst_is_split_in_order(reactor, udp_receiver):
    payload = bytes(i % 251 for i in range(20_000))
    with connect(reactor) as c:
        c.sendall(payload)
        got = recv_bytes(udp_receiver, len(payload))

    assert all(0 < len(d) <= 4096 for d in got)
    assert b"".join(got) == payload
    assert reactor.stats.bytes_forwarded == len(payload)


def test_concurrent_clients_keep_per_connection_order(reactor, udp_receiver):
    n_clients = 5
    chunks = 20
    expected = {}
    clients = [connect(reactor) for _ in range(n_clients)]
    try:
        for i in range(n_clients):
            upper, lower = chr(ord("A") + i).encode(), chr(ord("a") + i).encode()
            expected[i] = b"".join((upper if k % 2 == 0 else lower) * 10 for k in range(chunks))

        def send(i: int) -> None:
            data = expected[i]
            for k in range(chunks):
                clients[i].sendall(data[k * 10 : (k + 1) * 10])

        threads = [threading.Thread(target=send, args=(i,)) for i in range(n_clients)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        got = recv_bytes(udp_receiver, sum(len(v) for v in expected.values()))
    finally:
        for c in clients:
            c.close()

    per_client: dict[int, bytes] = {i: b"" for i in range(n_clients)}
    for datagram in got:
        owners = {(b | 0x20) - ord("a") for b in datagram}
        assert len(owners) == 1, f"datagram mixes connections: {datagram!r}"
        per_client[owners.pop()] += datagram

    assert per_client == expected


def test_two_clients_payloads_arrive_whole(reactor, udp_receiver):
    a, b = connect(reactor), connect(reactor)
    try:
        a.sendall(b"AAA")
        b.sendall(b"BBB")
        got = sorted(udp_receiver.recvfrom(65535)[0] for _ in range(2))
    finally:
        a.close()
        b.close()
    assert got == [b"AAA", b"BBB"]


class FlakySink(ForwardingSink):
    def __init__(self, sock, dest, failures: int):
        super().__init__(sock, dest)
        self.failures = failures

    def forward(self, data: bytes) -> bool:
        if self.failures > 0:
            self.failures -= 1
            return False
        return super().forward(data)


def test_forward_failure_keeps_connection_open(forwarder_config, udp_receiver):
    real = ForwardingSink.resolve(forwarder_config.udp_host, forwarder_config.udp_port)
    sink = FlakySink(real.sock, real.dest, failures=1)
    r = Reactor.create(forwarder_config, sink=sink)
    t = threading.Thread(target=r.run, daemon=True)
    t.start()
    try:
        with connect(r) as c, connect(r) as other:
            c.sendall(b"lost")
            assert wait_for(lambda: r.stats.forward_failures == 1)
            c.sendall(b"kept")
            assert udp_receiver.recvfrom(65535)[0] == b"kept"
            other.sendall(b"other")
            assert udp_receiver.recvfrom(65535)[0] == b"other"
            assert len(r.ctx.connections) == 2
            assert r.stats.connections_closed == 0
    finally:
        r.stop()
        t.join(timeout=2.0)


def test_quit_on_control_channel_shuts_down(forwarder_config, udp_receiver):
    rfd, wfd = os.pipe()
    r = Reactor.create(forwarder_config, control=ControlChannel(rfd))
    t = threading.Thread(target=r.run, daemon=True)
    t.start()
    try:
        c = connect(r)
        c.sendall(b"before")
        assert udp_receiver.recvfrom(65535)[0] == b"before"
        address = r.address

        os.write(wfd, b"status\nquit\n")
        t.join(timeout=2.0)
        assert not t.is_alive()
        assert not r.running

        # existing connection was closed by the server
        c.settimeout(2.0)
        try:
            assert c.recv(16) == b""
        except ConnectionResetError:
            pass
        c.close()

        with pytest.raises(OSError):
            socket.create_connection(address, timeout=1.0).close()
        assert len(r.ctx.connections) == 0
        assert r.stats.connections_closed == 1
    finally:
        os.close(rfd)
        os.close(wfd)


def test_stop_from_another_thread(forwarder_config):
    r = Reactor.create(forwarder_config)
    t = threading.Thread(target=r.run, daemon=True)
    t.start()
    r.stop()
    t.join(timeout=2.0)
    assert not t.is_alive()
    assert r.listener.closed


def test_instances_are_independent(forwarder_config, udp_receiver):
    with Reactor.create(forwarder_config) as one, Reactor.create(forwarder_config) as two:
        assert one.address != two.address
        assert one.ctx is not two.ctx


@pytest.mark.parametrize("size", [0, MAX_DATAGRAM_SIZE + 1, 100_000])
def test_config_rejects_buffer_larger_than_a_datagram(forwarder_config, size):
    with pytest.raises(ValueError):
        dataclasses.replace(forwarder_config, buffer_size=size)


def test_largest_buffer_forwards_whole_burst(forwarder_config, udp_receiver):
    udp_receiver.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 1 << 20)
    config = dataclasses.replace(forwarder_config, buffer_size=MAX_DATAGRAM_SIZE)
    payload = b"q" * 90_000
    r = Reactor.create(config)
    t = threading.Thread(target=r.run, daemon=True)
    t.start()
    try:
        with connect(r) as c:
            c.sendall(payload)
            got = recv_bytes(udp_receiver, len(payload))
    finally:
        r.stop()
        t.join(timeout=2.0)
    assert b"".join(got) == payload
    assert r.stats.forward_failures == 0


def test_select_failure_cleans_up_and_reraises(forwarder_config):
    r = Reactor.create(forwarder_config)

    def fail(timeout=None):
        raise OSError(errno.EBADF, "Bad file descriptor")

    r.ctx.selector.select = fail
    with pytest.raises(OSError):
        r.run()
    assert r.listener.closed
    assert not r.running


def test_interrupted_wait_is_retried(forwarder_config, udp_receiver):
    r = Reactor.create(forwarder_config)
    real_select = r.ctx.selector.select
    calls = []

    def interrupted_once(timeout=None):
        calls.append(timeout)
        if len(calls) == 1:
            raise InterruptedError()
        return real_select(timeout)

    r.ctx.selector.select = interrupted_once
    t = threading.Thread(target=r.run, daemon=True)
    t.start()
    try:
        with connect(r) as c:
            c.sendall(b"still here")
            assert udp_receiver.recvfrom(65535)[0] == b"still here"
    finally:
        r.stop()
        t.join(timeout=2.0)
    assert len(calls) >= 2
    assert not t.is_alive()
