import asyncio
import collections
import os
import random
import signal
import socket
import ssl
import sys
import types

import pytest

from pshs.config import Config, parse_args
from pshs.errors import BindError, ResourceAcquisitionError
from pshs.server import RANDOM_PORT_MAX, RANDOM_PORT_MIN, HTTPServer, State, choose_port


class CountingLoop(asyncio.SelectorEventLoop):
    def __init__(self):
        super().__init__()
        self.close_calls = 0

    def close(self):
        self.close_calls += 1
        super().close()


class FixedRandom:
    def __init__(self, value):
        self.value = value
        self.calls = []

    def randint(self, a, b):
        self.calls.append((a, b))
        return self.value


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def fetch(port, request, ssl_context=None):
    reader, writer = await asyncio.open_connection("127.0.0.1", port, ssl=ssl_context)
    writer.write(request.encode("iso-8859-1"))
    await writer.drain()
    data = await reader.read()
    writer.close()

    head, _, body = data.partition(b"\r\n\r\n")
    lines = head.decode("iso-8859-1").split("\r\n")
    headers = {}
    for line in lines[1:]:
        k, v = line.split(":", 1)
        headers[k.strip().lower()] = v.strip()
    return int(lines[0].split()[1]), headers, body


async def wait_running(server):
    while server.state is not State.RUNNING:
        await asyncio.sleep(0.01)


@pytest.fixture
def shared(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "file.txt").write_bytes(b"hello world")
    return tmp_path


def test_random_port_bounds_passed_to_rng():
    rng = FixedRandom(4242)
    assert choose_port(rng) == 4242
    assert rng.calls == [(1024, 32767)]
    assert (RANDOM_PORT_MIN, RANDOM_PORT_MAX) == (1024, 32767)


def test_random_port_is_uniform():
    rng = random.Random(1234)
    trials = 40000
    buckets = collections.Counter()
    width = (RANDOM_PORT_MAX - RANDOM_PORT_MIN + 1) // 8

    for _ in range(trials):
        port = choose_port(rng)
        assert RANDOM_PORT_MIN <= port <= RANDOM_PORT_MAX
        buckets[(port - RANDOM_PORT_MIN) // width] += 1

    assert set(buckets) == set(range(8))
    for count in buckets.values():
        assert abs(count - trials / 8) < trials / 80


def test_port_zero_draws_random_port(shared):
    port = free_port()
    rng = FixedRandom(port)
    server = HTTPServer(Config(files=("file.txt",), bind="127.0.0.1", upnp=False), rng=rng)
    server.bind()
    try:
        assert server.state is State.BOUND
        assert server.port == port
        assert rng.calls == [(1024, 32767)]
    finally:
        server._stack.close()


def test_explicit_port_does_not_draw(shared):
    port = free_port()
    rng = FixedRandom(1)
    server = HTTPServer(Config(files=("file.txt",), bind="127.0.0.1", port=port, upnp=False), rng=rng)
    server.bind()
    server._stack.close()

    assert rng.calls == []
    assert server.port == port


def test_bind_failure_unwinds(shared):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        port = busy.getsockname()[1]

        server = HTTPServer(Config(files=("file.txt",), bind="127.0.0.1", port=port, upnp=False),
                            loop_factory=CountingLoop)
        with pytest.raises(BindError) as exc:
            server.bind()

    assert exc.value.host == "127.0.0.1"
    assert exc.value.port == port
    assert f"bind(127.0.0.1, {port})" in str(exc.value)
    assert server.state is State.INIT
    assert server.loop.is_closed()
    assert server.loop.close_calls == 1


def test_loop_creation_failure():
    def broken_factory():
        raise OSError("out of file descriptors")

    server = HTTPServer(Config(files=("f",), upnp=False), loop_factory=broken_factory)
    with pytest.raises(ResourceAcquisitionError):
        server.bind()
    assert server.state is State.INIT


def test_listener_creation_failure_unwinds(shared, monkeypatch):
    async def broken_start_server(*args, **kwargs):
        raise OSError("no listener for you")

    monkeypatch.setattr(asyncio, "start_server", broken_start_server)
    server = HTTPServer(Config(files=("file.txt",), bind="127.0.0.1", port=free_port(), upnp=False),
                        loop_factory=CountingLoop)

    with pytest.raises(ResourceAcquisitionError):
        server.bind()
    assert server.loop.close_calls == 1


def test_serve_requires_bind():
    server = HTTPServer(Config(files=("f",), upnp=False))
    with pytest.raises(RuntimeError):
        server.serve()


def test_end_to_end(shared, capsys):
    port = free_port()
    config = parse_args(["-b", "127.0.0.1", "-p", str(port), "-U", "file.txt"])
    rendered = []
    server = HTTPServer(config, loop_factory=CountingLoop, render_qr=rendered.append)
    server.bind()

    assert server.state is State.BOUND
    assert server.routes.paths() == ["/"]

    states = []
    request_stop = server.request_stop

    def recording_request_stop():
        request_stop()
        states.append(server.state)

    server.request_stop = recording_request_stop
    results = {}

    async def client():
        await wait_running(server)
        results["get"] = await fetch(port, "GET /file.txt HTTP/1.1\r\nHost: x\r\n\r\n")
        results["range"] = await fetch(port, "GET /file.txt HTTP/1.1\r\nRange: bytes=0-4\r\n\r\n")
        results["head"] = await fetch(port, "HEAD /file.txt HTTP/1.1\r\n\r\n")
        results["index"] = await fetch(port, "GET / HTTP/1.1\r\n\r\n")
        results["missing"] = await fetch(port, "GET /nope HTTP/1.1\r\n\r\n")
        results["post"] = await fetch(port, "POST /file.txt HTTP/1.1\r\n\r\n")
        results["bad"] = await fetch(port, "garbage\r\n\r\n")
        os.kill(os.getpid(), signal.SIGTERM)

    task = server.loop.create_task(client())
    server.serve()

    assert task.done() and task.exception() is None
    assert states == [State.STOPPING]
    assert server.state is State.STOPPED

    status, headers, body = results["get"]
    assert (status, body) == (200, b"hello world")
    assert headers["content-length"] == "11"
    assert headers["connection"] == "close"

    status, headers, body = results["range"]
    assert (status, body) == (206, b"hello")
    assert headers["content-range"] == "bytes 0-4/11"

    status, headers, body = results["head"]
    assert (status, headers["content-length"], body) == (200, "11", b"")

    status, _, body = results["index"]
    assert status == 200
    assert b'href="/file.txt"' in body

    assert results["missing"][0] == 404
    assert results["post"][0] == 405
    assert results["post"][1]["allow"] == "GET, HEAD"
    assert results["bad"][0] == 400

    err = capsys.readouterr().err
    assert "Ready to share 1 files." in err
    assert f"Bound to 127.0.0.1:{port}." in err
    assert "Terminating due to signal SIGTERM." in err
    assert "reachable at" not in err
    assert rendered == []

    # every resource released exactly once
    assert server.loop.close_calls == 1
    assert server._listener.server is None
    assert signal.getsignal(signal.SIGTERM) == signal.SIG_DFL
    with pytest.raises(OSError):
        socket.create_connection(("127.0.0.1", port), timeout=1).close()


def test_request_stop_is_idempotent(shared):
    server = HTTPServer(Config(files=("file.txt",), bind="127.0.0.1", port=free_port(), upnp=False),
                        loop_factory=CountingLoop)
    server.bind()
    states = []

    async def stop_twice():
        await wait_running(server)
        server.request_stop()
        states.append(server.state)
        server.request_stop()
        states.append(server.state)

    server.loop.create_task(stop_twice())
    server.serve()

    assert states == [State.STOPPING, State.STOPPING]
    assert server.state is State.STOPPED
    assert server.loop.close_calls == 1


def test_in_flight_connections_are_dropped_on_shutdown(shared):
    port = free_port()
    server = HTTPServer(Config(files=("file.txt",), bind="127.0.0.1", port=port, upnp=False),
                        loop_factory=CountingLoop)
    server.bind()
    engine = server._listener.engine
    idle = []

    async def idle_client():
        await wait_running(server)
        idle.append(await asyncio.open_connection("127.0.0.1", port))
        while engine.active_connections == 0:
            await asyncio.sleep(0.01)
        os.kill(os.getpid(), signal.SIGTERM)

    server.loop.create_task(idle_client())
    server.serve()

    assert engine.active_connections == 0
    assert server.state is State.STOPPED
    assert server.loop.close_calls == 1


def test_external_address_is_announced(shared, monkeypatch, capsys):
    deleted = []

    class UPnP:
        lanaddr = "192.168.1.20"
        discoverdelay = 0

        def discover(self):
            return 1

        def selectigd(self):
            return "igd"

        def externalipaddress(self):
            return "203.0.113.7"

        def addportmapping(self, *args):
            return True

        def deleteportmapping(self, port, proto):
            deleted.append((port, proto))

    monkeypatch.setitem(sys.modules, "miniupnpc", types.SimpleNamespace(UPnP=UPnP))

    port = free_port()
    rendered = []
    server = HTTPServer(Config(files=("file.txt",), prefix="files", bind="127.0.0.1", port=port),
                        loop_factory=CountingLoop, render_qr=rendered.append)
    server.bind()

    async def stop():
        await wait_running(server)
        server.request_stop()

    server.loop.create_task(stop())
    server.serve()

    url = f"http://203.0.113.7:{port}/files/file.txt"
    assert server.url == url
    assert rendered == [url]
    assert f"Server reachable at: {url}" in capsys.readouterr().err
    assert deleted == [(port, "TCP")]


def test_tls_end_to_end(shared):
    port = free_port()
    server = HTTPServer(Config(files=("file.txt",), bind="127.0.0.1", port=port, ssl=True, upnp=False),
                        loop_factory=CountingLoop)
    server.bind()

    client_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    client_ctx.check_hostname = False
    client_ctx.verify_mode = ssl.CERT_NONE
    results = {}

    async def client():
        await wait_running(server)
        results["get"] = await fetch(port, "GET /file.txt HTTP/1.1\r\n\r\n", client_ctx)
        server.request_stop()

    server.loop.create_task(client())
    server.serve()

    status, _, body = results["get"]
    assert (status, body) == (200, b"hello world")
