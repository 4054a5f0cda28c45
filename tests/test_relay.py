import anyio
import pytest

from ssh2tcp import gvars
from ssh2tcp.relay import Relay, RelaySession
from ssh2tcp.transports.base.channel import Channel
from ssh2tcp.transports.base.client import ClientBase
from ssh2tcp.transports.base.server import ServerBase
from ssh2tcp.utils import TaskCounter

gvars.logger.setLevel(10)


class Pipe:
    "One direction of an in-memory byte stream."

    def __init__(self):
        self.buffer = bytearray()
        self.eof = False
        self.closed = False
        self.changed = anyio.Event()

    def _notify(self):
        self.changed.set()
        self.changed = anyio.Event()

    async def read(self, size):
        while not self.buffer:
            if self.closed:
                raise anyio.ClosedResourceError
            if self.eof:
                return b""
            await self.changed.wait()
        data = bytes(self.buffer[:size])
        del self.buffer[:size]
        return data

    def write(self, data):
        if self.closed or self.eof:
            raise anyio.BrokenResourceError
        self.buffer += data
        self._notify()

    def write_eof(self):
        self.eof = True
        self._notify()

    def close(self):
        self.closed = True
        self._notify()


class MemoryChannel(Channel):
    proto = "MEM"

    def __init__(self, incoming, outgoing, name):
        self.incoming = incoming
        self.outgoing = outgoing
        self.local_addr = (name, 0)
        self.peer_addr = (name, 1)
        self.close_count = 0

    async def recv(self, size):
        return await self.incoming.read(size)

    async def sendall(self, data):
        self.outgoing.write(data)
        await anyio.sleep(0)

    async def close(self):
        self.close_count += 1
        self.incoming.close()
        self.outgoing.close()

    async def read_all(self):
        chunks = []
        while True:
            try:
                data = await self.recv(gvars.PACKET_SIZE)
            except anyio.ClosedResourceError:
                break
            if not data:
                break
            chunks.append(data)
        return b"".join(chunks)


def channel_pair(name):
    "Returns the relay's end and the remote end of a new connection."
    forward, backward = Pipe(), Pipe()
    near = MemoryChannel(backward, forward, f"{name}-near")
    far = MemoryChannel(forward, backward, f"{name}-far")
    return near, far


class FakeServer(ServerBase):
    proto = "FAKE"

    def __init__(self, fail_at=None, listen_error=None):
        super().__init__(("fake", 0))
        self.fail_at = fail_at
        self.listen_error = listen_error
        self.backlog = []
        self.accepted = []
        self.accept_calls = 0
        self.closed = False
        self.changed = None

    def _notify(self):
        self.changed.set()
        self.changed = anyio.Event()

    async def _listen(self):
        if self.listen_error:
            raise self.listen_error
        self.changed = anyio.Event()

    def dial(self):
        near, far = channel_pair(f"in{len(self.backlog) + len(self.accepted)}")
        self.backlog.append(near)
        self._notify()
        return far

    async def accept(self, send_stream):
        self.accept_calls += 1
        if self.accept_calls == self.fail_at:
            raise OSError("accept failed")
        while not self.backlog:
            if self.closed:
                raise anyio.ClosedResourceError
            await self.changed.wait()
        channel = self.backlog.pop(0)
        self.accepted.append(channel)
        await self.push(channel, send_stream)

    async def close(self):
        self.closed = True
        if self.changed:
            self._notify()


class FakeClient(ClientBase):
    proto = "FAKE"

    def __init__(self, fail_calls=()):
        super().__init__(("fake", 1))
        self.fail_calls = fail_calls
        self.calls = 0
        self.dialed = []
        self.remotes = []

    async def _connect(self):
        self.calls += 1
        if self.calls in self.fail_calls:
            raise ConnectionRefusedError("connection refused")
        near, far = channel_pair(f"out{self.calls}")
        self.dialed.append(near)
        self.remotes.append(far)
        return near


class RecordingRelay(Relay):
    def __init__(self, server, client):
        super().__init__(server, client)
        self.spawned = []

    def spawn(self, channel, task_group):
        session = super().spawn(channel, task_group)
        self.spawned.append(session)
        return session


async def wait_until(predicate):
    while not predicate():
        await anyio.sleep(0.01)


def run_relay(server, client, job):
    relay = RecordingRelay(server, client)

    async def main():
        async with anyio.create_task_group() as g:
            await g.start(relay.run, ())
            with anyio.fail_after(5):
                await job(relay)
            relay.stop()

    anyio.run(main)
    return relay


def test_one_session_per_connection():
    server, client = FakeServer(), FakeClient()

    async def job(relay):
        remotes = [server.dial() for i in range(5)]
        await wait_until(lambda: len(client.remotes) == 5)
        for i, remote in enumerate(remotes):
            await remote.sendall(f"hello {i}".encode())
        for i, remote in enumerate(client.remotes):
            assert await remote.recv(100) == f"hello {i}".encode()
        assert relay.session_count == 5

    relay = run_relay(server, client, job)
    assert len(set(map(id, server.accepted))) == 5
    assert len(set(map(id, client.dialed))) == 5
    for channel in server.accepted + client.dialed:
        assert channel.close_count == 1
    assert relay.tasks.count == 0


def test_close_is_idempotent():
    async def main():
        inbound, _ = channel_pair("in")
        outbound, _ = channel_pair("out")
        session = RelaySession(inbound, FakeClient(), anyio.Event(), TaskCounter())
        session.outbound = outbound
        for i in range(3):
            await session.close()
        assert session.state == "closed"
        assert inbound.close_count == 1
        assert outbound.close_count == 1

    anyio.run(main)


def test_both_directions_ending_close_once():
    server, client = FakeServer(), FakeClient()

    async def job(relay):
        remote_in = server.dial()
        await wait_until(lambda: client.remotes)
        remote_out = client.remotes[0]
        await remote_in.close()
        await remote_out.close()
        await wait_until(lambda: relay.tasks.count == 2)

    run_relay(server, client, job)
    assert server.accepted[0].close_count == 1
    assert client.dialed[0].close_count == 1


def test_dial_failure():
    server, client = FakeServer(), FakeClient(fail_calls={1})

    async def job(relay):
        failed = server.dial()
        await wait_until(lambda: server.accepted and server.accepted[0].close_count)
        await wait_until(lambda: relay.tasks.count == 2)
        with pytest.raises(anyio.ClosedResourceError):
            await failed.recv(100)
        (session,) = relay.spawned
        assert session.state == "closed"
        assert session.outbound is None
        assert session.transferred == {"s2c": 0, "c2s": 0}

        remote = server.dial()
        await wait_until(lambda: client.remotes)
        await remote.sendall(b"still works")
        assert await client.remotes[0].recv(100) == b"still works"

    relay = run_relay(server, client, job)
    assert relay.session_count == 2
    assert client.calls == 2


def test_bytes_in_order():
    server, client = FakeServer(), FakeClient()
    chunks = [bytes([i]) * (i + 1) for i in range(200)]

    async def job(relay):
        remote_in = server.dial()
        await wait_until(lambda: client.remotes)
        remote_out = client.remotes[0]
        async with anyio.create_task_group() as g:

            async def write(channel):
                for chunk in chunks:
                    await channel.sendall(chunk)

            g.start_soon(write, remote_in)
            g.start_soon(write, remote_out)
        expected = b"".join(chunks)
        received = bytearray()
        while len(received) < len(expected):
            received += await remote_out.recv(gvars.PACKET_SIZE)
        assert received == expected
        received = bytearray()
        while len(received) < len(expected):
            received += await remote_in.recv(gvars.PACKET_SIZE)
        assert received == expected

    run_relay(server, client, job)


def test_get_request_and_eof():
    server, client = FakeServer(), FakeClient()

    async def job(relay):
        remote_in = server.dial()
        await remote_in.sendall(b"GET /\r\n")
        await wait_until(lambda: client.remotes)
        remote_out = client.remotes[0]
        assert await remote_out.recv(100) == b"GET /\r\n"
        await remote_out.sendall(b"HTTP/1.0 200 OK\r\n\r\n")
        remote_out.outgoing.write_eof()
        assert await remote_in.read_all() == b"HTTP/1.0 200 OK\r\n\r\n"
        (session,) = relay.spawned
        await wait_until(lambda: session.state == "closed")
        assert session.transferred == {"s2c": 7, "c2s": 19}

    run_relay(server, client, job)


def test_session_released_before_shutdown():
    server, client = FakeServer(), FakeClient()

    async def job(relay):
        remote_in = server.dial()
        await wait_until(lambda: relay.tasks.count == 5)
        assert len(relay.sessions) == 1
        await remote_in.close()
        await wait_until(lambda: relay.tasks.count == 2)
        assert not relay.sessions
        assert not relay.shutdown.is_set()

    run_relay(server, client, job)


def test_shutdown_closes_sessions():
    server, client = FakeServer(), FakeClient()

    async def job(relay):
        server.dial()
        await wait_until(lambda: client.remotes)
        assert relay.sessions == set(relay.spawned)

    relay = run_relay(server, client, job)
    (session,) = relay.spawned
    assert relay.shutdown.is_set()
    assert session.state == "closed"
    assert relay.tasks.count == 0
    assert server.closed
    assert not relay.sessions
    assert client.closed


def test_no_session_after_shutdown():
    async def main():
        relay = Relay(FakeServer(), FakeClient())
        relay.shutdown = anyio.Event()
        relay.tasks = TaskCounter()
        relay.tasks.add()
        send_stream, receive_stream = anyio.create_memory_object_stream(2)
        late = [channel_pair(f"late{i}")[0] for i in range(2)]
        for channel in late:
            send_stream.send_nowait(channel)
        send_stream.close()
        relay.shutdown.set()
        async with anyio.create_task_group() as g:
            await relay.dispatch(receive_stream, g)
        assert relay.session_count == 0
        assert relay.tasks.count == 0
        assert [channel.close_count for channel in late] == [1, 1]

    anyio.run(main)


def test_accept_error_stops_ingestion():
    server, client = FakeServer(fail_at=3), FakeClient()

    async def job(relay):
        server.dial()
        server.dial()
        await wait_until(lambda: server.accept_calls == 3)
        server.dial()
        await anyio.sleep(0.1)
        assert len(server.backlog) == 1
        assert relay.session_count == 2
        assert not relay.shutdown.is_set()

    relay = run_relay(server, client, job)
    assert server.accept_calls == 3
    assert len(client.dialed) == 2


def test_listen_failure():
    server = FakeServer(listen_error=OSError("address already in use"))
    relay = Relay(server, FakeClient())
    with pytest.raises(OSError):
        anyio.run(relay.run, ())
    assert relay.session_count == 0
    assert relay.tasks.count == 0


def test_stop_before_run():
    relay = Relay(FakeServer(), FakeClient())
    with pytest.raises(RuntimeError):
        relay.stop()


def test_drain_logs_live_sessions(caplog):
    caplog.set_level(10, logger=gvars.logger.name)
    server, client = FakeServer(), FakeClient()

    async def job(relay):
        server.dial()
        await wait_until(lambda: client.remotes)

    run_relay(server, client, job)
    assert "still splicing" in caplog.text
