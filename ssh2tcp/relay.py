import signal

import anyio

from . import gvars
from .utils import TaskCounter, human_bytes, wait_first

HANDLED_SIGNALS = (signal.SIGHUP, signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)
STREAM_ERRORS = (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError)


class RelaySession:
    """
    Splices one inbound channel with a freshly dialed outbound channel.

    Whichever direction stops first closes both channels, which is what
    unblocks the other direction. Closing happens once per session no matter
    how many times it is triggered.
    """

    state = "dialing"
    outbound = None

    def __init__(self, inbound, client, shutdown, tasks, logger=None):
        self.inbound = inbound
        self.client = client
        self.shutdown = shutdown
        self.tasks = tasks
        self.logger = logger or gvars.logger
        self.closed = anyio.Event()
        self.transferred = {"s2c": 0, "c2s": 0}

    def __repr__(self):
        return f"{self.__class__.__name__}({self})"

    def __str__(self):
        return f"{self.inbound} -- {self.outbound or self.client}"

    async def run(self):
        try:
            try:
                self.outbound = await self.client.connect()
            except Exception as e:
                self.logger.info(f"{self} dial failed: {e!r}")
                self.closed.set()
                self.state = "closed"
                await self._close_channel(self.inbound)
                return
            self.state = "splicing"
            self.logger.info(self)
            try:
                async with anyio.create_task_group() as g:
                    self.tasks.add(2)
                    g.start_soon(self._splice, self.inbound, self.outbound, "s2c")
                    g.start_soon(self._splice, self.outbound, self.inbound, "c2s")
                    if await wait_first(self.closed.wait, self.shutdown.wait):
                        self.logger.debug(f"{self} shutdown")
                    await self.close()
            except Exception:
                self.logger.exception(f"{self} relay error")
                await self.close()
            s2c = human_bytes(self.transferred["s2c"])
            c2s = human_bytes(self.transferred["c2s"])
            self.logger.debug(f"{self} closed, s2c {s2c} c2s {c2s}")
        finally:
            self.tasks.done()

    async def close(self):
        if self.closed.is_set():
            return
        self.closed.set()
        self.state = "closed"
        with anyio.CancelScope(shield=True):
            if self.outbound is not None:
                await self._close_channel(self.outbound)
            await self._close_channel(self.inbound)

    async def _close_channel(self, channel):
        try:
            await channel.close()
        except STREAM_ERRORS as e:
            self.logger.debug(f"{self} close {channel} {e!r}")

    async def _splice(self, src, dst, direction):
        try:
            while True:
                try:
                    data = await src.recv(gvars.PACKET_SIZE)
                except STREAM_ERRORS as e:
                    self.logger.debug(f"{self} {direction} recv from {src} {e!r}")
                    break
                if not data:
                    self.logger.debug(f"{self} {direction} end of stream")
                    if dst.can_half_close and not self.closed.is_set():
                        await dst.close_write()
                    break
                try:
                    await dst.sendall(data)
                except STREAM_ERRORS as e:
                    self.logger.debug(f"{self} {direction} send to {dst} {e!r}")
                    break
                self.transferred[direction] += len(data)
            await self.close()
        finally:
            self.tasks.done()


class Relay:
    """
    Feeds channels accepted by ``server`` into relay sessions dialed by
    ``client`` until termination is requested, then drains every task.

    ``stop()`` or one of ``signals`` requests termination. The server's
    accept is never interrupted by the shutdown signal itself, closing the
    server is what ends a pending accept.
    """

    shutdown = None
    tasks = None
    error = None
    _stop = None

    def __init__(self, server, client, logger=None):
        self.server = server
        self.client = client
        self.logger = logger or gvars.logger
        self.sessions = set()
        self.session_count = 0

    def __repr__(self):
        return f"{self.__class__.__name__}({self})"

    def __str__(self):
        return f"{self.server} -- {self.client}"

    def stop(self):
        if self._stop is None:
            raise RuntimeError(f"{self} is not running")
        self._stop.set()

    async def run(
        self, signals=HANDLED_SIGNALS, *, task_status=anyio.TASK_STATUS_IGNORED
    ):
        self.shutdown = anyio.Event()
        self._stop = anyio.Event()
        self.tasks = TaskCounter()
        send_stream, receive_stream = anyio.create_memory_object_stream(0)
        async with anyio.create_task_group() as g:
            if signals:
                g.start_soon(self._watch_signals, signals)
            self.tasks.add()
            await g.start(self.accept_loop, send_stream)
            self.tasks.add()
            g.start_soon(self.dispatch, receive_stream, g)
            task_status.started()

            await self._stop.wait()
            self.logger.info(f"{self} shutting down")
            self.shutdown.set()
            for session in self.sessions:
                self.logger.debug(f"{session} still {session.state}")
            await self._close_endpoints()
            self.logger.debug(
                f"{self} waiting for {self.tasks.count} tasks, "
                f"{len(self.sessions)} sessions"
            )
            await self.tasks.wait()
            self.logger.debug(f"{self} all done")
            g.cancel_scope.cancel()
        if self.error is not None:
            raise self.error

    async def _watch_signals(self, signals):
        with anyio.open_signal_receiver(*signals) as received:
            async for signum in received:
                self.logger.info(f"{signal.Signals(signum).name} received")
                self.stop()
                return

    async def _close_endpoints(self):
        for endpoint in (self.client, self.server):
            try:
                await endpoint.close()
            except Exception as e:
                self.logger.warning(f"{endpoint} close failed: {e!r}")

    async def accept_loop(
        self, send_stream, *, task_status=anyio.TASK_STATUS_IGNORED
    ):
        try:
            async with send_stream:
                try:
                    await self.server.listen()
                except Exception as e:
                    self.logger.error(f"{self.server} listen failed: {e!r}")
                    self.error = e
                    self.stop()
                    return
                finally:
                    task_status.started()
                async with self.server.serving():
                    while True:
                        try:
                            await self.server.accept(send_stream)
                        except Exception as e:
                            if self.shutdown.is_set():
                                self.logger.debug(f"{self.server} closed: {e!r}")
                            else:
                                self.logger.warning(
                                    f"{self.server} accept failed: {e!r}"
                                )
                            return
                        if self.shutdown.is_set():
                            self.logger.debug(f"{self.server} done")
                            return
        finally:
            self.tasks.done()

    async def dispatch(self, receive_stream, task_group):
        """
        Starts a session for every inbound channel until the accept loop
        closes its end of the queue. Channels dequeued after the shutdown
        signal are closed instead.
        """
        try:
            async with receive_stream:
                async for channel in receive_stream:
                    if self.shutdown.is_set():
                        self.logger.debug(f"{self} shutting down, drop {channel}")
                        try:
                            await channel.close()
                        except STREAM_ERRORS as e:
                            self.logger.debug(f"{self} close {channel} {e!r}")
                        continue
                    self.spawn(channel, task_group)
            self.logger.debug(f"{self} no more inbound channels")
        finally:
            self.tasks.done()

    def spawn(self, channel, task_group):
        session = RelaySession(
            channel, self.client, self.shutdown, self.tasks, logger=self.logger
        )
        self.tasks.add()
        self.sessions.add(session)
        self.session_count += 1
        task_group.start_soon(self._run_session, session)
        return session

    async def _run_session(self, session):
        try:
            await session.run()
        finally:
            self.sessions.discard(session)
