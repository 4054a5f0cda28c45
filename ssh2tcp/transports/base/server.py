import abc
import contextlib

import anyio

from ... import gvars
from ...utils import show


class ServerBase(abc.ABC):
    """
    Listens on ``bind_addr`` and hands every accepted connection to the
    relay as a :class:`Channel`.

    ``accept`` is the backpressure point: it returns only after the channel
    has been received on the other side of ``send_stream``. A server that
    needs slow per-connection setup before it has a channel runs that setup
    as a task inside ``serving()`` and pushes from there instead.
    """

    listening = False

    def __init__(self, bind_addr, logger=None, **kwargs):
        self.bind_addr = bind_addr
        self.logger = logger or gvars.logger
        self.kwargs = kwargs

    @property
    @abc.abstractmethod
    def proto(self):
        ""

    @property
    def bind_address(self) -> str:
        return show(self.bind_addr)

    def __repr__(self):
        return f"{self.__class__.__name__}({self})"

    def __str__(self):
        return f"{self.proto} listen on {self.bind_address}"

    async def listen(self):
        if self.listening:
            return
        await self._listen()
        self.listening = True
        self.logger.info(self)

    @abc.abstractmethod
    async def _listen(self):
        ""

    @contextlib.asynccontextmanager
    async def serving(self):
        "Scope of one accept loop, tasks started by ``accept`` live inside it."
        yield

    @abc.abstractmethod
    async def accept(self, send_stream):
        ""

    @abc.abstractmethod
    async def close(self):
        ""

    async def push(self, channel, send_stream):
        try:
            await send_stream.send(channel)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            self.logger.debug(f"{self} nobody receives {channel}")
            await channel.close()
            raise
        self.logger.debug(f"{self} new channel {channel}")
