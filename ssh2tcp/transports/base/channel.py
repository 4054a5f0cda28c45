import abc

from ...utils import show


class Channel(abc.ABC):
    """
    A bidirectional byte stream bound to one transport connection.

    ``recv`` returns ``b""`` at end of stream, broken or closed streams raise
    ``anyio.BrokenResourceError`` / ``anyio.ClosedResourceError``.
    Half-close is optional: check ``can_half_close`` before relying on
    ``close_write``, without it ``close_write`` closes the whole channel.
    """

    can_half_close = False
    local_addr = None
    peer_addr = None

    @property
    @abc.abstractmethod
    def proto(self):
        ""

    def __repr__(self):
        return f"{self.__class__.__name__}({self})"

    def __str__(self):
        return f"{self.proto} {show(self.local_addr)} -- {show(self.peer_addr)}"

    async def __aenter__(self):
        return self

    async def __aexit__(self, et, e, tb):
        await self.close()

    @abc.abstractmethod
    async def recv(self, size):
        ""

    @abc.abstractmethod
    async def sendall(self, data):
        ""

    @abc.abstractmethod
    async def close(self):
        ""

    async def close_write(self):
        await self.close()
