import abc

import anyio

from ... import gvars
from ...utils import show


class ClientBase(abc.ABC):
    "Dials one new outbound :class:`Channel` per ``connect`` call."

    closed = False

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
        return f"{self.proto} connect to {self.bind_address}"

    async def connect(self):
        if self.closed:
            raise anyio.ClosedResourceError(f"{self} is closed")
        return await self._connect()

    @abc.abstractmethod
    async def _connect(self):
        ""

    async def close(self):
        self.closed = True
