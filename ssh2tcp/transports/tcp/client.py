import anyio

from ..base.client import ClientBase
from .channel import TCPChannel


class TCPClient(ClientBase):
    proto = "TCP"

    async def _connect(self):
        stream = await anyio.connect_tcp(*self.bind_addr)
        channel = TCPChannel(stream)
        self.logger.debug(f"{self} connected {channel}")
        return channel
