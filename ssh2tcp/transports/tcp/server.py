import anyio
from anyio.abc import SocketAttribute

from ...utils import address_family
from ..base.server import ServerBase
from .channel import TCPChannel


class TCPServer(ServerBase):
    proto = "TCP"
    listener = None

    async def _listen(self):
        host, port = self.bind_addr
        multi = await anyio.create_tcp_listener(
            local_host=host, local_port=port, family=address_family(host), backlog=1024
        )
        # one address family, one listener
        self.listener = multi.listeners[0]
        for extra in multi.listeners[1:]:
            await extra.aclose()
        self.bind_addr = self.listener.extra(SocketAttribute.local_address)[:2]

    async def accept(self, send_stream):
        stream = await self.listener.accept()
        await self.push(TCPChannel(stream), send_stream)

    async def close(self):
        if self.listener:
            await self.listener.aclose()
