import anyio
from anyio.abc import SocketAttribute

from ..base.channel import Channel


class TCPChannel(Channel):
    proto = "TCP"
    can_half_close = True

    def __init__(self, stream):
        self.stream = stream
        self.local_addr = stream.extra(SocketAttribute.local_address, None)
        self.peer_addr = stream.extra(SocketAttribute.remote_address, None)

    async def recv(self, size):
        try:
            return await self.stream.receive(size)
        except anyio.EndOfStream:
            return b""

    async def sendall(self, data):
        await self.stream.send(data)

    async def close_write(self):
        try:
            await self.stream.send_eof()
        except (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError):
            await self.close()

    async def close(self):
        await self.stream.aclose()
