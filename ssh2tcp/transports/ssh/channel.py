import anyio
import paramiko

from ..base.channel import Channel


class SSHChannel(Channel):
    """
    The stdio of one ssh session channel.

    paramiko is blocking, every call runs in a worker thread. The channel
    owns its ssh connection and closes it together with the channel. A shell
    session can't signal end of input without ending the session here, so
    half-close degrades to a full close.
    """

    proto = "SSH"
    closed = False

    def __init__(self, chan, connection):
        self.chan = chan
        self.connection = connection
        # one reader and one writer at a time
        self.limiter = anyio.CapacityLimiter(2)
        transport = chan.get_transport()
        try:
            self.local_addr = transport.sock.getsockname()[:2]
            self.peer_addr = transport.getpeername()[:2]
        except OSError:
            pass

    async def recv(self, size):
        try:
            return await anyio.to_thread.run_sync(
                self.chan.recv, size, limiter=self.limiter
            )
        except (OSError, paramiko.SSHException) as e:
            raise anyio.BrokenResourceError(str(e)) from e

    async def sendall(self, data):
        if self.closed:
            raise anyio.ClosedResourceError
        try:
            await anyio.to_thread.run_sync(
                self.chan.sendall, data, limiter=self.limiter
            )
        except (OSError, paramiko.SSHException) as e:
            raise anyio.BrokenResourceError(str(e)) from e

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await anyio.to_thread.run_sync(self._close)

    def _close(self):
        self.chan.close()
        self.connection.close()
