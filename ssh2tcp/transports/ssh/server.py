import contextlib
import socket

import anyio
import paramiko
from paramiko.pkey import UnknownKeyType

from ... import gvars
from ...utils import address_family, show
from ..base.server import ServerBase
from .channel import SSHChannel


def load_hostkey(path, logger=None):
    logger = logger or gvars.logger
    try:
        return paramiko.PKey.from_path(path)
    except OSError:
        logger.warning(f"Unable to read hostkey {path}")
        raise
    except (TypeError, ValueError, UnknownKeyType, paramiko.SSHException) as e:
        logger.warning(f"Unable to parse hostkey {path}")
        raise ValueError(f"Unable to parse hostkey {path}: {e}") from e


class OpenServer(paramiko.ServerInterface):
    """
    Lets anyone in with any password and says yes to what a shell client
    asks for. Nothing is executed, the channel is only a byte stream.
    """

    def __init__(self, logger):
        self.logger = logger

    def get_allowed_auths(self, username):
        return "password"

    def check_auth_password(self, username, password):
        self.logger.debug(f"ssh login as {username!r}")
        return paramiko.AUTH_SUCCESSFUL

    def check_channel_request(self, kind, chanid):
        return paramiko.OPEN_SUCCEEDED

    def check_channel_exec_request(self, channel, command):
        self.logger.debug(f"request exec {command!r}")
        return True

    def check_channel_shell_request(self, channel):
        self.logger.debug("request shell")
        return True

    def check_channel_pty_request(
        self, channel, term, width, height, pixelwidth, pixelheight, modes
    ):
        self.logger.debug(f"request pty {term!r} {width}x{height}")
        return True

    def check_channel_window_change_request(
        self, channel, width, height, pixelwidth, pixelheight
    ):
        self.logger.debug(f"request window-change {width}x{height}")
        return True


class SSHServer(ServerBase):
    """
    Accepts ssh connections and relays the first channel each of them opens.

    ``accept`` only takes the connection off the listening socket. The
    handshake and the wait for a channel run in a task per connection, so a
    slow or silent client never holds up the next one. A connection which
    fails the handshake or opens no channel in time is dropped without
    ending the accept loop.
    """

    proto = "SSH"
    sock = None
    task_group = None

    def __init__(self, bind_addr, hostkey, logger=None, **kwargs):
        super().__init__(bind_addr, logger=logger, **kwargs)
        self.hostkey = load_hostkey(hostkey, self.logger)
        self.pending = set()

    async def _listen(self):
        host, port = self.bind_addr
        sock = socket.socket(address_family(host), socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, True)
            sock.bind((host, port))
            sock.listen(1024)
            sock.setblocking(False)
        except Exception:
            sock.close()
            raise
        self.sock = sock
        self.bind_addr = sock.getsockname()[:2]

    @contextlib.asynccontextmanager
    async def serving(self):
        async with anyio.create_task_group() as g:
            self.task_group = g
            try:
                yield
            finally:
                self.task_group = None
                self._drop_pending()
                g.cancel_scope.cancel()

    async def accept(self, send_stream):
        sock = self.sock
        if sock is None:
            raise anyio.ClosedResourceError
        if self.task_group is None:
            raise RuntimeError(f"{self} accepts only inside serving()")
        while True:
            await anyio.wait_readable(sock)
            try:
                raw, addr = sock.accept()
                break
            except BlockingIOError:
                continue
        raw.setblocking(True)
        self.logger.debug(f"{self} connection from {show(addr)}")
        self.task_group.start_soon(self._serve_connection, raw, addr, send_stream)

    async def _serve_connection(self, raw, addr, send_stream):
        transport = paramiko.Transport(raw)
        self.pending.add(transport)
        try:
            channel = await anyio.to_thread.run_sync(
                self._handshake, transport, abandon_on_cancel=True
            )
        except (OSError, EOFError, paramiko.SSHException) as e:
            self.logger.info(f"{self} dropped {show(addr)}: {e}")
            return
        finally:
            self.pending.discard(transport)
        try:
            await self.push(channel, send_stream)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            pass
        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                await channel.close()
            raise

    def _handshake(self, transport):
        try:
            transport.add_server_key(self.hostkey)
            transport.start_server(server=OpenServer(self.logger))
            chan = transport.accept(gvars.CHANNEL_TIMEOUT)
            if chan is None:
                raise paramiko.SSHException("no channel opened")
        except BaseException:
            transport.close()
            transport.sock.close()
            raise
        return SSHChannel(chan, transport)

    def _drop_pending(self):
        for transport in list(self.pending):
            transport.close()
            try:
                transport.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            transport.sock.close()
        self.pending.clear()

    async def close(self):
        if self.sock is None:
            return
        anyio.notify_closing(self.sock)
        self.sock.close()
        self.sock = None
