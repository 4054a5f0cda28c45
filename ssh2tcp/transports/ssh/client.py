import anyio
import paramiko

from ... import gvars
from ..base.client import ClientBase
from .channel import SSHChannel


class SSHClient(ClientBase):
    """
    Opens a new ssh connection per ``connect`` and relays through the stdio
    of a shell started on it. The server's host key is never verified.
    """

    proto = "SSH"

    def __init__(self, bind_addr, username="", password=None, logger=None, **kwargs):
        super().__init__(bind_addr, logger=logger, **kwargs)
        self.username = username
        if password is None:
            self.logger.warning(
                f"{self} without password, falling back to the insecure "
                f"default password {gvars.default_password!r}"
            )
            password = gvars.default_password
        self.password = password

    def __str__(self):
        return f"{self.proto} connect to {self.username}@{self.bind_address}"

    async def _connect(self):
        try:
            channel = await anyio.to_thread.run_sync(self._dial)
        except (OSError, EOFError, paramiko.SSHException) as e:
            self.logger.debug(f"{self} unable to establish ssh session: {e}")
            raise
        self.logger.debug(f"{self} connected {channel}")
        return channel

    def _dial(self):
        host, port = self.bind_addr
        connection = paramiko.SSHClient()
        connection.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            connection.connect(
                host,
                port,
                username=self.username,
                password=self.password,
                look_for_keys=False,
                allow_agent=False,
            )
            chan = connection.get_transport().open_session()
            chan.invoke_shell()
        except BaseException:
            connection.close()
            raise
        return SSHChannel(chan, connection)
