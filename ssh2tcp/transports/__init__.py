from .ssh.client import SSHClient
from .ssh.server import SSHServer
from .tcp.client import TCPClient
from .tcp.server import TCPServer

server_transports = {"tcp": TCPServer, "ssh": SSHServer}
client_transports = {"tcp": TCPClient, "ssh": SSHClient}
