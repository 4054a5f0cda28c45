import argparse
import logging
import os
import resource
from urllib import parse

import anyio

from . import __doc__ as desc
from . import __version__, gvars
from .relay import Relay
from .transports import client_transports, server_transports
from .utils import parse_addr


def split_uri(uri, transports):
    url = parse.urlparse(uri)
    if url.scheme not in transports:
        raise argparse.ArgumentTypeError(f"invalid scheme {url.scheme!r}: {uri}")
    userinfo, _, loc = url.netloc.rpartition("@")
    try:
        host, port = parse_addr(loc)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid address {loc!r}: {uri}")
    if port == -1:
        port = gvars.default_ports.get(url.scheme, gvars.default_port)
    return url, loc, (str(host), port)


def get_server(uri, hostkey=None, logger=None):
    url, _, bind_addr = split_uri(uri, server_transports)
    kwargs = {"bind_addr": bind_addr, "logger": logger}
    if url.scheme == "ssh":
        if not hostkey:
            raise argparse.ArgumentTypeError(f"--hostkey is needed to listen on {uri}")
        kwargs["hostkey"] = hostkey
    try:
        return server_transports[url.scheme](**kwargs)
    except (OSError, ValueError) as e:
        raise argparse.ArgumentTypeError(f"unable to load hostkey {hostkey}: {e}")


def get_client(uri, ca=None, logger=None):
    url, loc, bind_addr = split_uri(uri, client_transports)
    if bind_addr[1] <= 0:
        raise argparse.ArgumentTypeError(f"you need to assign a port: {uri}")
    kwargs = {"bind_addr": bind_addr, "logger": logger}
    if url.scheme == "ssh":
        username = parse.unquote(url.username or "")
        if ca:
            # the gateway at ca picks the real target out of the user name
            username = f"{username}@{loc}"
            kwargs["bind_addr"] = (ca, gvars.ca_port)
        kwargs["username"] = username
        if url.password is not None:
            kwargs["password"] = parse.unquote(url.password)
    return client_transports[url.scheme](**kwargs)


async def serve(relay):
    async with anyio.create_task_group() as g:
        await g.start(relay.run)
        pid = os.getpid()
        gvars.logger.info(f"{__package__}/{__version__} {relay} pid: {pid}")
        gvars.logger.debug(f"sudo lsof -p {pid} -P | grep -e TCP -e STREAM")


def main(arguments=None):
    parser = argparse.ArgumentParser(
        description=desc, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "-v", dest="verbose", action="count", default=0, help="print verbose output"
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--listen", required=True, help="listen address, eg. ssh://127.0.0.1:1234"
    )
    parser.add_argument(
        "--connect", required=True, help="connect address, eg. tcp://127.0.0.1:4321"
    )
    parser.add_argument("--ca", help="gateway host ssh connections are dialed through")
    parser.add_argument("--hostkey", help="host private key for the ssh listener")
    args = parser.parse_args(arguments)
    try:
        server = get_server(args.listen, args.hostkey)
        client = get_client(args.connect, args.ca)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    if args.verbose == 0:
        level = logging.ERROR
    elif args.verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG
    gvars.logger.setLevel(level)
    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, (50000, 50000))
    except Exception:
        gvars.logger.warning("Require root permission to allocate resources")
    try:
        anyio.run(serve, Relay(server, client))
    except Exception as e:
        gvars.logger.exception(str(e))
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
