import ipaddress
import socket

import anyio


def parse_addr(s, default_host="0.0.0.0"):
    if s.endswith("]") or ":" not in s:
        host, port = s, ""
    else:
        host, _, port = s.rpartition(":")
    port = -1 if not port else int(port)
    if not host:
        host = default_host
    elif len(host) >= 4 and host[0] == "[" and host[-1] == "]":
        host = host[1:-1]
    try:
        return (ipaddress.ip_address(host), port)
    except ValueError:
        return (host, port)


def address_family(host: str):
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def show(addr) -> str:
    if not addr:
        return "unknown"
    return f"{addr[0]}:{addr[1]}"


def human_bytes(val: int) -> str:
    if val < 1024:
        return f"{val:.0f}Bytes"
    elif val < 1048576:
        return f"{val/1024:.1f}KB"
    else:
        return f"{val/1048576:.1f}MB"


async def wait_first(*async_fns) -> int:
    """
    Run ``async_fns`` concurrently and return the index of the first one to
    finish, the others are cancelled.
    """
    winner = []

    async def run(index, async_fn, cancel_scope):
        await async_fn()
        if not winner:
            winner.append(index)
        cancel_scope.cancel()

    async with anyio.create_task_group() as g:
        for index, async_fn in enumerate(async_fns):
            g.start_soon(run, index, async_fn, g.cancel_scope)
    return winner[0]


class TaskCounter:
    "Counts outstanding tasks, ``wait()`` blocks until none are left."

    def __init__(self):
        self.count = 0
        self._idle = anyio.Event()
        self._idle.set()

    def __repr__(self):
        return f"{self.__class__.__name__}({self.count})"

    def add(self, n: int = 1):
        if self.count == 0:
            self._idle = anyio.Event()
        self.count += n

    def done(self):
        if self.count <= 0:
            raise RuntimeError("task counter released more than acquired")
        self.count -= 1
        if self.count == 0:
            self._idle.set()

    async def wait(self):
        while self.count:
            await self._idle.wait()
