import asyncio
import contextlib
import errno
import logging
import socket

import pytest

from sockscope import PortAllocator


@pytest.fixture
def log() -> logging.Logger:
    return logging.getLogger("sockscope.tests")


@pytest.fixture
def start_port() -> int:
    return free_port()


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def port_of(address: str) -> int:
    return int(address.rsplit(":", 1)[1])


def make_socket_file(path) -> str:
    """Leave a socket inode at path (nothing listening behind it)."""
    path = str(path)
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.bind(path)
    finally:
        s.close()
    return path


async def query(port: int, host: str = "127.0.0.1") -> bytes:
    reader, writer = await asyncio.open_connection(host, port)
    try:
        return await asyncio.wait_for(reader.read(), timeout=5)
    finally:
        writer.close()


async def echo_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    while True:
        data = await reader.read(65536)
        if not data:
            break
        writer.write(data)
        await writer.drain()
    writer.close()


@contextlib.asynccontextmanager
async def unix_server(path, handler=echo_handler):
    server = await asyncio.start_unix_server(handler, path=str(path))
    try:
        yield str(path)
    finally:
        server.close()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(server.wait_closed(), timeout=1)


class FailingAllocator(PortAllocator):
    """Every bind fails as if the port were taken."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.tried = []

    def _bind(self, port):
        self.tried.append(port)
        raise OSError(errno.EADDRINUSE, "Address already in use")
