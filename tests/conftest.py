"""
pytest configuration and fixtures.
"""

import io
import queue
import socket
import threading
from typing import Callable, Generator, List, Optional

import pytest

from relay_common.messages import ServerEvent
from relay_common.protocol import read_exact, read_line, write_line
from relay_server.config import ServerConfig
from relay_server.main import RelayServer
from relay_server.router import Router
from relay_server.state import ServerState, Sink


class Capture(io.BytesIO):
    """Output buffer that survives Sink.close() so tests can inspect it."""

    def __init__(self):
        super().__init__()
        self.close_calls = 0

    def close(self):
        self.close_calls += 1

    def lines(self) -> List[str]:
        return self.getvalue().decode("utf-8").splitlines()

    def reader(self) -> io.BytesIO:
        """Fresh reader over everything written so far (lines and raw spans)."""
        return io.BytesIO(self.getvalue())


class MemoryPeer:
    """
    A connected user backed by in-memory streams.

    Has the attributes the Router reads from a session: `username`,
    `sink` and `rfile` (bytes the user sends after a command line).
    """

    def __init__(self, username: str, incoming: bytes = b""):
        self.username = username
        self._out = Capture()
        self.sink = Sink(self._out, label=username)
        self.rfile = io.BytesIO(incoming)

    @property
    def out(self) -> Capture:
        """Everything written to this user, once the sink's queue is drained."""
        assert self.sink.flush(timeout=5.0)
        return self._out

    def feed(self, data: bytes) -> None:
        self.rfile = io.BytesIO(data)

    def lines(self) -> List[str]:
        return self.out.lines()


@pytest.fixture
def state() -> ServerState:
    """Isolated registry and group store."""
    return ServerState()


@pytest.fixture
def router(state: ServerState) -> Router:
    return Router(state, chunk_size=4)


@pytest.fixture
def connect_peer(state: ServerState) -> Generator[Callable[..., MemoryPeer], None, None]:
    """Factory registering in-memory users in the shared state."""

    peers: List[MemoryPeer] = []

    def _connect(username: str, incoming: bytes = b"") -> MemoryPeer:
        peer = MemoryPeer(username, incoming)
        assert state.registry.register(username, peer.sink)
        peers.append(peer)
        return peer

    yield _connect

    for peer in peers:
        peer.sink.close()


class LineClient:
    """Raw protocol client used against a live server."""

    def __init__(self, address, timeout: float = 5.0):
        self.sock = socket.create_connection(address, timeout=timeout)
        self.rfile = self.sock.makefile("rb")
        self.wfile = self.sock.makefile("wb")

    def send(self, line: str, payload: bytes = b"") -> None:
        write_line(self.wfile, line)
        if payload:
            self.wfile.write(payload)
            self.wfile.flush()

    def send_raw(self, data: bytes) -> None:
        self.wfile.write(data)
        self.wfile.flush()

    def recv(self) -> Optional[str]:
        return read_line(self.rfile)

    def recv_bytes(self, size: int) -> bytes:
        return read_exact(self.rfile, size)

    def recv_until(self, prefix: str) -> str:
        """Skip lines (presence updates etc.) until one starts with prefix."""
        while True:
            line = self.recv()
            assert line is not None, f"connection closed while waiting for {prefix!r}"
            if line.startswith(prefix):
                return line

    def recv_until_closed(self) -> List[str]:
        lines = []
        while True:
            line = self.recv()
            if line is None:
                return lines
            lines.append(line)

    def login(self, username: str) -> Optional[str]:
        """Complete the handshake and return the server's first reply."""
        assert self.recv() == "NOME?"
        self.send(username)
        return self.recv()

    def shutdown_write(self) -> None:
        self.wfile.flush()
        self.sock.shutdown(socket.SHUT_WR)

    def close(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        for f in (self.rfile, self.wfile):
            try:
                f.close()
            except (OSError, ValueError):
                pass
        self.sock.close()


@pytest.fixture
def relay_server() -> Generator[RelayServer, None, None]:
    """Live server on a free port, served from a background thread."""
    server = RelayServer(ServerConfig(host="127.0.0.1", port=0, log_level="WARNING"))
    server.start()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield server

    server.shutdown()
    thread.join(timeout=5.0)


@pytest.fixture
def client(relay_server: RelayServer) -> Generator[Callable[[], LineClient], None, None]:
    """Factory for raw clients connected to the live server."""
    clients: List[LineClient] = []

    def _client() -> LineClient:
        c = LineClient(relay_server.address)
        clients.append(c)
        return c

    yield _client

    for c in clients:
        c.close()


def wait_for(events: "queue.Queue[ServerEvent]", kind: str, timeout: float = 5.0) -> ServerEvent:
    """Pop events until one of the given kind arrives."""
    while True:
        event = events.get(timeout=timeout)
        if event.kind == kind:
            return event
