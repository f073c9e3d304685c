import argparse
import logging
import signal
import socket
import threading
from typing import List, Optional, Set, Tuple

from relay_server.config import ServerConfig
from relay_server.log import setup_logging
from relay_server.router import Router
from relay_server.session import Session
from relay_server.state import ServerState

log = logging.getLogger(__name__)


class RelayServer:
    '''
    Accepts TCP connections and runs one Session per connection on its own
    daemon thread. All sessions share the same ServerState.
    '''

    def __init__(self, config: Optional[ServerConfig] = None, state: Optional[ServerState] = None,
                 logger: Optional[logging.Logger] = None):
        self.config = config or ServerConfig()
        self.state = state if state is not None else ServerState()
        self.log = logger or log
        self._logger = logger   # handed to sessions as-is; None keeps the module loggers
        self.router = Router(self.state, chunk_size=self.config.chunk_size, logger=logger)
        self._sock: Optional[socket.socket] = None
        self._running = False
        self._conns: Set[socket.socket] = set()   # live client sockets, for shutdown
        self._conns_lock = threading.Lock()

    @property
    def address(self) -> Tuple[str, int]:
        ''' The bound (host, port); the real port when configured with port 0'''
        if self._sock is None:
            return (self.config.host, self.config.port)
        return self._sock.getsockname()[:2]

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> Tuple[str, int]:
        ''' This function binds and listens without blocking; serve_forever() accepts'''
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.config.host, self.config.port))
        except OSError as e:
            sock.close()
            self.log.error("Failed to bind to %s:%d: %s", self.config.host, self.config.port, e)
            raise
        sock.listen(self.config.backlog)
        # accept() wakes up every second to notice shutdown()
        sock.settimeout(1.0)
        self._sock = sock
        self._running = True
        self.log.info("Server listening on %s:%d", *self.address)
        return self.address

    def serve_forever(self) -> None:
        if self._sock is None:
            self.start()
        try:
            while self._running:
                try:
                    conn, addr = self._sock.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if not self._running:
                        break
                    raise
                self._spawn(conn, addr)
        finally:
            self._running = False
            self._sock.close()
            self.log.info("Server stopped")

    def shutdown(self) -> None:
        ''' This function stops accepting and disconnects every client; sessions clean up themselves'''
        self._running = False
        if self._sock is not None:
            self._sock.close()
        with self._conns_lock:
            conns = list(self._conns)
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

    def _spawn(self, conn: socket.socket, addr) -> None:
        conn.settimeout(None)
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)  # control lines go out immediately
        with self._conns_lock:
            self._conns.add(conn)
        self.log.debug("Connection from %s:%d", addr[0], addr[1])
        session = Session.from_socket(conn, addr, self.router, logger=self._logger)
        threading.Thread(target=self._run_session, args=(session, conn),
                         name=f"session-{addr[0]}:{addr[1]}", daemon=True).start()

    def _run_session(self, session: Session, conn: socket.socket) -> None:
        try:
            session.run()
        finally:
            with self._conns_lock:
                self._conns.discard(conn)


def parse_args(argv: Optional[List[str]] = None) -> ServerConfig:
    '''
    This function builds the server configuration: environment first, then
    any command line flag on top of it.
    '''
    config = ServerConfig.from_env()
    ap = argparse.ArgumentParser(description="Chat relay server")
    ap.add_argument("--host", default=config.host, help="Interface to bind")
    ap.add_argument("--port", type=int, default=config.port, help="Listen port (0 picks a free one)")
    ap.add_argument("--log-level", default=config.log_level, help="DEBUG, INFO, WARNING or ERROR")
    args = ap.parse_args(argv)
    config.host = args.host
    config.port = args.port
    config.log_level = args.log_level.upper()
    return config


def main(argv: Optional[List[str]] = None):
    config = parse_args(argv)
    config.validate()
    logger = setup_logging(config.log_level)
    server = RelayServer(config)

    def shutdown_handler(signum, frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        server.shutdown()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)
    server.serve_forever()


if __name__ == "__main__":
    main()
