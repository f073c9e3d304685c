import logging
import socket
from enum import Enum
from typing import BinaryIO, Callable, Optional

from relay_common import messages as m
from relay_common.protocol import read_line
from relay_server.router import Router
from relay_server.state import Sink, is_valid_name

log = logging.getLogger(__name__)


class SessionState(Enum):
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    CLOSED = "closed"


def shutdown_socket(conn: socket.socket) -> None:
    ''' This function tears down a client socket, waking up any thread blocked on it'''
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        # already disconnected
        pass
    conn.close()


class Session:
    '''
    Server side of one client connection: handshake, command loop, teardown.

    A session owns at most one registry entry, inserted when the handshake
    succeeds and removed when the session closes. It runs entirely on the
    thread that calls run().
    '''

    def __init__(self, rfile: BinaryIO, wfile: BinaryIO, router: Router, peer: str = "?",
                 closer: Optional[Callable[[], None]] = None, logger: Optional[logging.Logger] = None):
        self.rfile = rfile
        self.sink = Sink(wfile, label=peer, logger=logger)
        self.router = router
        self.server_state = router.state
        self.broadcaster = router.broadcaster
        self.peer = peer
        self.username: Optional[str] = None
        self.state = SessionState.CONNECTING
        self._closer = closer
        self.log = logger or log

    @classmethod
    def from_socket(cls, conn: socket.socket, addr, router: Router,
                    logger: Optional[logging.Logger] = None) -> "Session":
        ''' This function wraps an accepted socket; lines and raw spans share one reader'''
        return cls(conn.makefile("rb"), conn.makefile("wb"), router,
                   peer=f"{addr[0]}:{addr[1]}", closer=lambda: shutdown_socket(conn), logger=logger)

    def run(self) -> None:
        try:
            if self.handshake():
                self.command_loop()
        except OSError as e:
            # reset or broken pipe on our own connection: same path as "close"
            self.log.debug("Connection %s (%s) failed: %s", self.peer, self.username, e)
        except Exception:
            self.log.exception("Session %s (%s) crashed", self.peer, self.username)
        finally:
            self.close()

    def handshake(self) -> bool:
        '''
        This function asks for a username and registers it.
        Output:
            - True: the session is ACTIVE and registered
            - False: the name was rejected (error line sent), nothing registered
        '''
        self.state = SessionState.HANDSHAKING
        self.sink.send_line(m.PROMPT)
        name = read_line(self.rfile)

        if not self._acceptable(name) or not self.server_state.registry.register(name, self.sink):
            self.log.info("Failed connection attempt from %s: %r", self.peer, name)
            try:
                self.sink.send_line(m.error_line(m.ERR_BAD_USERNAME))
            except OSError:
                # client left before reading the rejection
                pass
            return False

        self.username = name
        self.sink.label = name
        self.state = SessionState.ACTIVE
        self.log.info("User connected: %s (%s)", name, self.peer)
        # private snapshot first, then everybody (including us) gets the update
        self.broadcaster.send_user_snapshot(self.sink)
        self.broadcaster.broadcast_users()
        return True

    def command_loop(self) -> None:
        # strictly one command at a time, in arrival order
        while True:
            line = read_line(self.rfile)
            if line is None or line.lower() == m.CMD_CLOSE:
                break
            self.router.handle(self, line)

    def close(self) -> None:
        ''' This function releases the username (if any) and closes the transport; runs once'''
        if self.state is SessionState.CLOSED:
            return
        was_active = self.state is SessionState.ACTIVE
        self.state = SessionState.CLOSED

        if was_active:
            self.server_state.registry.unregister(self.username)
            self.log.info("User disconnected: %s", self.username)
            self.broadcaster.broadcast_users()

        # queued lines (e.g. the rejection) reach the peer before the socket goes
        self.sink.close()
        if self._closer is not None:
            self._closer()
        try:
            self.rfile.close()
        except OSError:
            pass

    @staticmethod
    def _acceptable(name: Optional[str]) -> bool:
        return name is not None and name.lower() != "null" and is_valid_name(name)
