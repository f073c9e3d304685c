import os
import socket
import threading
from typing import Callable, Dict, List, Optional, Tuple

from relay_common import messages as m
from relay_common.messages import ServerEvent, parse_server_line
from relay_common.protocol import CHUNK_SIZE, TruncatedPayloadError, iter_exact, read_line, write_line

DISCONNECTED = "disconnected"   # synthetic event kind emitted when the receive loop ends


class ProtocolError(Exception):
    """Raised when the server does not speak the expected handshake."""
    pass

class HandshakeError(Exception):
    """Raised when the server rejects the username (invalid or already in use)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NetClient:
    ''' Protocol client for the relay server (no UI) '''
    def __init__(self, host: str, port: int, username: str,
                 on_event: Optional[Callable[[ServerEvent], None]] = None):
        self.host, self.port, self.username = host, port, username
        self.sock: Optional[socket.socket] = None
        self.rfile = None
        self.wfile = None
        # Backlog events until a handler attaches; then flush
        self._on_event: Optional[Callable[[ServerEvent], None]] = None
        self._backlog: List[ServerEvent] = []
        if on_event:
            self.on_event = on_event
        self._send_lock = threading.Lock()   # one command (and its payload) at a time
        self.users: List[str] = []               # last USERLIST
        self.groups: Dict[str, List[str]] = {}   # group -> members, from GRUPO lines
        self.recv_thread: Optional[threading.Thread] = None
        self.running = False

    @property
    def on_event(self) -> Optional[Callable[[ServerEvent], None]]:
        ''' The callback invoked on the receive thread for every server event '''
        return self._on_event

    @on_event.setter
    def on_event(self, cb: Optional[Callable[[ServerEvent], None]]):
        '''
        Set the callback for incoming events. Events received before a handler
        was attached are replayed now, in arrival order.
        '''
        self._on_event = cb
        if cb and self._backlog:
            pending = self._backlog
            self._backlog = []
            for event in pending:
                cb(event)

    def connect(self, timeout: Optional[float] = None):
        '''
        Open the connection and perform the handshake.
        Raises HandshakeError if the username is refused; the socket is closed
        so the caller can retry with another name.
        '''
        self.sock = socket.create_connection((self.host, self.port), timeout=timeout)
        self.sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self.rfile = self.sock.makefile("rb")
        self.wfile = self.sock.makefile("wb")

        prompt = read_line(self.rfile)
        if prompt != m.PROMPT:
            self._disconnect()
            raise ProtocolError(f"unexpected greeting: {prompt!r}")
        write_line(self.wfile, self.username)

        reply = read_line(self.rfile)
        if reply is None:
            self._disconnect()
            raise ProtocolError("connection closed during handshake")
        event = parse_server_line(reply)
        if event.kind == m.ERROR:
            self._disconnect()
            raise HandshakeError(event.text)

        self.sock.settimeout(None)
        self._dispatch(event)   # first reply is the private user list
        self.running = True
        self.recv_thread = threading.Thread(target=self._recv_loop, daemon=True)
        self.recv_thread.start()

    def close(self):
        ''' Say goodbye to the server and drop the connection '''
        try:
            if self.sock:
                self._send(m.CMD_CLOSE)
        except OSError:
            pass
        self.running = False
        self._disconnect()

    def send_message(self, target: str, text: str):
        ''' Send a text to a user, or to a group the user belongs to '''
        self._send(m.message_command(target, text))

    def create_group(self, group: str):
        self._send(m.create_group_command(group))

    def add_member(self, group: str, member: str):
        self._send(m.add_member_command(group, member))

    def send_file(self, target: str, filename: str, data: bytes):
        ''' Send an in-memory payload; the raw bytes follow the command line '''
        self._send(m.file_command(target, filename, len(data)), data)

    def send_file_path(self, target: str, path: str, chunk_size: int = CHUNK_SIZE):
        '''
        This function streams a file from disk to a user or group.
        Input:
            - target: username or group name
            - path: local file; only its base name is sent
        '''
        filename = os.path.basename(path)
        size = os.path.getsize(path)
        with self._send_lock, open(path, "rb") as f:
            write_line(self.wfile, m.file_command(target, filename, size))
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                self.wfile.write(chunk)
            self.wfile.flush()

    def _send(self, line: str, payload: Optional[bytes] = None):
        with self._send_lock:
            write_line(self.wfile, line)
            if payload:
                self.wfile.write(payload)
                self.wfile.flush()

    def _read_payload(self, size: int) -> Tuple[bytes, bool]:
        # returns (bytes read, truncated?)
        buf = bytearray()
        try:
            for chunk in iter_exact(self.rfile, size):
                buf.extend(chunk)
        except TruncatedPayloadError:
            return bytes(buf), True
        return bytes(buf), False

    def _dispatch(self, event: ServerEvent):
        if event.kind == m.USERLIST:
            self.users = list(event.members)
        elif event.kind == m.GROUP:
            self.groups[event.group] = list(event.members)
        if self._on_event:
            self._on_event(event)
        else:
            self._backlog.append(event)

    def _recv_loop(self):
        ''' Thread function to receive events from the server '''
        try:
            while self.running:
                line = read_line(self.rfile)
                if line is None:
                    break
                event = parse_server_line(line)
                if event.has_payload:
                    # the raw bytes follow the announce line immediately
                    event.data, event.truncated = self._read_payload(event.size)
                self._dispatch(event)
        except (OSError, ValueError):
            # socket closed under us (close() from another thread or reset)
            pass
        finally:
            self.running = False
            self._dispatch(ServerEvent(DISCONNECTED, ""))

    def _disconnect(self):
        # shutdown first: it wakes up a receive thread blocked on rfile
        if self.sock:
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for f in (self.rfile, self.wfile):
            try:
                if f:
                    f.close()
            except (OSError, ValueError):
                pass
        if self.sock:
            self.sock.close()
        self.sock = None
