import logging
import re
from contextlib import contextmanager
from queue import Queue
from threading import Event, Lock, Thread
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

from relay_common.protocol import encode_line, write_exact

log = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,}$")
SPAN_BUFFER = 16      # chunks queued inside one open span before the relaying thread waits
CLOSE_TIMEOUT = 5.0   # seconds close() waits for queued writes to reach the peer

_STOP = object()


def is_valid_name(name: Optional[str]) -> bool:
    '''Usernames and group names: letters, digits, underscore, at least 3 chars.'''
    return name is not None and NAME_PATTERN.fullmatch(name) is not None


class RelayError(Exception):
    '''Base class for rejected registry/group operations.'''
    reason = "operation rejected"

    def __init__(self, name: str):
        super().__init__(f"{self.reason}: {name}")
        self.name = name

class InvalidNameError(RelayError):
    reason = "invalid name"

class GroupExistsError(RelayError):
    reason = "group already exists"

class NoSuchGroupError(RelayError):
    reason = "no such group"

class UserOfflineError(RelayError):
    reason = "user is not connected"


class SinkClosedError(ConnectionError):
    '''Raised when writing to a sink whose connection was torn down.'''


class Span:
    '''
    An announce line and its raw payload, queued on a sink as one unit.
    The writer thread writes its chunks back to back; lines queued on the
    sink meanwhile go out after the span ends.
    '''

    def __init__(self, sink: "Sink"):
        self.sink = sink
        self._chunks: Queue = Queue(maxsize=SPAN_BUFFER)

    def send_line(self, text: str) -> None:
        self.send_bytes(encode_line(text))

    def send_bytes(self, data: bytes) -> None:
        # blocks only the caller when the peer reads slower than we relay
        self.sink._check_open()
        if data:
            self._chunks.put(data)

    def end(self) -> None:
        self._chunks.put(_STOP)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self._chunks.get()
            if chunk is _STOP:
                return
            yield chunk


class Sink:
    '''
    Outbound side of one connection. Writers only enqueue; a dedicated
    thread writes the queue to the peer in order. A stalled peer therefore
    holds up its own writer thread and nobody else.
    '''

    def __init__(self, wfile: BinaryIO, label: str = "?", logger: Optional[logging.Logger] = None):
        self.wfile = wfile
        self.label = label   # peer address or username, only for logs
        self.log = logger or log
        self.closed = False
        self.broken = False   # a write failed; everything after it is dropped
        self._lock = Lock()   # orders enqueues against close()
        self._queue: Queue = Queue()
        self._writer = Thread(target=self._run, name=f"sink-{label}", daemon=True)
        self._writer.start()

    def send_line(self, text: str) -> None:
        self._enqueue(encode_line(text))

    def send_bytes(self, data: bytes) -> None:
        if data:
            self._enqueue(data)

    @contextmanager
    def exclusive(self) -> Iterator[Span]:
        '''
        Open a multi-write span (announce line followed by its raw payload).
        Write through the yielded Span; other writers are never blocked, their
        lines are written after the span. On a closed sink every span write
        raises SinkClosedError.
        '''
        span = Span(self)
        with self._lock:
            if not self.closed:
                self._queue.put(span)
        try:
            yield span
        finally:
            span.end()

    def flush(self, timeout: Optional[float] = None) -> bool:
        ''' This function waits until everything queued so far was written (or dropped)'''
        done = Event()
        with self._lock:
            if not self.closed:
                self._queue.put(done)
        if self.closed:
            self._writer.join(timeout)
            return not self._writer.is_alive()
        return done.wait(timeout)

    def close(self, timeout: float = CLOSE_TIMEOUT) -> None:
        ''' This function writes out what is queued, then closes the stream; runs once'''
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._queue.put(_STOP)
        self._writer.join(timeout)
        try:
            self.wfile.close()
        except (OSError, ValueError):
            # peer already gone; buffered bytes are lost anyway
            pass

    def _enqueue(self, item) -> None:
        with self._lock:
            self._check_open()
            self._queue.put(item)

    def _check_open(self) -> None:
        if self.closed or self.broken:
            raise SinkClosedError(f"sink {self.label} is closed")

    def _run(self) -> None:
        ''' Writer thread: one item at a time, spans written whole'''
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if isinstance(item, Event):
                item.set()
            elif isinstance(item, Span):
                for chunk in item:
                    self._write(chunk)
            else:
                self._write(item)

    def _write(self, data: bytes) -> None:
        if self.broken:
            return
        try:
            write_exact(self.wfile, data)
        except (OSError, ValueError) as e:
            # the peer's own session notices the broken socket and cleans up
            self.broken = True
            self.log.debug("Write to %s failed: %s", self.label, e)

    def __repr__(self) -> str:
        return f"Sink({self.label!r}, closed={self.closed})"


class ConnectionRegistry:
    # Live usernames mapped to their sinks
    def __init__(self):
        self.lock = Lock()  # guards clients; never held during I/O
        self.clients: Dict[str, Sink] = {}

    def register(self, name: str, sink: Sink) -> bool:
        ''' This function adds a user atomically; False if the name is taken'''
        with self.lock:
            if name in self.clients:
                return False
            self.clients[name] = sink
            return True

    def unregister(self, name: str) -> None:
        with self.lock:
            self.clients.pop(name, None)

    def lookup(self, name: str) -> Optional[Sink]:
        with self.lock:
            return self.clients.get(name)

    def snapshot(self) -> List[str]:
        ''' This function returns the connected usernames in registration order'''
        with self.lock:
            return list(self.clients.keys())

    def sinks(self) -> List[Tuple[str, Sink]]:
        with self.lock:
            return list(self.clients.items())

    def __contains__(self, name: str) -> bool:
        with self.lock:
            return name in self.clients

    def __len__(self) -> int:
        with self.lock:
            return len(self.clients)


class GroupStore:
    '''
    Group name -> ordered member set. Groups are never deleted and members
    are never removed, so a member may be offline at delivery time.
    '''

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self.lock = Lock()
        # dict keys keep insertion order, values unused
        self.groups: Dict[str, Dict[str, None]] = {}

    def create_group(self, name: str, creator: str) -> None:
        ''' This function creates a group whose first member is the creator'''
        if not is_valid_name(name):
            raise InvalidNameError(name)
        with self.lock:
            if name in self.groups:
                raise GroupExistsError(name)
            self.groups[name] = {creator: None}

    def add_member(self, group: str, member: str) -> None:
        '''
        This function adds a member to an existing group.
        The member must be connected at the moment of the call; it may leave later.
        '''
        with self.lock:
            members = self.groups.get(group)
            if members is None:
                raise NoSuchGroupError(group)
            if member not in self.registry:
                raise UserOfflineError(member)
            members[member] = None

    def members(self, group: str) -> Optional[List[str]]:
        with self.lock:
            members = self.groups.get(group)
            return None if members is None else list(members)

    def is_member(self, group: str, user: str) -> bool:
        with self.lock:
            return user in self.groups.get(group, ())

    def names(self) -> List[str]:
        with self.lock:
            return list(self.groups)

    def __contains__(self, group: str) -> bool:
        with self.lock:
            return group in self.groups


class ServerState:
    # Shared service object handed to the router, broadcaster and every session
    def __init__(self, registry: Optional[ConnectionRegistry] = None,
                 groups: Optional[GroupStore] = None):
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.groups = groups if groups is not None else GroupStore(self.registry)
