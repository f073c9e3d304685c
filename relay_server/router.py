import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

from relay_common import messages as m
from relay_common.protocol import CHUNK_SIZE, TruncatedPayloadError, drain, iter_exact, read_exact
from relay_server.broadcast import Broadcaster
from relay_server.state import (
    GroupExistsError, InvalidNameError, NoSuchGroupError, ServerState, Sink, Span, UserOfflineError,
)

log = logging.getLogger(__name__)


@dataclass
class TransferResult:
    '''Diagnostic outcome of one /arquivo command. Never sent on the wire.'''
    target: str
    filename: str
    expected: int
    relayed: int = 0     # bytes consumed from the sender
    recipients: List[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.relayed == self.expected


class Router:
    '''
    Dispatches the command lines of an active session and delivers the
    resulting messages and files through the target sinks.

    The session argument of every handler only needs `username`, `sink`
    (replies to the caller) and `rfile` (raw payloads following /arquivo).
    '''

    def __init__(self, state: ServerState, broadcaster: Optional[Broadcaster] = None,
                 chunk_size: int = CHUNK_SIZE, logger: Optional[logging.Logger] = None):
        self.state = state
        self.log = logger or log
        self.broadcaster = broadcaster or Broadcaster(state, self.log)
        self.chunk_size = chunk_size

    def handle(self, session, line: str):
        '''
        This function processes one command line from a session.
        Any unexpected failure is reported to the caller and the session keeps going;
        I/O errors on the caller's connection propagate to the session.
        '''
        try:
            if line.startswith(m.CMD_CREATE_GROUP + " "):
                return self.create_group(session, line[len(m.CMD_CREATE_GROUP) + 1:].strip())
            if line.startswith(m.CMD_ADD_MEMBER + " "):
                return self.add_member(session, line[len(m.CMD_ADD_MEMBER) + 1:])
            if line.startswith(m.CMD_MSG + " "):
                return self.send_message(session, line[len(m.CMD_MSG) + 1:])
            if line.startswith(m.CMD_FILE + " "):
                return self.send_file(session, line)
            self._reply(session, m.ERR_UNKNOWN_COMMAND)
        except OSError:
            # the caller's own connection failed: the session tears down silently
            raise
        except Exception:
            self.log.exception("Failed to process command from %s: %r", session.username, line)
            self._reply(session, m.ERR_COMMAND_FAILED)
        return None

    # ----- groups -----

    def create_group(self, session, group: str) -> None:
        try:
            self.state.groups.create_group(group, session.username)
        except (InvalidNameError, GroupExistsError):
            self._reply(session, m.ERR_BAD_GROUP)
            return
        self.log.info("Group created: %s by %s", group, session.username)
        self.broadcaster.broadcast_group(group)

    def add_member(self, session, args: str) -> None:
        # trailing blanks are ignored, inner empty tokens are not
        parts = args.rstrip(" ").split(" ")
        if len(parts) != 2:
            self._reply(session, m.ERR_ADD_USAGE)
            return
        group, member = parts
        try:
            self.state.groups.add_member(group, member)
        except (NoSuchGroupError, UserOfflineError):
            self._reply(session, m.ERR_ADD_FAILED)
            return
        self.log.info("Member added: %s to group %s by %s", member, group, session.username)
        self.broadcaster.broadcast_group(group)

    # ----- text messages -----

    def send_message(self, session, args: str) -> None:
        parts = args.split(" ", 1)
        if len(parts) != 2:
            self._reply(session, m.ERR_MSG_USAGE)
            return
        target, text = parts
        sender = session.username

        # a connected user wins over a group of the same name
        sink = self.state.registry.lookup(target)
        if sink is not None:
            self._deliver(target, sink, m.direct_message_line(sender, text))
            self.log.info("Message: %s -> %s: %s", sender, target, text)
            return

        members = self._group_members_for(target, sender)
        if members is None:
            self._reply(session, m.ERR_NO_DESTINATION)
            return
        line = m.group_message_line(target, sender, text)
        for member, member_sink in self._online(members, exclude=sender):
            self._deliver(member, member_sink, line)
        self.log.info("Group message: %s -> %s: %s", sender, target, text)

    # ----- files -----

    def send_file(self, session, line: str) -> Optional[TransferResult]:
        '''
        This function relays the raw bytes that follow an /arquivo command.
        Input:
            - session: caller; its rfile is positioned right after the command line
            - line: "/arquivo <target> <filename with spaces> <size>"
        Output: TransferResult, or None when the command line was malformed
        '''
        parts = line.rstrip(" ").split(" ")
        size_text = parts[-1]
        if len(parts) < 4 or not (size_text.isascii() and size_text.isdigit()):
            self._reply(session, m.ERR_FILE_USAGE)
            return None
        target = parts[1]
        filename = " ".join(parts[2:-1])
        size = int(size_text)
        self.log.info("File command from %s: %s -> %s (%d bytes)", session.username, filename, target, size)

        sink = self.state.registry.lookup(target)
        if sink is not None:
            return self._relay_to_user(session, target, sink, filename, size)

        members = self._group_members_for(target, session.username)
        if members is not None:
            return self._relay_to_group(session, target, members, filename, size)

        result = TransferResult(target, filename, size)
        result.relayed = drain(session.rfile, size, self.chunk_size)
        self._reply(session, m.ERR_NO_DESTINATION)
        self.log.warning("File from %s dropped: destination %s not found or not permitted",
                         session.username, target)
        return result

    def _relay_to_user(self, session, target: str, sink: Sink, filename: str, size: int) -> TransferResult:
        # Streamed chunk by chunk into a span on the recipient's queue; only this
        # session waits on the sender, other writers to the recipient just queue up.
        result = TransferResult(target, filename, size)
        with sink.exclusive() as span:
            delivering = self._deliver(target, span, m.file_announce_line(session.username, filename, size))
            try:
                for chunk in iter_exact(session.rfile, size, self.chunk_size):
                    result.relayed += len(chunk)
                    if delivering:
                        try:
                            span.send_bytes(chunk)
                        except (OSError, ValueError) as e:
                            # keep draining so the sender's stream stays framed
                            self.log.warning("Relay to %s broken after %d bytes: %s", target, result.relayed, e)
                            delivering = False
            except TruncatedPayloadError as e:
                self.log.warning("File %s from %s to %s truncated: %d of %d bytes",
                                 filename, session.username, target, e.received, e.expected)
                return result
        if delivering:
            result.recipients.append(target)
            self.log.info("[OK] File sent to %s (%d bytes)", target, result.relayed)
        return result

    def _relay_to_group(self, session, group: str, members: List[str], filename: str, size: int) -> TransferResult:
        # Buffered once, then replayed to every member.
        result = TransferResult(group, filename, size)
        try:
            payload = read_exact(session.rfile, size, self.chunk_size)
        except TruncatedPayloadError as e:
            result.relayed = e.received
            self.log.warning("Group file %s from %s to %s truncated: %d of %d bytes",
                             filename, session.username, group, e.received, e.expected)
            return result
        result.relayed = len(payload)

        line = m.group_file_announce_line(group, session.username, filename, len(payload))
        for member, sink in self._online(members, exclude=session.username):
            try:
                with sink.exclusive() as span:
                    span.send_line(line)
                    span.send_bytes(payload)
            except (OSError, ValueError) as e:
                self.log.warning("Group file to %s failed: %s", member, e)
                continue
            result.recipients.append(member)
            self.log.info("[OK] File delivered to %s", member)
        self.log.info("[OK] Group file: %s -> %s: %s", session.username, group, filename)
        return result

    # ----- helpers -----

    def _group_members_for(self, group: str, user: str) -> Optional[List[str]]:
        # members of `group`, or None if it does not exist or `user` is not in it
        if not self.state.groups.is_member(group, user):
            return None
        # groups never shrink, so the roster still holds `user`
        return self.state.groups.members(group)

    def _online(self, members: List[str], exclude: str):
        for member in members:
            if member == exclude:
                continue
            sink = self.state.registry.lookup(member)
            if sink is not None:
                yield member, sink

    def _deliver(self, name: str, sink: Union[Sink, Span], line: str) -> bool:
        try:
            sink.send_line(line)
            return True
        except (OSError, ValueError) as e:
            self.log.debug("Delivery to %s failed: %s", name, e)
            return False

    def _reply(self, session, reason: str) -> None:
        session.sink.send_line(m.error_line(reason))
