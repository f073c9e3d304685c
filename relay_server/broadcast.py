import logging
from typing import Optional

from relay_common.messages import group_line, userlist_line
from relay_server.state import ServerState, Sink

log = logging.getLogger(__name__)


class Broadcaster:
    '''
    Pushes registry and group snapshots to the interested connections.
    Fan-out is best effort: a peer that fails to receive is skipped, its own
    session notices the broken socket and cleans up.
    '''

    def __init__(self, state: ServerState, logger: Optional[logging.Logger] = None):
        self.state = state
        self.log = logger or log

    def send_user_snapshot(self, sink: Sink) -> None:
        ''' This function sends the connected users to a single peer'''
        sink.send_line(userlist_line(self.state.registry.snapshot()))

    def broadcast_users(self) -> None:
        ''' This function pushes the updated user list to all clients'''
        line = userlist_line(self.state.registry.snapshot())
        for name, sink in self.state.registry.sinks():
            self._deliver(name, sink, line)

    def broadcast_group(self, group: str) -> None:
        ''' This function pushes a group roster to the members currently online'''
        members = self.state.groups.members(group)
        if members is None:
            return
        line = group_line(group, members)
        for member in members:
            sink = self.state.registry.lookup(member)
            if sink is not None:
                self._deliver(member, sink, line)

    def _deliver(self, name: str, sink: Sink, line: str) -> None:
        try:
            sink.send_line(line)
        except (OSError, ValueError) as e:
            self.log.debug("Broadcast to %s failed: %s", name, e)
