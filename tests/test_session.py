"""
Unit tests for the session state machine, driven over in-memory streams.
"""

import io

import pytest

from conftest import Capture
from relay_server.session import Session, SessionState

BAD_NAME = "ERRO:Nome inválido ou já em uso."


class ResetDuringRead(io.BytesIO):
    """Lines read fine; raw payload reads fail like a reset connection."""

    def read1(self, size=-1):
        raise ConnectionResetError("connection reset by peer")


def make_session(router, incoming: bytes):
    closed = []
    out = Capture()
    session = Session(io.BytesIO(incoming), out, router, peer="127.0.0.1:5555",
                      closer=lambda: closed.append(True))
    return session, out, closed


class TestHandshake:
    """Tests for the handshake phase."""

    def test_successful_handshake(self, router, state):
        session, out, closed = make_session(router, b"alice123\n")
        assert session.state is SessionState.CONNECTING
        assert session.handshake()
        assert session.sink.flush(timeout=5)

        assert session.state is SessionState.ACTIVE
        assert session.username == "alice123"
        assert state.registry.lookup("alice123") is session.sink
        # prompt, private snapshot, then the presence broadcast
        assert out.lines() == ["NOME?", "USERLIST|alice123", "USERLIST|alice123"]

    def test_handshake_accepts_crlf(self, router, state):
        session, out, _ = make_session(router, b"alice123\r\n")
        assert session.handshake()
        assert "alice123" in state.registry

    def test_presence_broadcast_reaches_others(self, router, connect_peer):
        bob = connect_peer("bob_99")
        session, out, _ = make_session(router, b"alice123\n")
        session.handshake()
        assert session.sink.flush(timeout=5)
        assert out.lines()[1] == "USERLIST|bob_99,alice123"
        assert bob.lines() == ["USERLIST|bob_99,alice123"]

    @pytest.mark.parametrize("incoming", [
        b"ab\n", b"\n", b"null\n", b"NULL\n", b"Null\n", b"bad name\n", b"alice!\n", b"",
    ])
    def test_rejected_names(self, router, state, incoming):
        session, out, closed = make_session(router, incoming)
        session.run()

        assert out.lines() == ["NOME?", BAD_NAME]
        assert session.state is SessionState.CLOSED
        assert session.username is None
        assert len(state.registry) == 0
        assert closed == [True]

    def test_duplicate_name_rejected(self, router, state, connect_peer):
        bob = connect_peer("bob_99")
        session, out, closed = make_session(router, b"bob_99\n")
        session.run()

        assert out.lines() == ["NOME?", BAD_NAME]
        assert state.registry.lookup("bob_99") is bob.sink
        # the existing user is not told about a failed attempt
        assert bob.lines() == []


class TestCommandLoop:
    """Tests for the active phase and teardown."""

    def test_commands_in_order_until_close(self, router, connect_peer):
        bob = connect_peer("bob_99")
        session, out, closed = make_session(
            router, b"alice123\n/msg bob_99 one\n/msg bob_99 two\nclose\n/msg bob_99 never\n")
        session.run()

        assert [l for l in bob.lines() if l.startswith("MSG:")] == ["MSG:alice123:one", "MSG:alice123:two"]
        assert session.state is SessionState.CLOSED

    def test_close_is_case_insensitive(self, router, connect_peer):
        bob = connect_peer("bob_99")
        session, _, _ = make_session(router, b"alice123\nCLOSE\n/msg bob_99 never\n")
        session.run()
        assert not any(l.startswith("MSG:") for l in bob.lines())

    def test_end_of_stream_closes_session(self, router, state, connect_peer):
        bob = connect_peer("bob_99")
        session, out, closed = make_session(router, b"alice123\n/msg bob_99 bye")
        session.run()

        assert "MSG:alice123:bye" in bob.lines()
        assert "alice123" not in state.registry
        # bob saw alice arrive and leave
        assert bob.lines()[-1] == "USERLIST|bob_99"
        assert closed == [True]
        assert out.close_calls == 1

    def test_command_errors_do_not_end_the_session(self, router, connect_peer):
        bob = connect_peer("bob_99")
        session, out, _ = make_session(router, b"alice123\n/oops\n/msg nobody x\n/msg bob_99 ok\n")
        session.run()

        assert out.lines()[3:] == ["ERRO:Comando desconhecido.", "ERRO:Destino não encontrado ou sem permissão."]
        assert "MSG:alice123:ok" in bob.lines()

    def test_file_payload_is_not_read_as_commands(self, router, connect_peer):
        bob = connect_peer("bob_99")
        session, out, _ = make_session(router, b"alice123\n/arquivo bob_99 x.txt 10\n/msg fake\n/msg bob_99 after\n")
        session.run()

        assert bob.out.getvalue().count(b"/msg fake\n") == 1
        assert "MSG:alice123:after" in bob.out.getvalue().decode()
        assert not any(l.startswith("ERRO") for l in out.lines())

    def test_name_is_released_and_reusable(self, router, state):
        first, _, _ = make_session(router, b"alice123\nclose\n")
        first.run()
        assert "alice123" not in state.registry

        second, out, _ = make_session(router, b"alice123\n")
        assert second.handshake()
        assert second.sink.flush(timeout=5)
        assert out.lines()[1] == "USERLIST|alice123"

    def test_close_runs_once(self, router, state):
        session, out, closed = make_session(router, b"alice123\n")
        session.run()
        session.close()
        assert closed == [True]
        assert out.close_calls == 1

    def test_group_membership_survives_disconnect(self, router, state, connect_peer):
        """Current behaviour: leaving does not remove the user from groups."""
        connect_peer("bob_99")
        session, _, _ = make_session(router, b"alice123\n/grupo_criar team1\n/grupo_add team1 bob_99\n")
        session.run()
        assert state.groups.members("team1") == ["alice123", "bob_99"]

    def test_reset_during_file_ends_session_without_error_line(self, router, state, connect_peer):
        """An I/O failure on the sender's own stream is an implicit disconnect."""
        bob = connect_peer("bob_99")
        rfile = ResetDuringRead(b"alice123\n/arquivo bob_99 f.bin 5\n")
        out = Capture()
        session = Session(rfile, out, router, peer="127.0.0.1:5555")
        session.run()

        assert not any(l.startswith("ERRO") for l in out.lines())
        assert session.state is SessionState.CLOSED
        assert "alice123" not in state.registry
        assert bob.lines()[-1] == "USERLIST|bob_99"
