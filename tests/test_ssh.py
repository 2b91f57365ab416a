# FILE: tests/test_ssh.py
"""
Tests for remote_runner/ssh.py
Fault classification, connection state machine, auth fallback, watchdog and heartbeat.
"""
import errno
import socket
import threading
import time
from unittest.mock import MagicMock

import paramiko
import pytest

from remote_runner import ssh
from remote_runner.errors import (
    AuthenticationFailure, ConnectionRefused, ConnectTimeout, ProtocolError, ResetByPeer
)
from remote_runner.models import RemoteCredential
from remote_runner.ssh import ConnectionState, Heartbeat, RemoteConnection, classify_error


@pytest.fixture
def credential():
    return RemoteCredential(host="10.0.0.5", identity="alice", secret="s3cret", port=22)


@pytest.fixture
def fake_sock(monkeypatch):
    sock = MagicMock(name="socket")
    monkeypatch.setattr(ssh.socket, "create_connection", lambda address, timeout=None: sock)
    return sock


@pytest.fixture
def transport(monkeypatch, fake_sock):
    t = MagicMock(name="transport")
    t.is_authenticated.return_value = True
    t.is_active.return_value = True
    monkeypatch.setattr(ssh.paramiko, "Transport", lambda sock: t)
    return t


class TestClassifyError:

    @pytest.mark.parametrize("exc, expected", [
        (paramiko.AuthenticationException("Authentication failed."), AuthenticationFailure),
        (paramiko.BadAuthenticationType("Bad authentication type", ["publickey"]), AuthenticationFailure),
        (socket.timeout("timed out"), ConnectTimeout),
        (ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused"), ConnectionRefused),
        (ConnectionResetError(errno.ECONNRESET, "Connection reset by peer"), ResetByPeer),
        (paramiko.SSHException("Error reading SSH protocol banner"), ProtocolError),
        (paramiko.SSHException("Timeout opening channel."), ConnectTimeout),
        (socket.gaierror(-2, "Name or service not known"), ConnectionRefused),
        (OSError(errno.EHOSTUNREACH, "No route to host"), ConnectionRefused),
        (EOFError(), ResetByPeer),
        (ValueError("odd"), ProtocolError),
    ])
    def test_mapping(self, exc, expected):
        error = classify_error(exc, "10.0.0.5", 22)
        assert type(error) is expected
        assert error.cause is exc

    def test_timeout_kind_name(self):
        assert classify_error(socket.timeout("timed out")).kind == "Timeout"

    def test_already_classified_passes_through(self):
        original = ResetByPeer("gone")
        assert classify_error(original) is original


class TestConnect:

    def test_success_reaches_ready(self, credential, transport):
        conn = RemoteConnection(credential)
        assert conn.connect() is conn
        assert conn.state is ConnectionState.READY
        transport.auth_password.assert_called_once_with("alice", "s3cret", fallback=False)
        transport.set_keepalive.assert_called_once_with(2)
        conn.close()

    def test_close_releases_once(self, credential, transport, fake_sock):
        conn = RemoteConnection(credential)
        conn.connect()
        conn.close()
        conn.close()
        assert conn.state is ConnectionState.DONE
        assert transport.close.call_count == 1
        assert fake_sock.close.call_count == 1
        assert conn.heartbeat.stop_event.is_set()

    def test_wrong_password(self, credential, transport):
        transport.auth_password.side_effect = paramiko.AuthenticationException("Authentication failed.")
        conn = RemoteConnection(credential)
        with pytest.raises(AuthenticationFailure):
            conn.connect()
        assert conn.state is ConnectionState.ERROR
        assert isinstance(conn.error, AuthenticationFailure)
        assert transport.close.call_count == 1

    def test_keyboard_interactive_fallback(self, credential, transport):
        transport.auth_password.side_effect = paramiko.BadAuthenticationType(
            "Bad authentication type", ["publickey", "keyboard-interactive"]
        )
        conn = RemoteConnection(credential)
        conn.connect()
        username, handler = transport.auth_interactive.call_args[0]
        assert username == "alice"
        assert handler("", "", [("Password: ", False)]) == ["s3cret"]
        # The secret is supplied once only.
        assert handler("", "", [("Password: ", False)]) == []
        conn.close()

    def test_interactive_declines_multiple_prompts(self, credential):
        conn = RemoteConnection(credential)
        assert conn._interactive_handler("", "", [("Password: ", False), ("OTP: ", True)]) == []

    def test_no_interactive_offered(self, credential, transport):
        transport.auth_password.side_effect = paramiko.BadAuthenticationType("Bad authentication type", ["publickey"])
        conn = RemoteConnection(credential)
        with pytest.raises(AuthenticationFailure):
            conn.connect()
        transport.auth_interactive.assert_not_called()

    def test_refused(self, credential, monkeypatch):
        def refuse(address, timeout=None):
            raise ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
        monkeypatch.setattr(ssh.socket, "create_connection", refuse)
        conn = RemoteConnection(credential)
        with pytest.raises(ConnectionRefused):
            conn.connect()
        assert conn.state is ConnectionState.ERROR

    def test_unreachable_host_is_refused(self, credential, monkeypatch):
        def black_hole(address, timeout=None):
            raise socket.timeout("timed out")
        monkeypatch.setattr(ssh.socket, "create_connection", black_hole)
        with pytest.raises(ConnectionRefused):
            RemoteConnection(credential).connect()

    def test_handshake_watchdog(self, credential, transport):
        closed = threading.Event()
        transport.close.side_effect = lambda: closed.set()

        def stalled_handshake(timeout=None):
            closed.wait(5)
            raise EOFError()

        transport.start_client.side_effect = stalled_handshake
        conn = RemoteConnection(credential, connect_timeout=0.05)
        started = time.time()
        with pytest.raises(ConnectTimeout):
            conn.connect()
        assert time.time() - started < 2
        assert conn.state is ConnectionState.ERROR

    def test_host_key_verification_rejects_unknown(self, credential, transport, tmp_path):
        conn = RemoteConnection(credential, verify_host_key=True, known_hosts_path=str(tmp_path / "known_hosts"))
        with pytest.raises(ProtocolError):
            conn.connect()
        transport.auth_password.assert_not_called()


class TestStateMachine:

    def test_execute_requires_ready(self, credential):
        conn = RemoteConnection(credential)
        with pytest.raises(ProtocolError):
            conn.execute("ls")

    def test_execute_opens_stream(self, credential, transport):
        channel = MagicMock(name="channel")
        transport.open_session.return_value = channel
        conn = RemoteConnection(credential)
        conn.connect()
        assert conn.execute("echo hi") is channel
        channel.exec_command.assert_called_once_with("echo hi")
        assert conn.state is ConnectionState.STREAM_OPEN
        conn.close()
        assert conn.state is ConnectionState.DONE
        channel.close.assert_called_once()

    def test_execute_failure_is_terminal(self, credential, transport):
        transport.open_session.side_effect = paramiko.ChannelException(2, "Connect failed")
        conn = RemoteConnection(credential)
        conn.connect()
        with pytest.raises(ProtocolError):
            conn.execute("ls")
        assert conn.state is ConnectionState.ERROR

    def test_close_from_idle(self, credential):
        conn = RemoteConnection(credential)
        conn.close()
        assert conn.state is ConnectionState.DONE

    def test_no_transition_out_of_terminal(self, credential):
        conn = RemoteConnection(credential)
        conn.close()
        with pytest.raises(ProtocolError):
            conn.connect()

    def test_run_log_written(self, credential, transport, tmp_path):
        log_path = tmp_path / "run.log"
        conn = RemoteConnection(credential, run_log_path=str(log_path))
        conn.connect()
        conn.close()
        text = log_path.read_text()
        assert '"event": "connected"' in text
        assert "s3cret" not in text


class TestHeartbeat:

    def test_counts_consecutive_misses(self):
        results = iter([False, True, False, False, False])
        beat = Heartbeat(lambda: next(results), on_dead=lambda missed: None, max_missed=3)
        assert [beat.beat() for _ in range(5)] == [True, True, True, True, False]

    def test_probe_exception_counts_as_miss(self):
        def probe():
            raise OSError("broken pipe")
        beat = Heartbeat(probe, on_dead=lambda missed: None, max_missed=1)
        assert beat.beat() is False

    def test_loop_reports_dead_transport(self):
        dead = threading.Event()
        beat = Heartbeat(lambda: False, on_dead=lambda missed: dead.set(), interval=0.01, max_missed=3)
        beat.start()
        assert dead.wait(2)
        beat.stop()

    def test_lost_heartbeat_fails_connection(self, credential, transport):
        conn = RemoteConnection(credential)
        conn.connect()
        conn._heartbeat_lost(3)
        assert conn.state is ConnectionState.ERROR
        assert isinstance(conn.error, ResetByPeer)
        assert transport.close.call_count == 1
