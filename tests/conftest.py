# FILE: tests/conftest.py
"""
Shared fakes for the remote runner test suite.

- FakeChannel: scripted stand-in for a paramiko exec channel
- FakeConnection / connection_factory: stand-in for RemoteConnection
"""
from collections import deque

import pytest

from remote_runner.guard import ExecutionGuard
from remote_runner.runner import Orchestrator
from remote_runner.sessions import SessionStore


class FakeChannel:
    """Replays stdout/stderr chunks, then reports an exit status.

    exit_status=None means the remote process never exits on its own; with
    hang_up=True the channel closes once every chunk has been read. Like a
    paramiko channel, chunks already queued stay readable after the close, and
    each read returns at most ``nbytes``.
    """

    def __init__(self, stdout=(), stderr=(), exit_status=0, hang_up=False, closed=False):
        self.stdout_chunks = deque(stdout)
        self.stderr_chunks = deque(stderr)
        self.exit_status = exit_status
        self.hang_up = hang_up
        self.closed = closed
        self.close_calls = 0

    def _drained(self):
        return not self.stdout_chunks and not self.stderr_chunks

    @staticmethod
    def _take(chunks, nbytes):
        if not chunks:
            return b""
        chunk = chunks.popleft()
        if len(chunk) > nbytes:
            chunks.appendleft(chunk[nbytes:])
            chunk = chunk[:nbytes]
        return chunk

    def recv_ready(self):
        return bool(self.stdout_chunks)

    def recv(self, nbytes):
        return self._take(self.stdout_chunks, nbytes)

    def recv_stderr_ready(self):
        return bool(self.stderr_chunks)

    def recv_stderr(self, nbytes):
        return self._take(self.stderr_chunks, nbytes)

    def exit_status_ready(self):
        if self._drained() and self.exit_status is None and self.hang_up:
            self.closed = True
        return self.exit_status is not None and self._drained()

    def recv_exit_status(self):
        return self.exit_status

    def close(self):
        self.closed = True
        self.close_calls += 1


class FakeConnection:
    def __init__(self, credential, run_log_path="", channel=None, connect_error=None):
        self.credential = credential
        self.run_log_path = run_log_path
        self.channel = channel
        self.connect_error = connect_error
        self.error = None
        self.commands = []
        self.connected = False
        self.close_calls = 0

    def connect(self):
        if self.connect_error is not None:
            self.error = self.connect_error
            raise self.connect_error
        self.connected = True
        return self

    def execute(self, command):
        self.commands.append(command)
        return self.channel

    def close(self):
        self.close_calls += 1


class ConnectionFactory:
    """Builds FakeConnections and remembers them for assertions."""

    def __init__(self, channel_builder=None, connect_error=None):
        self.channel_builder = channel_builder or (lambda: FakeChannel(stdout=[b"ok\n"], exit_status=0))
        self.connect_error = connect_error
        self.created = []

    def __call__(self, credential, run_log_path=""):
        connection = FakeConnection(
            credential,
            run_log_path=run_log_path,
            channel=self.channel_builder(),
            connect_error=self.connect_error,
        )
        self.created.append(connection)
        return connection


@pytest.fixture
def connection_factory():
    return ConnectionFactory()


@pytest.fixture
def orchestrator(connection_factory):
    orch = Orchestrator(
        guard=ExecutionGuard(ttl=5.0),
        sessions=SessionStore(),
        connection_factory=connection_factory,
        isolate_runs=True,
    )
    yield orch
    orch.close()
