import errno
import os
import socket
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import paramiko

from remote_runner.config import (
    AUTH_TIMEOUT, CHANNEL_OPEN_TIMEOUT, CONNECT_TIMEOUT, KEEPALIVE_COUNT_MAX, KEEPALIVE_INTERVAL,
    config
)
from remote_runner.errors import (
    AuthenticationFailure, ConnectError, ConnectionRefused, ConnectTimeout, ProtocolError,
    ResetByPeer
)
from remote_runner.models import RemoteCredential
from remote_runner.utils import iso_now, json_line, log_error

UNREACHABLE_ERRNOS = {
    errno.ECONNREFUSED, errno.EHOSTUNREACH, errno.ENETUNREACH, errno.EHOSTDOWN, errno.EADDRNOTAVAIL
}


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    EXECUTING = "executing"
    STREAM_OPEN = "stream_open"
    CLOSING = "closing"
    DONE = "done"
    ERROR = "error"


TERMINAL_STATES = {ConnectionState.DONE, ConnectionState.ERROR}

# ERROR is reachable from every non-terminal state and is not listed here.
TRANSITIONS = {
    ConnectionState.IDLE: {ConnectionState.CONNECTING, ConnectionState.DONE},
    ConnectionState.CONNECTING: {ConnectionState.READY},
    ConnectionState.READY: {ConnectionState.EXECUTING, ConnectionState.CLOSING},
    ConnectionState.EXECUTING: {ConnectionState.STREAM_OPEN, ConnectionState.CLOSING},
    ConnectionState.STREAM_OPEN: {ConnectionState.CLOSING},
    ConnectionState.CLOSING: {ConnectionState.DONE},
}


def classify_error(exc: BaseException, host: str = "", port: int = 22) -> ConnectError:
    """Map a handshake or session-layer exception onto the connection fault taxonomy."""
    if isinstance(exc, ConnectError):
        return exc
    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    where = f"{host}:{port}" if host else "the remote host"

    if isinstance(exc, paramiko.AuthenticationException):
        return AuthenticationFailure("Invalid credentials. Please check your username and password.", exc)
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return ConnectTimeout(f"Connection timed out. Please check if {where} is reachable and SSH is running.", exc)
    if isinstance(exc, ConnectionRefusedError):
        return ConnectionRefused(f"Connection refused. Please check if SSH is running on {where}.", exc)
    if isinstance(exc, ConnectionResetError):
        return ResetByPeer("Connection was reset by the server.", exc)
    if isinstance(exc, paramiko.SSHException):
        if "timed out" in lowered or "timeout" in lowered:
            return ConnectTimeout(f"Connection timed out during SSH negotiation with {where}.", exc)
        if "reset by peer" in lowered:
            return ResetByPeer("Connection was reset by the server.", exc)
        if "refused" in lowered:
            return ConnectionRefused(f"Connection refused by {where}.", exc)
        return ProtocolError(message, exc)
    if isinstance(exc, socket.gaierror):
        return ConnectionRefused(f"Could not resolve host {host or where}: {message}", exc)
    if isinstance(exc, OSError) and exc.errno in UNREACHABLE_ERRNOS:
        return ConnectionRefused(f"Host {where} is unreachable: {message}", exc)
    if isinstance(exc, EOFError):
        return ResetByPeer("Connection closed by the server during negotiation.", exc)
    return ProtocolError(message, exc)


class Heartbeat:
    """Periodic transport probe; gives up after ``max_missed`` consecutive misses."""

    def __init__(
        self,
        probe: Callable[[], bool],
        on_dead: Callable[[int], None],
        interval: float = KEEPALIVE_INTERVAL,
        max_missed: int = KEEPALIVE_COUNT_MAX,
    ):
        self.probe = probe
        self.on_dead = on_dead
        self.interval = interval
        self.max_missed = max_missed
        self.missed = 0
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self.thread = threading.Thread(target=self._loop, daemon=True)
        self.thread.start()

    def beat(self) -> bool:
        try:
            alive = bool(self.probe())
        except Exception:
            alive = False
        self.missed = 0 if alive else self.missed + 1
        return self.missed < self.max_missed

    def _loop(self) -> None:
        while not self.stop_event.wait(self.interval):
            if not self.beat():
                self.on_dead(self.missed)
                return

    def stop(self) -> None:
        self.stop_event.set()


class RemoteConnection:
    """One SSH transport owned by one request.

    ``connect`` produces exactly one outcome (ready, or a raised
    ``ConnectError``). Entering DONE or ERROR releases the transport, and the
    release runs once no matter how many paths reach it.
    """

    def __init__(
        self,
        credential: RemoteCredential,
        run_log_path: str = "",
        connect_timeout: float = CONNECT_TIMEOUT,
        auth_timeout: float = AUTH_TIMEOUT,
        verify_host_key: Optional[bool] = None,
        known_hosts_path: Optional[str] = None,
    ):
        self.credential = credential
        self.run_log_path = run_log_path
        self.connect_timeout = connect_timeout
        self.auth_timeout = auth_timeout
        self.verify_host_key = config.SSH_VERIFY_HOST_KEY if verify_host_key is None else verify_host_key
        self.known_hosts_path = known_hosts_path or config.KNOWN_HOSTS_PATH

        self.state = ConnectionState.IDLE
        self.error: Optional[ConnectError] = None
        self.sock: Optional[socket.socket] = None
        self.transport: Optional[paramiko.Transport] = None
        self.channel: Optional[paramiko.Channel] = None
        self.created_at = datetime.now()

        self.lock = threading.RLock()
        self.released = False
        self.handshake_expired = False
        self.secret_offered = False
        self.watchdog: Optional[threading.Timer] = None
        self.heartbeat: Optional[Heartbeat] = None

    def _log(self, direction: str, payload: Dict[str, Any]) -> None:
        data = {
            "ts": iso_now(),
            "dir": direction,
            "host": self.credential.host,
            "identity": self.credential.identity,
        }
        data.update(payload)
        json_line(self.run_log_path, data)

    # ---- state machine ----

    def _transition(self, target: ConnectionState) -> None:
        with self.lock:
            current = self.state
            if current in TERMINAL_STATES:
                raise ProtocolError(f"connection already {current.value}")
            if target is not ConnectionState.ERROR and target not in TRANSITIONS.get(current, set()):
                raise ProtocolError(f"invalid transition {current.value} -> {target.value}")
            self.state = target
        self._log("SYS", {"event": "state", "from": current.value, "to": target.value})
        if target in TERMINAL_STATES:
            self._release()

    def _fail(self, error: ConnectError) -> None:
        with self.lock:
            if self.state in TERMINAL_STATES:
                return
            self.error = error
        self._log("SYS", {"event": "connection_error", "kind": error.kind, "error": error.message})
        self._transition(ConnectionState.ERROR)

    @property
    def is_terminal(self) -> bool:
        with self.lock:
            return self.state in TERMINAL_STATES

    # ---- handshake ----

    def connect(self) -> "RemoteConnection":
        host, port = self.credential.host, self.credential.port
        self._transition(ConnectionState.CONNECTING)
        self._log("SYS", {"event": "connect_start", "port": port})
        self.watchdog = threading.Timer(self.connect_timeout, self._handshake_timeout)
        self.watchdog.daemon = True
        self.watchdog.start()
        try:
            self.sock = self._open_socket()
            self.transport = paramiko.Transport(self.sock)
            self.transport.banner_timeout = self.connect_timeout
            self.transport.auth_timeout = self.auth_timeout
            self.transport.start_client(timeout=self.connect_timeout)
            self._verify_host_key()
            self._authenticate()
            self._cancel_watchdog()
            if self.handshake_expired:
                raise ConnectTimeout(f"Connection timed out after {self.connect_timeout:g} seconds.")
        except Exception as exc:
            self._cancel_watchdog()
            if self.handshake_expired and not isinstance(exc, ConnectError):
                error = ConnectTimeout(
                    f"Connection timed out after {self.connect_timeout:g} seconds. "
                    f"Please check if {host} is reachable and SSH is running on port {port}.",
                    exc,
                )
            else:
                error = classify_error(exc, host, port)
            log_error(f"connect to {host}:{port} failed ({error.kind}): {error.message}")
            self._fail(error)
            raise error from exc

        self.transport.set_keepalive(KEEPALIVE_INTERVAL)
        self.heartbeat = Heartbeat(self._probe_transport, self._heartbeat_lost)
        self.heartbeat.start()
        self._transition(ConnectionState.READY)
        self._log("SYS", {"event": "connected"})
        return self

    def _open_socket(self) -> socket.socket:
        host, port = self.credential.host, self.credential.port
        try:
            return socket.create_connection((host, port), timeout=self.connect_timeout)
        except ConnectionResetError:
            raise
        except OSError as exc:
            # No SSH bytes were exchanged: the host is unreachable from here.
            reason = "no answer" if isinstance(exc, socket.timeout) else (exc.strerror or str(exc))
            raise ConnectionRefused(
                f"Connection refused. Please check if SSH is running on {host}:{port} ({reason}).", exc
            ) from exc

    def _handshake_timeout(self) -> None:
        with self.lock:
            if self.state is not ConnectionState.CONNECTING:
                return
            self.handshake_expired = True
        self._log("SYS", {"event": "handshake_timeout", "seconds": self.connect_timeout})
        # Closing the socket unblocks whichever handshake step is waiting on it.
        self._close_transport()

    def _cancel_watchdog(self) -> None:
        if self.watchdog is not None:
            self.watchdog.cancel()
            self.watchdog = None

    def _verify_host_key(self) -> None:
        if not self.verify_host_key:
            return
        host, port = self.credential.host, self.credential.port
        known = paramiko.HostKeys()
        path = self.known_hosts_path or os.path.expanduser("~/.ssh/known_hosts")
        if os.path.exists(path):
            known.load(path)
        lookup = host if port == 22 else f"[{host}]:{port}"
        server_key = self.transport.get_remote_server_key()
        if not known.check(lookup, server_key):
            raise ProtocolError(f"Host key for {lookup} is unknown or does not match {path}.")

    def _authenticate(self) -> None:
        identity = self.credential.identity
        try:
            self.transport.auth_password(identity, self.credential.secret, fallback=False)
        except paramiko.BadAuthenticationType as exc:
            if "keyboard-interactive" not in (exc.allowed_types or []):
                raise
            self._log("SYS", {"event": "auth_fallback", "method": "keyboard-interactive"})
            self.transport.auth_interactive(identity, self._interactive_handler)
        if not self.transport.is_authenticated():
            raise paramiko.AuthenticationException("authentication did not complete")

    def _interactive_handler(self, title: str, instructions: str, prompt_list: List) -> List[str]:
        # Answer a single password-style prompt once; decline anything else.
        if self.credential.secret and len(prompt_list) == 1 and not self.secret_offered:
            self.secret_offered = True
            return [self.credential.secret]
        return []

    # ---- heartbeat ----

    def _probe_transport(self) -> bool:
        transport = self.transport
        if transport is None or not transport.is_active():
            return False
        transport.send_ignore()
        return True

    def _heartbeat_lost(self, missed: int) -> None:
        log_error(f"heartbeat lost for {self.credential.host} after {missed} missed beats")
        self._fail(ResetByPeer(f"No heartbeat from {self.credential.host} after {missed} attempts."))

    # ---- execution ----

    def execute(self, command: str) -> paramiko.Channel:
        self._transition(ConnectionState.EXECUTING)
        self._log("IN", {"event": "exec_start", "command": command})
        try:
            channel = self.transport.open_session(timeout=CHANNEL_OPEN_TIMEOUT)
            channel.exec_command(command)
        except Exception as exc:
            error = classify_error(exc, self.credential.host, self.credential.port)
            self._fail(error)
            raise error from exc
        self.channel = channel
        self._transition(ConnectionState.STREAM_OPEN)
        return channel

    # ---- teardown ----

    def close(self) -> None:
        with self.lock:
            state = self.state
            if state in TERMINAL_STATES:
                return
            if state is ConnectionState.IDLE:
                target_path = [ConnectionState.DONE]
            elif state is ConnectionState.CONNECTING:
                target_path = [ConnectionState.ERROR]
            else:
                target_path = [ConnectionState.CLOSING, ConnectionState.DONE]
            for target in target_path:
                self._transition(target)

    def _close_transport(self) -> None:
        for resource in (self.channel, self.transport, self.sock):
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as exc:
                log_error(f"close error ({type(resource).__name__}): {exc}")

    def _release(self) -> None:
        with self.lock:
            if self.released:
                return
            self.released = True
        self._cancel_watchdog()
        if self.heartbeat is not None:
            self.heartbeat.stop()
        self._close_transport()
        self.channel = None
        self.transport = None
        self.sock = None
        self._log("SYS", {"event": "released", "state": self.state.value})

    def __enter__(self) -> "RemoteConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
