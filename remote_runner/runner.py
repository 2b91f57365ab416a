import json
import os
import posixpath
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Optional, Set, Union

from remote_runner.config import DEFAULT_DESCRIPTOR_NAME, DRAIN_JOIN_TIMEOUT, config
from remote_runner.errors import ConnectError, MalformedInput
from remote_runner.guard import ExecutionGuard
from remote_runner.models import EventSequencer, ExecutionRequest, OutputEvent, RemoteCredential, SessionRecord
from remote_runner.planner import plan, plan_direct, resolve_source_path, sanitize_run_name, validate_identity
from remote_runner.sessions import SessionStore
from remote_runner.ssh import RemoteConnection
from remote_runner.streamer import OutputStreamer
from remote_runner.utils import log_error, safe_name

Descriptor = Union[str, Dict[str, Any]]


def _descriptor_run_name(descriptor: Descriptor) -> str:
    if isinstance(descriptor, str):
        try:
            descriptor = json.loads(descriptor)
        except ValueError:
            return ""
    if isinstance(descriptor, dict):
        value = descriptor.get("run_name")
        if isinstance(value, str):
            return value
    return ""


def resolve_run_name(descriptor: Descriptor, descriptor_name: Optional[str], run_name: Optional[str]) -> str:
    """Explicit name, then the descriptor's ``run_name`` field, then the descriptor file stem."""
    if run_name and run_name.strip():
        return sanitize_run_name(run_name)
    from_descriptor = _descriptor_run_name(descriptor)
    if from_descriptor.strip():
        return sanitize_run_name(from_descriptor)
    stem = posixpath.splitext(posixpath.basename(descriptor_name or DEFAULT_DESCRIPTOR_NAME))[0]
    return sanitize_run_name(stem)


def logical_run_key(host: str, run_name: str) -> str:
    return f"{host}/{sanitize_run_name(run_name)}"


class Orchestrator:
    """Owns the state shared between requests and drives one run per ``submit`` call."""

    def __init__(
        self,
        guard: Optional[ExecutionGuard] = None,
        sessions: Optional[SessionStore] = None,
        connection_factory: Callable[..., RemoteConnection] = RemoteConnection,
        runs_dir: str = "",
        project_tag: str = "",
        isolate_runs: Optional[bool] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.guard = guard or ExecutionGuard()
        self.sessions = sessions or SessionStore()
        self.connection_factory = connection_factory
        self.runs_dir = runs_dir
        self.project_tag = project_tag
        self.isolate_runs = config.ISOLATE_RUNS if isolate_runs is None else isolate_runs
        self.clock = clock
        self.run_counter = 1
        self.lock = threading.Lock()
        self.drains: Set[threading.Thread] = set()

    def _build_run_log_path(self, run_name: str) -> str:
        if not self.runs_dir:
            return ""
        with self.lock:
            run_id = self.run_counter
            self.run_counter += 1
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{self.project_tag or 'runner'}__r{run_id}__{safe_name(run_name)}__{stamp}.log"
        return os.path.join(self.runs_dir, filename)

    # ---- auth collaborator ----

    def authenticate(self, credential: RemoteCredential) -> SessionRecord:
        self._validate_credential(credential)
        connection = self.connection_factory(credential)
        try:
            connection.connect()
        finally:
            connection.close()
        record = self.sessions.issue(credential.host, credential.identity)
        log_error(f"session issued for {credential.identity}@{credential.host}")
        return record

    # ---- request building ----

    @staticmethod
    def _validate_credential(credential: RemoteCredential) -> None:
        missing = [name for name in ("host", "identity", "secret") if not getattr(credential, name)]
        if missing:
            raise MalformedInput(f"Missing required parameters ({', '.join(missing)})")
        validate_identity(credential.identity)

    @staticmethod
    def _validate_descriptor(descriptor: Optional[Descriptor]) -> None:
        if descriptor is None or (isinstance(descriptor, str) and not descriptor.strip()):
            raise MalformedInput("Missing required parameters (descriptor)")

    def _validate_request(self, request: ExecutionRequest) -> None:
        self._validate_credential(request.credential)
        self._validate_descriptor(request.descriptor)

    def build_request(
        self,
        host: Optional[str],
        identity: Optional[str],
        secret: Optional[str],
        descriptor: Optional[Descriptor],
        target_directory: Optional[str] = None,
        descriptor_name: Optional[str] = None,
        run_name: Optional[str] = None,
        session_token: Optional[str] = None,
        port: Optional[int] = None,
    ) -> ExecutionRequest:
        if session_token:
            record = self.sessions.validate(session_token)
            if record is None:
                raise MalformedInput("Invalid or expired session token")
            host = host or record.host
            identity = identity or record.identity
        credential = RemoteCredential(host=host or "", identity=identity or "", secret=secret or "")
        if port:
            credential.port = int(port)
        self._validate_credential(credential)
        self._validate_descriptor(descriptor)

        name = resolve_run_name(descriptor, descriptor_name, run_name)
        return ExecutionRequest(
            logical_run_key=logical_run_key(credential.host, name),
            run_name=name,
            descriptor=descriptor,
            credential=credential,
            target_directory=resolve_source_path(credential.identity, target_directory),
        )

    # ---- execution ----

    def submit(self, request: ExecutionRequest) -> Iterator[OutputEvent]:
        """Check the request and claim its run key, then hand back the lazy event stream.

        Malformed input and duplicates raise here, before any connection exists.
        """
        self._validate_request(request)
        self.guard.try_acquire(request.logical_run_key)
        return self._run(request)

    def _plan(self, request: ExecutionRequest):
        identity = request.credential.identity
        if self.isolate_runs:
            return plan(request.run_name, identity, self.clock(), source_path=request.target_directory)
        return plan_direct(identity, source_path=request.target_directory)

    def _run(self, request: ExecutionRequest) -> Iterator[OutputEvent]:
        credential = request.credential
        sequencer = EventSequencer()
        run_log_path = self._build_run_log_path(request.run_name)
        connection = self.connection_factory(credential, run_log_path=run_log_path)
        streamer: Optional[OutputStreamer] = None
        handed_off = False
        try:
            yield sequencer.make("status", f"Connecting to {credential.host}...")
            try:
                connection.connect()
            except ConnectError as exc:
                yield sequencer.make("error", f"SSH connection error: {exc.describe()}")
                return
            yield sequencer.make("status", "SSH Connection established")

            run_plan = self._plan(request)
            if run_plan.environment is not None:
                yield sequencer.make("status", f"Isolated directory: {run_plan.environment.path}")
            try:
                channel = connection.execute(run_plan.command_line)
            except ConnectError as exc:
                yield sequencer.make("error", f"Error executing command: {exc.describe()}")
                return
            yield sequencer.make("status", "Command running...")

            streamer = OutputStreamer(
                channel,
                sequencer=sequencer,
                fault=lambda: connection.error,
                run_log_path=run_log_path,
            )
            yield from streamer.events()
        except GeneratorExit:
            if streamer is not None and not streamer.finished:
                self._detach(connection, streamer, request.logical_run_key)
                handed_off = True
            raise
        except Exception as exc:
            log_error(f"run {request.logical_run_key} failed: {exc}")
            yield sequencer.make("error", f"Unexpected error: {exc}")
        finally:
            if not handed_off:
                connection.close()

    def _detach(self, connection: RemoteConnection, streamer: OutputStreamer, key: str) -> None:
        """Keep draining a stream whose caller went away.

        The remote process is left alone; the transport is released once the
        remote side closes the stream or prints the sentinel.
        """
        log_error(f"caller left run {key}; draining remote output in the background")

        def drain() -> None:
            try:
                for _ in streamer.events():
                    pass
            except Exception as exc:
                log_error(f"background drain for {key} failed: {exc}")
            finally:
                connection.close()
                with self.lock:
                    self.drains.discard(threading.current_thread())

        thread = threading.Thread(target=drain, name=f"drain-{key}", daemon=True)
        with self.lock:
            self.drains.add(thread)
        thread.start()

    @property
    def active_drains(self) -> int:
        with self.lock:
            return len(self.drains)

    def close(self, drain_timeout: float = DRAIN_JOIN_TIMEOUT) -> None:
        self.guard.close()
        self.sessions.close()
        with self.lock:
            drains = list(self.drains)
        for thread in drains:
            thread.join(drain_timeout)
        if self.active_drains:
            log_error(f"{self.active_drains} background drain(s) still running at shutdown")
