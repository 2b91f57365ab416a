import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from remote_runner.config import config

EVENT_KINDS = ("status", "stdout", "stderr", "error", "success")
TERMINAL_KINDS = ("error", "success")


@dataclass
class RemoteCredential:
    host: str
    identity: str
    secret: str = field(repr=False)
    port: int = field(default_factory=lambda: config.SSH_PORT)


@dataclass
class ExecutionRequest:
    logical_run_key: str
    run_name: str
    descriptor: Union[str, Dict[str, Any]]
    credential: RemoteCredential
    target_directory: Optional[str] = None


@dataclass
class ExecutionLock:
    key: str
    acquired_at: float

    def age(self, now: float) -> float:
        return now - self.acquired_at


@dataclass
class IsolatedEnvironment:
    name: str
    path: str
    source_path: str
    created_at: datetime


@dataclass
class IsolationPlan:
    environment: Optional[IsolatedEnvironment]
    commands: List[str]

    @property
    def command_line(self) -> str:
        # Plain sequencing: every step runs and only the last one sets the exit status.
        return "; ".join(self.commands)


@dataclass
class OutputEvent:
    kind: str
    message: str
    sequence: int

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "message": self.message}


@dataclass
class SessionRecord:
    token: str = field(repr=False)
    host: str
    identity: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class EventSequencer:
    """Numbers the events of one request's stream."""

    def __init__(self):
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def make(self, kind: str, message: str) -> OutputEvent:
        if kind not in EVENT_KINDS:
            raise ValueError(f"unknown event kind: {kind}")
        with self._lock:
            return OutputEvent(kind=kind, message=message, sequence=next(self._counter))
