from typing import Any, Dict, Optional


class RunnerError(Exception):
    kind = "RunnerError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"type": "error", "message": self.message}


class MalformedInput(RunnerError):
    kind = "MalformedInput"


class DuplicateRequest(RunnerError):
    kind = "DuplicateRequest"

    def __init__(self, key: str, age: float):
        super().__init__(f"execution for {key} started {age:.1f}s ago")
        self.key = key
        self.age = age

    def to_payload(self) -> Dict[str, Any]:
        return {"type": "status", "message": "already running"}


class CommandFailure(RunnerError):
    kind = "CommandFailure"

    def __init__(self, exit_code: Optional[int]):
        super().__init__(f"Command failed with exit code {exit_code}")
        self.exit_code = exit_code


class ConnectError(RunnerError):
    """Handshake or session-layer fault; always ends a connect attempt."""

    kind = "ConnectError"
    label = "connection error"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    def describe(self) -> str:
        return f"{self.label}: {self.message}"


class AuthenticationFailure(ConnectError):
    kind = "AuthenticationFailure"
    label = "authentication failed"


class ConnectionRefused(ConnectError):
    kind = "ConnectionRefused"
    label = "connection refused"


class ConnectTimeout(ConnectError):
    kind = "Timeout"
    label = "connection timed out"


class ResetByPeer(ConnectError):
    kind = "ResetByPeer"
    label = "connection reset by peer"


class ProtocolError(ConnectError):
    kind = "ProtocolError"
    label = "protocol error"
