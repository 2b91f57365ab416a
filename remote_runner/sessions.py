import secrets
import threading
import time
from typing import Callable, Dict, Optional

from remote_runner.config import SESSION_SWEEP_INTERVAL, SESSION_TOKEN_BYTES, SESSION_TTL
from remote_runner.models import SessionRecord
from remote_runner.utils import log_error


def generate_session_token() -> str:
    return secrets.token_hex(SESSION_TOKEN_BYTES)


class SessionStore:
    """Opaque session tokens for callers that already authenticated.

    Records never hold the secret. Lifetime is fixed at issuance; reads do not
    extend it. Expired records are dropped when they are read, and a sweeper
    thread clears the ones nobody reads again.
    """

    def __init__(
        self,
        ttl: float = SESSION_TTL,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = SESSION_SWEEP_INTERVAL,
    ):
        self.ttl = ttl
        self.clock = clock
        self.sweep_interval = sweep_interval
        self.records: Dict[str, SessionRecord] = {}
        self.lock = threading.Lock()

        self.sweeper_stop = threading.Event()
        self.sweeper_thread: Optional[threading.Thread] = None

    def issue(self, host: str, identity: str) -> SessionRecord:
        record = SessionRecord(
            token=generate_session_token(),
            host=host,
            identity=identity,
            expires_at=self.clock() + self.ttl,
        )
        with self.lock:
            self.records[record.token] = record
        return record

    def validate(self, token: Optional[str]) -> Optional[SessionRecord]:
        if not token:
            return None
        with self.lock:
            record = self.records.get(token)
            if record is None:
                return None
            if record.is_expired(self.clock()):
                del self.records[token]
                return None
            return record

    def revoke(self, token: Optional[str]) -> bool:
        if token:
            with self.lock:
                self.records.pop(token, None)
        return True

    def cleanup_expired(self) -> int:
        now = self.clock()
        with self.lock:
            expired = [token for token, record in self.records.items() if record.is_expired(now)]
            for token in expired:
                del self.records[token]
        return len(expired)

    def start_sweeper(self) -> None:
        if self.sweeper_thread is not None:
            return
        self.sweeper_thread = threading.Thread(target=self._sweep_loop, daemon=True)
        self.sweeper_thread.start()

    def _sweep_loop(self) -> None:
        while not self.sweeper_stop.wait(self.sweep_interval):
            try:
                cleaned = self.cleanup_expired()
                if cleaned:
                    log_error(f"session sweep removed {cleaned} expired session(s)")
            except Exception as exc:
                log_error(f"session sweep error: {exc}")

    def __contains__(self, token: str) -> bool:
        with self.lock:
            return token in self.records

    def __len__(self) -> int:
        with self.lock:
            return len(self.records)

    def close(self) -> None:
        self.sweeper_stop.set()
        with self.lock:
            self.records.clear()
