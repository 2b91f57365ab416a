import os
import re
from typing import Optional, Dict

# ========= Static config =========
CONNECT_TIMEOUT = 10
AUTH_TIMEOUT = 8
KEEPALIVE_INTERVAL = 2
KEEPALIVE_COUNT_MAX = 3
BUFFER_SIZE = 4096
POLL_INTERVAL = 0.02
CHANNEL_OPEN_TIMEOUT = 10

DEDUP_TTL = 5.0
DEDUP_TTL_ISOLATED = 2.0
GUARD_EVICTION_HORIZON = 30.0
DRAIN_JOIN_TIMEOUT = 5.0

SESSION_TTL = 30 * 24 * 60 * 60
SESSION_TOKEN_BYTES = 32
SESSION_SWEEP_INTERVAL = 300

RUN_NAME_MAX_LEN = 64
DEFAULT_RUN_NAME = "run"
DEFAULT_DESCRIPTOR_NAME = "data.json"
REMOTE_HOME_TEMPLATE = "/home/{identity}"
SOURCE_DIRNAME = "loading"
RUNS_DIRNAME = "runs"
SETUP_SCRIPT = "envSetup.sh"
ISOLATED_TIMESTAMP_FORMAT = "%m_%d_%y-%H_%M"

# Output line the setup script prints once it has logically finished.
SENTINEL_PHRASE = "Deactivating conda"

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
RUN_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9_-]")
IDENTITY_PATTERN = re.compile(r"^[a-z_][a-z0-9_.-]{0,31}$")

# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.BIND_HOST: str = "127.0.0.1"
        self.BIND_PORT: int = 8000
        self.SSH_PORT: int = 22
        self.SSH_VERIFY_HOST_KEY: bool = False
        self.KNOWN_HOSTS_PATH: Optional[str] = None
        self.ISOLATE_RUNS: bool = True
        self.SENTINEL_PHRASE: str = SENTINEL_PHRASE
        self.SETUP_SCRIPT: str = SETUP_SCRIPT
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.BIND_HOST = os.environ.get("RUNNER_BIND_HOST", self.BIND_HOST)
        self.BIND_PORT = int(os.environ.get("RUNNER_BIND_PORT", self.BIND_PORT))
        self.SSH_PORT = int(os.environ.get("RUNNER_SSH_PORT", self.SSH_PORT))
        self.KNOWN_HOSTS_PATH = os.environ.get("RUNNER_KNOWN_HOSTS", self.KNOWN_HOSTS_PATH)
        self.SENTINEL_PHRASE = os.environ.get("RUNNER_SENTINEL_PHRASE", self.SENTINEL_PHRASE)
        self.SETUP_SCRIPT = os.environ.get("RUNNER_SETUP_SCRIPT", self.SETUP_SCRIPT)

        verify_host_env = os.environ.get("RUNNER_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

        isolate_env = os.environ.get("RUNNER_ISOLATE_RUNS")
        if isolate_env is not None:
            self.ISOLATE_RUNS = isolate_env.lower() in ("true", "1", "yes")

    def dedup_ttl(self) -> float:
        # Isolated runs get the shorter window.
        return DEDUP_TTL_ISOLATED if self.ISOLATE_RUNS else DEDUP_TTL

# Global instance
config = ServerConfig()
