import posixpath
import shlex
from datetime import datetime
from typing import Optional

from remote_runner.config import (
    DEFAULT_RUN_NAME, IDENTITY_PATTERN, ISOLATED_TIMESTAMP_FORMAT, REMOTE_HOME_TEMPLATE,
    RUN_NAME_DISALLOWED, RUN_NAME_MAX_LEN, RUNS_DIRNAME, SOURCE_DIRNAME, config
)
from remote_runner.errors import MalformedInput
from remote_runner.models import IsolatedEnvironment, IsolationPlan


def sanitize_run_name(raw: str) -> str:
    cleaned = RUN_NAME_DISALLOWED.sub("_", (raw or "").strip())[:RUN_NAME_MAX_LEN]
    return cleaned or DEFAULT_RUN_NAME


def isolated_name(run_name: str, now: datetime) -> str:
    return f"{sanitize_run_name(run_name)}-{now.strftime(ISOLATED_TIMESTAMP_FORMAT)}"


def validate_identity(identity: str) -> str:
    if not identity or not IDENTITY_PATTERN.match(identity):
        raise MalformedInput(f"invalid remote identity: {identity!r}")
    return identity


def remote_home(identity: str) -> str:
    return REMOTE_HOME_TEMPLATE.format(identity=validate_identity(identity))


def remote_base_dir(identity: str) -> str:
    return posixpath.join(remote_home(identity), RUNS_DIRNAME)


def default_source_path(identity: str) -> str:
    return posixpath.join(remote_home(identity), SOURCE_DIRNAME)


def resolve_source_path(identity: str, target_directory: Optional[str]) -> str:
    """Directory holding the uploaded descriptor; must stay inside the identity's home."""
    home = remote_home(identity)
    if not target_directory:
        return default_source_path(identity)
    if not target_directory.startswith("/"):
        raise MalformedInput(f"target directory must be absolute: {target_directory}")
    if ".." in target_directory.split("/"):
        raise MalformedInput(f"target directory may not contain '..': {target_directory}")
    normalized = posixpath.normpath(target_directory)
    if normalized != home and not normalized.startswith(home + "/"):
        raise MalformedInput(f"target directory must be within {home}: {target_directory}")
    return normalized


def plan(
    raw_run_name: str,
    identity: str,
    now: datetime,
    source_path: Optional[str] = None,
    setup_script: Optional[str] = None,
) -> IsolationPlan:
    """Work out the isolated directory for one run and the commands that prepare it.

    The steps are joined unconditionally, so a failed copy only echoes a
    warning and the setup script's exit status decides the outcome.
    """
    name = isolated_name(raw_run_name, now)
    path = posixpath.join(remote_base_dir(identity), name)
    source = source_path or default_source_path(identity)
    script = setup_script or config.SETUP_SCRIPT

    q_path = shlex.quote(path)
    q_source = shlex.quote(source)
    commands = [
        f"mkdir -p {q_path}",
        f"cp -r {q_source}/. {q_path}/ 2>/dev/null || echo {shlex.quote(f'Warning: could not copy {source} into {path}')}",
        f"cd {q_path}",
        f"echo {shlex.quote(f'Source directory: {source}')}",
        'echo "Working directory: $(pwd)"',
        f"source {shlex.quote(script)}",
    ]
    environment = IsolatedEnvironment(name=name, path=path, source_path=source, created_at=now)
    return IsolationPlan(environment=environment, commands=commands)


def plan_direct(identity: str, source_path: Optional[str] = None, setup_script: Optional[str] = None) -> IsolationPlan:
    source = source_path or default_source_path(identity)
    script = setup_script or config.SETUP_SCRIPT
    return IsolationPlan(
        environment=None,
        commands=[f"cd {shlex.quote(source)} && source {shlex.quote(script)}"],
    )
