import argparse

import uvicorn

from remote_runner.config import config
from remote_runner.utils import log_error, make_cache_dirs, resolve_runtime_paths


def main() -> None:
    from remote_runner.server import create_app

    # Pre-load from environment
    config.load_from_env()

    parser = argparse.ArgumentParser(
        description="Remote runner (SSH setup-script trigger with streamed output)"
    )
    parser.add_argument("--bind", help="Address to listen on (overrides RUNNER_BIND_HOST env)")
    parser.add_argument("--listen-port", type=int, help="HTTP port (overrides RUNNER_BIND_PORT env)")
    parser.add_argument("--ssh-port", type=int, help="Default SSH port (overrides RUNNER_SSH_PORT env)")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host keys against known_hosts")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--known-hosts", help="known_hosts file used with --verify-host")
    parser.add_argument("--no-isolation", action="store_true", help="Run the setup script in place instead of a per-run directory")
    parser.add_argument("--sentinel", help="Output phrase that marks the setup script as finished")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")

    args = parser.parse_args()

    # Apply args over env vars
    if args.bind: config.BIND_HOST = args.bind
    if args.listen_port: config.BIND_PORT = args.listen_port
    if args.ssh_port: config.SSH_PORT = args.ssh_port
    if args.known_hosts: config.KNOWN_HOSTS_PATH = args.known_hosts
    if args.sentinel: config.SENTINEL_PHRASE = args.sentinel
    if args.no_isolation: config.ISOLATE_RUNS = False

    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False
    elif args.verify_host:
        config.SSH_VERIFY_HOST_KEY = True

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])

    log_error(
        f"remote runner listening on {config.BIND_HOST}:{config.BIND_PORT}. "
        f"cache={config.CACHE_DIRS['cache_root']} isolate={config.ISOLATE_RUNS} "
        f"verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    uvicorn.run(create_app(), host=config.BIND_HOST, port=config.BIND_PORT, log_level="info")
    log_error("shutting down...")

if __name__ == "__main__":
    main()
