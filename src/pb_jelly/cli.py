import os
import sys
import logging
import argparse
from typing import Callable, List, Optional

from prompt_toolkit import prompt
from prompt_toolkit.shortcuts import confirm as pt_confirm

from . import installer, logs
from .cleaner import clean_data, clean_environment
from .config import Config, Environment, load_config
from .errors import ConfigurationError, PocketBaseToolError
from .migrations import SUBCOMMANDS, run_migration
from .process_cleanup import kill_all
from .process_tracker import ProcessTracker, ServerState, ServerStatus, StopResult
from .project import init_project
from .server import start_server
from .users import add_user, seed_users, setup_admin

logger = logging.getLogger(__name__)

ENV_COMMANDS = (
    "start", "stop", "status", "setup", "seed-users", "create-user",
    "clean", "clean-data", "reset", "migrate", "logs",
)


def ask_confirmation(message: str) -> bool:
    return pt_confirm(message)


def setup_logging(cfg: Config, quiet: bool = False, verbose: bool = False) -> str:
    """Console logging plus a timestamped audit log under the project."""
    logfile = logs.writable_logfile(cfg.cli_audit_log)
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter('[%(levelname)s] %(message)s'))
    if verbose:
        console.setLevel(logging.DEBUG)
    elif quiet:
        console.setLevel(logging.WARNING)
    else:
        console.setLevel(logging.INFO)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(message)s',
        handlers=[logging.FileHandler(logfile), console],
        force=True,
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logfile


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pb-jelly",
        description="Manage PocketBase development and test environments.",
    )
    parser.add_argument('--project-dir', type=str, default=None,
                        help='Project root (default: PB_PROJECT_DIR or auto-detected)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug output')
    commands = parser.add_subparsers(dest='command', metavar='COMMAND')
    commands.required = True

    install = commands.add_parser('install', help='Download the pinned PocketBase version')
    install.add_argument('--force', action='store_true', help='Replace an existing binary without asking')
    commands.add_parser('upgrade', help='List available PocketBase versions')
    commands.add_parser('status', help='Show status of all environments')
    commands.add_parser('stop-all', help='Stop all managed servers')
    kill = commands.add_parser('kill-all', help='Kill every PocketBase process')
    kill.add_argument('--force', action='store_true', help='Do not ask for confirmation')
    clean_all = commands.add_parser('clean-all', help='Clean both environments')
    clean_all.add_argument('--force', action='store_true', help='Do not ask for confirmation')
    init = commands.add_parser('init', help='Create a new project layout')
    init.add_argument('target_dir', nargs='?', default='.', help='Project directory (default: current directory)')
    init.add_argument('--force', action='store_true', help='Overwrite an existing project without asking')

    for env in Environment:
        env_parser = commands.add_parser(env.value, help=f'Manage the {env} environment')
        _add_env_commands(env, env_parser)
    return parser


def _add_env_commands(env: Environment, parser: argparse.ArgumentParser) -> None:
    sub = parser.add_subparsers(dest='env_command', metavar='COMMAND')
    sub.required = True

    start = sub.add_parser('start', help='Start the server')
    mode = start.add_mutually_exclusive_group()
    mode.add_argument('--background', dest='background', action='store_const', const=True,
                      default=None, help='Run detached, logging to pocketbase.log')
    mode.add_argument('--foreground', dest='background', action='store_const', const=False,
                      help='Run attached to the terminal')
    start.add_argument('--quiet', action='store_true', help='Only print warnings and errors')
    start.add_argument('--full', action='store_true',
                       help='Wait until ready and create the admin user')
    if env is Environment.TEST:
        start.add_argument('--reset', action='store_true', help='Delete data before starting')
    start.add_argument('--port', type=int, default=None)
    start.add_argument('--host', type=str, default=None)
    start.add_argument('pb_args', nargs=argparse.REMAINDER,
                       help='PocketBase command and flags (default: serve)')

    sub.add_parser('stop', help='Stop the server')
    sub.add_parser('status', help='Show server and database status')
    sub.add_parser('setup', help='Create or update the admin user')
    seed = sub.add_parser('seed-users', help='Create the admin and users from the seed file')
    seed.add_argument('--host', type=str, default=None)
    seed.add_argument('--port', type=int, default=None)
    sub.add_parser('create-user', help='Interactively create a user')

    clean = sub.add_parser('clean', help='Remove data, hooks, PID and log files')
    clean.add_argument('--force', action='store_true', help='Do not ask for confirmation')
    sub.add_parser('clean-data', help='Delete all records from user collections')
    if env is Environment.TEST:
        reset = sub.add_parser('reset', help='Stop the server and clean the environment')
        reset.add_argument('--force', action='store_true', help='Do not ask for confirmation')

    migrate = sub.add_parser('migrate', help=f"Run migrations ({'|'.join(SUBCOMMANDS)})")
    migrate.add_argument('migrate_args', nargs=argparse.REMAINDER)

    log = sub.add_parser('logs', help='Show the server log')
    log.add_argument('--lines', type=int, default=50)
    log.add_argument('--clear', action='store_true', help='Truncate the log instead')


def _format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G"):
        if size < 1024 or unit == "G":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}G"


def _dir_size(path: str) -> int:
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


def format_status(cfg: Config, status: ServerStatus) -> List[str]:
    label = cfg.settings(status.environment).label
    url = f"http://{cfg.host}:{status.port}"
    if status.state is ServerState.RUNNING:
        return [
            f"{label} ({status.environment}): Running (PID: {status.pid})",
            f"  URL: {url}",
            f"  Admin UI: {url}/_/",
        ]
    if status.state is ServerState.PORT_IN_USE:
        return [f"{label} ({status.environment}): Port {status.port} in use (not managed by pb-and-jelly)"]
    return [f"{label} ({status.environment}): Stopped (port {status.port})"]


def format_binary_status(cfg: Config) -> List[str]:
    found = installer.find_binary(cfg)
    if found is None:
        return ["PocketBase binary: not installed (run 'pb-jelly install')"]
    path, where = found
    version = installer.binary_version(path) or "unknown version"
    return [f"PocketBase binary: installed ({where}) {path}", f"  Version: {version}"]


def format_database_status(cfg: Config, env: Environment) -> List[str]:
    data_dir = cfg.data_dir(env)
    lines = [f"Data directory: {data_dir}"]
    if os.path.isdir(data_dir):
        lines.append(f"Database: exists ({_format_size(_dir_size(data_dir))})")
    else:
        lines.append("Database: not created")
    return lines


def cmd_status(cfg: Config, tracker: ProcessTracker) -> int:
    print("PocketBase Status")
    print("=================")
    for status in tracker.status_all():
        print("\n".join(format_status(cfg, status)))
    print()
    print("\n".join(format_binary_status(cfg)))
    return 0


def cmd_upgrade(cfg: Config) -> int:
    pinned = cfg.pb_version
    current = installer.installed_version(cfg)
    logger.info("Fetching available PocketBase versions...")
    versions = installer.fetch_available_versions()
    print(f"Pinned version (.pb-version): v{pinned}")
    print(f"Installed version: {'v' + current if current else 'not installed'}")
    print()
    print("Available versions:")
    for version in versions:
        marks = []
        if version == pinned:
            marks.append("pinned")
        if version == current:
            marks.append("installed")
        suffix = f" ({', '.join(marks)})" if marks else ""
        print(f"  v{version}{suffix}")
    print()
    latest = versions[0] if versions else None
    if current is None:
        print("Run 'pb-jelly install' to install the pinned version.")
    elif latest and installer.version_less_than(pinned, latest):
        print(f"A newer version is available: v{latest}")
        print(f"Update {cfg.version_file} to {latest} and run 'pb-jelly install --force'.")
    elif current != pinned:
        print("Installed version differs from the pinned version. Run 'pb-jelly install'.")
    else:
        print("You are on the latest pinned version.")
    return 0


def cmd_create_user(cfg: Config, env: Environment,
                    ask: Callable[..., str] = prompt) -> int:
    email = ask("Email: ").strip()
    if not email:
        raise ConfigurationError("Email is required")
    password = ask("Password: ", is_password=True)
    if not password:
        raise ConfigurationError("Password is required")
    if ask("Confirm password: ", is_password=True) != password:
        raise ConfigurationError("Passwords do not match")
    name = ask("Name (optional): ").strip() or None
    if add_user(cfg, env, email, password, name):
        logger.info("User %s created in %s environment", email, env)
    else:
        logger.warning("User %s already exists in %s environment", email, env)
    return 0


def run_env_command(cfg: Config, tracker: ProcessTracker, env: Environment,
                    args: argparse.Namespace) -> int:
    cmd = args.env_command
    if cmd == 'start':
        return start_server(
            cfg, env, tracker,
            background=args.background,
            quiet=args.quiet,
            reset=getattr(args, 'reset', False),
            full=args.full,
            host=args.host,
            port=args.port,
            args=args.pb_args or None,
        )
    if cmd == 'stop':
        if tracker.stop(env) is StopResult.NOT_RUNNING:
            logger.warning("No running PocketBase %s server found", env)
        return 0
    if cmd == 'status':
        print("\n".join(format_status(cfg, tracker.status(env))))
        print("\n".join(format_database_status(cfg, env)))
        return 0
    if cmd == 'setup':
        email, _ = setup_admin(cfg, env)
        print(f"Admin: {email}")
        print(f"Admin UI: {cfg.base_url(env)}/_/")
        return 0
    if cmd == 'seed-users':
        base_url = f"http://{args.host or cfg.host}:{args.port or cfg.port(env)}"
        seed_users(cfg, env, base_url=base_url)
        return 0
    if cmd == 'create-user':
        return cmd_create_user(cfg, env)
    if cmd in ('clean', 'reset'):
        if cmd == 'reset':
            logger.info("Resetting %s environment...", env)
        done = clean_environment(cfg, env, tracker, force=args.force, confirm=ask_confirmation)
        return 0 if done else 1
    if cmd == 'clean-data':
        clean_data(cfg, env)
        return 0
    if cmd == 'migrate':
        return run_migration(cfg, env, args.migrate_args)
    if cmd == 'logs':
        path = cfg.log_file(env)
        if args.clear:
            logs.clear_log(path)
            logger.info("Cleared %s", path)
            return 0
        content = logs.tail(path, args.lines)
        print(content if content else "[Log is empty or does not exist]")
        return 0
    raise ConfigurationError(f"Unknown command: {cmd}. Use one of: {', '.join(ENV_COMMANDS)}")


def run(cfg: Config, args: argparse.Namespace) -> int:
    tracker = ProcessTracker(cfg)
    if args.command == 'init':
        init_project(args.target_dir, cfg.pb_version, force=args.force, confirm=ask_confirmation)
        return 0
    if args.command == 'install':
        installer.install(cfg, force=args.force, confirm=ask_confirmation)
        return 0
    if args.command == 'upgrade':
        return cmd_upgrade(cfg)
    if args.command == 'status':
        return cmd_status(cfg, tracker)
    if args.command == 'stop-all':
        tracker.stop_all()
        return 0
    if args.command == 'kill-all':
        _, not_killed = kill_all(cfg, force=args.force, confirm=ask_confirmation)
        return 1 if not_killed else 0
    if args.command == 'clean-all':
        ok = True
        for env in Environment:
            ok = clean_environment(cfg, env, tracker, force=args.force,
                                   confirm=ask_confirmation) and ok
        return 0 if ok else 1
    return run_env_command(cfg, tracker, Environment.parse(args.command), args)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        cfg = load_config(project_dir=args.project_dir)
        setup_logging(cfg, quiet=getattr(args, 'quiet', False), verbose=args.verbose)
        return run(cfg, args)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    except PocketBaseToolError as e:
        logger.error("%s", e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
