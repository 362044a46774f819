import logging
from typing import List, Optional

from .cleaner import reset_data
from .config import Config, Environment
from .errors import ConfigurationError, PortInUseError
from .installer import require_binary
from .process_tracker import LaunchSpec, ProcessTracker, port_in_use, wait_until_ready
from .users import setup_admin

logger = logging.getLogger(__name__)


def build_launch_spec(
    cfg: Config,
    env: Environment,
    host: Optional[str] = None,
    port: Optional[int] = None,
    args: Optional[List[str]] = None,
) -> LaunchSpec:
    settings = cfg.settings(env)
    argv = [
        require_binary(cfg),
        *(args or ["serve"]),
        f"--http={host or cfg.host}:{port or settings.port}",
        *settings.extra_flags,
        f"--dir={cfg.data_dir(env)}",
    ]
    return LaunchSpec(argv=argv, cwd=cfg.env_dir(env))


def start_server(
    cfg: Config,
    env: Environment,
    tracker: ProcessTracker,
    background: Optional[bool] = None,
    quiet: bool = False,
    reset: bool = False,
    full: bool = False,
    host: Optional[str] = None,
    port: Optional[int] = None,
    args: Optional[List[str]] = None,
) -> int:
    """Start the ``env`` server and return an exit code.

    Background starts return as soon as the process is launched (or once
    it is ready and the admin exists, with ``full``). Foreground starts
    block until the server exits.
    """
    settings = cfg.settings(env)
    background = settings.background_by_default if background is None else background
    host = host or cfg.host
    port = port or settings.port
    if reset and env is not Environment.TEST:
        raise ConfigurationError("--reset is only supported for the test environment")
    if full and not background:
        raise ConfigurationError("--full requires a background start")

    spec = build_launch_spec(cfg, env, host, port, args)

    existing = tracker.live_pid(env)
    if existing is None and port_in_use(host, port):
        raise PortInUseError(
            f"Port {port} is already in use by a process not managed by pb-and-jelly"
        )

    if reset:
        logger.info("Resetting %s database...", env)
        tracker.stop(env)
        reset_data(cfg, env)

    logger.info("Starting PocketBase %s server...", env)
    logger.info("  URL: http://%s:%d", host, port)
    logger.info("  Admin UI: http://%s:%d/_/", host, port)
    logger.info("  Data: %s", cfg.data_dir(env))

    if not background:
        return tracker.run_foreground(env, spec, quiet=quiet)

    handle = tracker.start(env, spec, port=port, host=host)
    logger.info("PocketBase %s server started in background (PID: %d)", env, handle.pid)
    logger.info("Logs: %s", handle.logfile)

    if full:
        wait_until_ready(
            handle.url, timeout=cfg.ready_timeout,
            interval=cfg.ready_interval, path=cfg.health_path,
        )
        email, _ = setup_admin(cfg, env)
        logger.info("%s environment ready with admin %s", settings.label, email)
    return 0
