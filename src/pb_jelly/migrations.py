import logging
import os
import subprocess
from typing import List

from .config import Config, Environment
from .errors import ConfigurationError
from .installer import require_binary

logger = logging.getLogger(__name__)

SUBCOMMANDS = ("up", "down", "create", "collections", "history-sync")


def migrate_command(cfg: Config, env: Environment, args: List[str]) -> List[str]:
    if not args:
        raise ConfigurationError(f"Subcommand required. Use one of: {', '.join(SUBCOMMANDS)}")
    if args[0] not in SUBCOMMANDS:
        raise ConfigurationError(
            f"Unknown migrate subcommand: {args[0]}. Use one of: {', '.join(SUBCOMMANDS)}"
        )
    return [
        require_binary(cfg), "migrate", *args,
        f"--dir={cfg.data_dir(env)}",
        f"--migrationsDir={cfg.migrations_dir}",
    ]


def run_migration(cfg: Config, env: Environment, args: List[str]) -> int:
    """Run ``pocketbase migrate <args>`` for ``env``; returns its exit code."""
    cmd = migrate_command(cfg, env, args)
    if not os.path.isdir(cfg.migrations_dir):
        logger.info("Creating migrations directory: %s", cfg.migrations_dir)
        os.makedirs(cfg.migrations_dir, exist_ok=True)
    os.makedirs(cfg.env_dir(env), exist_ok=True)
    logger.info("Running migration for %s environment", env)
    logger.debug("Data directory: %s", cfg.data_dir(env))
    logger.debug("Migrations directory: %s", cfg.migrations_dir)
    logger.debug("Command: migrate %s", " ".join(args))
    code = subprocess.run(cmd, cwd=cfg.env_dir(env)).returncode
    if code == 0:
        logger.info("Migration command completed successfully")
    else:
        logger.error("Migration command failed with exit code %d", code)
    return code
