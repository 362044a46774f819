import glob
import logging
import os
import shutil
from typing import Callable, List, Optional, Tuple

from .api_client import PocketBaseClient
from .config import Config, Environment
from .errors import ApiError, ReadyTimeoutError
from .process_tracker import ProcessTracker, wait_until_ready
from .users import admin_credentials, load_seed_file

logger = logging.getLogger(__name__)


def cleanup_targets(cfg: Config, env: Environment) -> List[Tuple[str, str]]:
    """(description, path) pairs that a clean of ``env`` would remove."""
    targets = []
    if os.path.isdir(cfg.data_dir(env)):
        targets.append(("Database files (pb_data/)", cfg.data_dir(env)))
    if os.path.exists(cfg.hooks_dir(env)):
        targets.append(("Hook files (pb_hooks/)", cfg.hooks_dir(env)))
    if os.path.isfile(cfg.pid_file(env)):
        targets.append(("PID file", cfg.pid_file(env)))
    for log in sorted(glob.glob(os.path.join(cfg.env_dir(env), "*.log"))):
        targets.append((f"Log file ({os.path.basename(log)})", log))
    return targets


def _remove(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


def reset_data(cfg: Config, env: Environment) -> None:
    """Drop the database and hooks ahead of a fresh start."""
    for path in (cfg.data_dir(env), cfg.hooks_dir(env)):
        _remove(path)


def clean_environment(
    cfg: Config,
    env: Environment,
    tracker: ProcessTracker,
    force: bool = False,
    confirm: Optional[Callable[[str], bool]] = None,
) -> bool:
    """Stop the server and delete the environment's data, hooks, PID and logs.

    Returns False if the user cancelled, True otherwise (including when
    there was nothing to remove).
    """
    env_dir = cfg.env_dir(env)
    if not os.path.isdir(env_dir):
        logger.warning("%s environment directory doesn't exist: %s", env, env_dir)
        return True

    logger.info("Stopping %s server if running...", env)
    tracker.stop(env)

    targets = cleanup_targets(cfg, env)
    if not targets:
        logger.info("%s environment is already clean", env)
        return True

    logger.warning("The following will be removed from %s environment:", env)
    for description, _ in targets:
        logger.warning("  - %s", description)
    if not force:
        if not (confirm and confirm(f"Are you sure you want to clean the {env} environment?")):
            logger.info("Cleanup cancelled")
            return False

    logger.info("Cleaning %s environment...", env)
    for description, path in targets:
        _remove(path)
        logger.info("Removed %s", description)
    logger.info("%s environment cleaned successfully", env)
    return True


def clean_data(cfg: Config, env: Environment, client: Optional[PocketBaseClient] = None) -> int:
    """Delete every record from non-system collections on a running server.

    Returns the number of records deleted.
    """
    url = cfg.base_url(env)
    logger.info("Cleaning data for %s environment...", env)
    try:
        wait_until_ready(url, timeout=1, interval=cfg.ready_interval, path=cfg.health_path)
    except ReadyTimeoutError:
        raise ReadyTimeoutError(
            f"PocketBase server is not running at {url}. Start it first with: pb-jelly {env} start"
        ) from None

    email, password = admin_credentials(cfg, env, load_seed_file(cfg.seed_file(env)))
    client = client or PocketBaseClient(url)
    client.auth_superuser(email, password)

    names = [c.name for c in client.list_collections() if not c.system]
    if not names:
        logger.info("No user collections found to clean")
        return 0
    logger.info("Found collections: %s", " ".join(names))

    total = 0
    for name in names:
        deleted = _purge_collection(client, name)
        logger.debug("  Deleted %d records from %s", deleted, name)
        total += deleted
    logger.info("Data cleanup complete - deleted %d records from %s environment", total, env)
    return total


def _purge_collection(client: PocketBaseClient, name: str, per_page: int = 500) -> int:
    deleted = 0
    failed = set()
    page_no = 1
    while True:
        page = client.list_records(name, per_page=per_page, page=page_no)
        pending = [r["id"] for r in page.items if r.get("id") and r["id"] not in failed]
        for record_id in pending:
            try:
                client.delete_record(name, record_id)
                deleted += 1
            except ApiError as e:
                logger.warning("  Failed to delete record %s from %s: %s", record_id, name, e)
                failed.add(record_id)
        if len(page.items) < per_page:
            return deleted
        # Records that could not be deleted stay in front of the remaining ones.
        page_no = 1 + len(failed) // per_page if pending else page_no + 1
