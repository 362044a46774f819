import json
import logging
import os
import subprocess
from typing import List, Optional, Tuple

from pydantic import BaseModel, ValidationError

from .api_client import USERS, PocketBaseClient
from .config import Config, Environment
from .errors import ApiError, ConfigurationError, PocketBaseToolError
from .installer import require_binary
from .process_tracker import wait_until_ready

logger = logging.getLogger(__name__)


class SeedAdmin(BaseModel):
    email: str = ""
    password: str = ""


class SeedUser(BaseModel):
    email: str = ""
    password: str = ""
    name: Optional[str] = None


class SeedFile(BaseModel):
    admin: SeedAdmin = SeedAdmin()
    users: List[SeedUser] = []


def load_seed_file(path: str) -> Optional[SeedFile]:
    if not os.path.isfile(path):
        return None
    try:
        with open(path, "r") as f:
            return SeedFile.model_validate(json.load(f))
    except (OSError, ValueError, ValidationError) as e:
        raise ConfigurationError(f"Invalid seed file {path}: {e}") from e


def admin_credentials(cfg: Config, env: Environment, seed: Optional[SeedFile] = None) -> Tuple[str, str]:
    """Admin email/password from the seed file, else the environment settings."""
    if seed is not None and seed.admin.email and seed.admin.password:
        return seed.admin.email, seed.admin.password
    settings = cfg.settings(env)
    return settings.admin_email, settings.admin_password


def upsert_admin(cfg: Config, env: Environment, email: str, password: str) -> None:
    """Create or update the superuser through the PocketBase CLI.

    Works whether or not the server is running.
    """
    binary = require_binary(cfg)
    env_dir = cfg.env_dir(env)
    os.makedirs(cfg.data_dir(env), exist_ok=True)
    result = subprocess.run(
        [binary, "superuser", "upsert", email, password, f"--dir={cfg.data_dir(env)}"],
        cwd=env_dir,
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        output = (result.stdout + result.stderr).strip()
        raise PocketBaseToolError(f"Failed to create admin user: {output}")
    logger.info("Admin user ready: %s", email)


def setup_admin(cfg: Config, env: Environment) -> Tuple[str, str]:
    seed = load_seed_file(cfg.seed_file(env))
    email, password = admin_credentials(cfg, env, seed)
    upsert_admin(cfg, env, email, password)
    return email, password


def create_user(client: PocketBaseClient, email: str, password: str,
                name: Optional[str] = None) -> bool:
    """Create a user unless one with ``email`` exists. Returns True if created."""
    if not email or not password:
        logger.warning("Skipping user with missing email or password")
        return False
    if client.find_by_email(USERS, email) is not None:
        logger.debug("User already exists: %s", email)
        return False
    data = {"email": email, "password": password, "passwordConfirm": password}
    if name:
        data["name"] = name
    client.create_record(USERS, data)
    logger.info("User created: %s", email)
    return True


def seed_users(
    cfg: Config,
    env: Environment,
    base_url: Optional[str] = None,
    client: Optional[PocketBaseClient] = None,
    ready_timeout: Optional[int] = None,
) -> int:
    """Seed the admin and users for ``env``. Returns the number of users created."""
    url = base_url or cfg.base_url(env)
    logger.info("Setting up users for %s environment at %s", env, url)
    wait_until_ready(
        url,
        timeout=cfg.ready_timeout if ready_timeout is None else ready_timeout,
        interval=cfg.ready_interval,
        path=cfg.health_path,
    )

    seed_path = cfg.seed_file(env)
    seed = load_seed_file(seed_path)
    if seed is None:
        logger.warning("No seed file found at %s; using configured credentials", seed_path)
    else:
        logger.info("Using seed file: %s", seed_path)
    email, password = admin_credentials(cfg, env, seed)
    upsert_admin(cfg, env, email, password)

    client = client or PocketBaseClient(url)
    try:
        client.auth_superuser(email, password)
    except ApiError as e:
        raise ApiError(
            f"Failed to authenticate as admin {email}. Make sure the admin user exists",
            e.status, e.body,
        ) from e
    if client.ensure_users_collection():
        logger.info("Users collection created successfully")

    created = 0
    if seed is not None:
        if not seed.users:
            logger.warning("No users defined in seed file")
        for user in seed.users:
            if create_user(client, user.email, user.password, user.name):
                created += 1
        logger.info("Users created from seed file: %s", seed_path)
    else:
        settings = cfg.settings(env)
        if create_user(client, settings.user_email, settings.user_password, "Test User"):
            created += 1
        logger.info("Fallback test user ready: %s", settings.user_email)
    logger.info("Admin UI: %s/_/", url)
    return created


def add_user(
    cfg: Config,
    env: Environment,
    email: str,
    password: str,
    name: Optional[str] = None,
    client: Optional[PocketBaseClient] = None,
) -> bool:
    """Create one user on a running server, authenticating as the admin."""
    url = cfg.base_url(env)
    wait_until_ready(url, timeout=5, interval=cfg.ready_interval, path=cfg.health_path)
    seed = load_seed_file(cfg.seed_file(env))
    admin_email, admin_password = admin_credentials(cfg, env, seed)
    client = client or PocketBaseClient(url)
    client.auth_superuser(admin_email, admin_password)
    return create_user(client, email, password, name)
