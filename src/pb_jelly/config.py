import os
import datetime
import dataclasses
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values

from .errors import ConfigurationError

DEFAULT_PB_VERSION = "0.23.4"
DEFAULT_HOST = "127.0.0.1"
PROJECT_MARKERS = (".pb-version", ".env.local", ".env.example", "pb.sh")


class Environment(str, Enum):
    DEV = "dev"
    TEST = "test"

    @classmethod
    def parse(cls, value: str) -> "Environment":
        try:
            return cls(value)
        except ValueError:
            raise ConfigurationError(
                f"Invalid environment: {value}. Use 'dev' or 'test'"
            ) from None

    def __str__(self) -> str:
        return self.value


@dataclass
class EnvironmentSettings:
    environment: Environment
    label: str
    port: int
    background_by_default: bool
    admin_email: str
    admin_password: str
    user_email: str = "test@example.com"
    user_password: str = "testpass123"
    extra_flags: List[str] = dataclasses.field(default_factory=list)


def _default_environments() -> Dict[Environment, EnvironmentSettings]:
    return {
        Environment.DEV: EnvironmentSettings(
            environment=Environment.DEV,
            label="Development",
            port=8090,
            background_by_default=False,
            admin_email="dev-admin@example.com",
            admin_password="dev-admin-pass",
        ),
        Environment.TEST: EnvironmentSettings(
            environment=Environment.TEST,
            label="Test",
            port=8091,
            background_by_default=True,
            admin_email="test-admin@example.com",
            admin_password="test-admin-pass",
            extra_flags=["--dev=false"],
        ),
    }


@dataclass
class Config:
    project_dir: str
    host: str = DEFAULT_HOST
    pb_version: str = DEFAULT_PB_VERSION
    environments: Dict[Environment, EnvironmentSettings] = dataclasses.field(
        default_factory=_default_environments
    )
    stop_retries: int = 10
    stop_interval: float = 1.0
    ready_timeout: int = 30
    ready_interval: float = 1.0
    health_path: str = "/api/health"
    log_timestamp: str = dataclasses.field(
        default_factory=lambda: datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    )

    def settings(self, env: Environment) -> EnvironmentSettings:
        return self.environments[env]

    def port(self, env: Environment) -> int:
        return self.environments[env].port

    def base_url(self, env: Environment) -> str:
        return f"http://{self.host}:{self.port(env)}"

    @property
    def bin_dir(self) -> str:
        return os.path.join(self.project_dir, "bin")

    @property
    def local_binary(self) -> str:
        name = "pocketbase.exe" if os.name == "nt" else "pocketbase"
        return os.path.join(self.bin_dir, name)

    @property
    def version_file(self) -> str:
        return os.path.join(self.project_dir, ".pb-version")

    @property
    def migrations_dir(self) -> str:
        return os.path.join(self.project_dir, "pb_migrations")

    @property
    def cli_audit_log(self) -> str:
        return os.path.join(
            self.project_dir, ".pb-and-jelly", f"{self.log_timestamp}_cli_audit.log"
        )

    def env_dir(self, env: Environment) -> str:
        return os.path.join(self.project_dir, env.value)

    def data_dir(self, env: Environment) -> str:
        return os.path.join(self.env_dir(env), "pb_data")

    def hooks_dir(self, env: Environment) -> str:
        return os.path.join(self.env_dir(env), "pb_hooks")

    def pid_file(self, env: Environment) -> str:
        return os.path.join(self.env_dir(env), "pocketbase.pid")

    def log_file(self, env: Environment) -> str:
        return os.path.join(self.env_dir(env), "pocketbase.log")

    def seed_file(self, env: Environment) -> str:
        return os.path.join(self.env_dir(env), f"{env.value}-users.json")


def find_project_dir(start: Optional[str] = None) -> str:
    """Walk up from ``start`` to the first directory holding a project marker.

    Falls back to ``start`` itself when no ancestor qualifies.
    """
    origin = Path(start or os.getcwd()).resolve()
    for candidate in (origin, *origin.parents):
        if any((candidate / marker).exists() for marker in PROJECT_MARKERS):
            return str(candidate)
    return str(origin)


def _read_env_file(path: str) -> Dict[str, str]:
    if not os.path.isfile(path):
        return {}
    try:
        values = dotenv_values(path)
    except OSError as e:
        raise ConfigurationError(f"Failed to read {path}: {e}") from e
    return {k: v for k, v in values.items() if v is not None}


def read_pinned_version(path: str) -> Optional[str]:
    if not os.path.isfile(path):
        return None
    with open(path, "r") as f:
        version = f.read().strip()
    if version.startswith("v"):
        version = version[1:]
    return version or None


def _as_port(value: str, source: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid port {value!r} in {source}") from None
    if not 0 < port < 65536:
        raise ConfigurationError(f"Port out of range {port} in {source}")
    return port


def _apply_credentials(settings: EnvironmentSettings, values: Mapping[str, str]) -> None:
    if values.get("ADMIN_EMAIL"):
        settings.admin_email = values["ADMIN_EMAIL"]
    if values.get("ADMIN_PASSWORD"):
        settings.admin_password = values["ADMIN_PASSWORD"]
    if values.get("TEST_USER_EMAIL"):
        settings.user_email = values["TEST_USER_EMAIL"]
    if values.get("TEST_USER_PASSWORD"):
        settings.user_password = values["TEST_USER_PASSWORD"]


def load_config(
    project_dir: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Config:
    """Build a Config from defaults, env files and the process environment.

    Precedence, lowest first: built-in defaults, ``.env.local``,
    ``.env.<env>`` (per environment), ``.pb-version``, process environment.
    """
    environ = os.environ if environ is None else environ
    root = project_dir or environ.get("PB_PROJECT_DIR") or find_project_dir()
    cfg = Config(project_dir=os.path.abspath(root))

    shared = _read_env_file(os.path.join(cfg.project_dir, ".env.local"))
    if shared.get("PB_HOST"):
        cfg.host = shared["PB_HOST"]
    for env, settings in cfg.environments.items():
        _apply_credentials(settings, shared)
        port_key = f"{env.value.upper()}_PORT"
        if shared.get(port_key):
            settings.port = _as_port(shared[port_key], ".env.local")
        scoped_path = os.path.join(cfg.project_dir, f".env.{env.value}")
        scoped = _read_env_file(scoped_path)
        _apply_credentials(settings, scoped)
        if scoped.get("PORT"):
            settings.port = _as_port(scoped["PORT"], scoped_path)

    pinned = read_pinned_version(cfg.version_file) or shared.get("PB_VERSION")
    if pinned:
        cfg.pb_version = pinned

    if environ.get("PB_HOST"):
        cfg.host = environ["PB_HOST"]
    if environ.get("PB_VERSION"):
        cfg.pb_version = environ["PB_VERSION"].lstrip("v")
    for env, settings in cfg.environments.items():
        port_key = f"{env.value.upper()}_PORT"
        if environ.get(port_key):
            settings.port = _as_port(environ[port_key], port_key)
    return cfg
