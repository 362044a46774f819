"""Scaffolding for a new pb-and-jelly project directory."""
import logging
import os
from typing import Callable, List, Optional

from .config import PROJECT_MARKERS, Config, Environment
from .errors import ConfigurationError
from .users import SeedAdmin, SeedFile, SeedUser

logger = logging.getLogger(__name__)

README = """# PocketBase Setup

```
pb-jelly install            # download the pinned PocketBase binary
pb-jelly dev start          # development server on {dev_url}
pb-jelly dev seed-users     # admin and users from dev/dev-users.json
pb-jelly test start --full  # background test server on {test_url}
pb-jelly test stop
```

- `.pb-version`: pinned PocketBase version
- `dev/dev-users.json`, `test/test-users.json`: seed users per environment
- `dev/pb_hooks/`, `test/pb_hooks/`: JavaScript hooks
- `pb_migrations/`: JavaScript migrations (shared)
"""


def default_seed(env: Environment) -> SeedFile:
    name = "Dev User" if env is Environment.DEV else "Test User"
    password = "devpass123" if env is Environment.DEV else "testpass123"
    return SeedFile(
        admin=SeedAdmin(email=f"{env}-admin@example.com", password=f"{env}-admin-pass"),
        users=[SeedUser(email=f"{env}-user@example.com", password=password, name=name)],
    )


def existing_project_files(target: str) -> List[str]:
    names = list(PROJECT_MARKERS) + [env.value for env in Environment]
    return [n for n in names if os.path.exists(os.path.join(target, n))]


def _write(path: str, content: str) -> None:
    with open(path, "w") as f:
        f.write(content)
    logger.debug("Wrote %s", path)


def init_project(
    target: str,
    pb_version: str,
    force: bool = False,
    confirm: Optional[Callable[[str], bool]] = None,
) -> Optional[Config]:
    """Create the environment directories, seed files and version pin.

    Returns the new project's Config, or None if the user declined to
    overwrite an existing project.
    """
    target = os.path.abspath(target)
    if not os.path.isdir(target):
        raise ConfigurationError(f"Target directory does not exist: {target}")
    logger.info("Initializing pb-and-jelly in: %s", target)

    existing = existing_project_files(target)
    if existing:
        logger.warning("Project files already exist: %s", ", ".join(existing))
        if not force and not (confirm and confirm("Continue and overwrite?")):
            logger.info("Initialization cancelled")
            return None

    cfg = Config(project_dir=target, pb_version=pb_version)
    os.makedirs(cfg.migrations_dir, exist_ok=True)
    for env in Environment:
        os.makedirs(cfg.hooks_dir(env), exist_ok=True)
        seed = default_seed(env)
        _write(cfg.seed_file(env), seed.model_dump_json(indent=2, exclude_none=True) + "\n")
    _write(cfg.version_file, pb_version + "\n")

    readme = os.path.join(target, "README.md")
    if os.path.exists(readme):
        logger.debug("Keeping existing %s", readme)
    else:
        urls = {f"{env}_url": cfg.base_url(env) for env in Environment}
        _write(readme, README.format(**urls))

    logger.info("Project initialized. Next: pb-jelly --project-dir %s install", target)
    return cfg
