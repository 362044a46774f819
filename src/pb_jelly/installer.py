"""Version-pinned PocketBase binary installation and discovery."""
import logging
import os
import platform
import re
import shutil
import stat
import subprocess
import tempfile
import zipfile
from typing import Callable, List, Optional, Tuple

import requests

from .config import Config
from .errors import BinaryNotFoundError, InstallError

logger = logging.getLogger(__name__)

RELEASES_URL = "https://github.com/pocketbase/pocketbase/releases"
RELEASES_API = "https://api.github.com/repos/pocketbase/pocketbase/releases"
DOWNLOAD_TEMPLATE = (
    RELEASES_URL + "/download/v{version}/pocketbase_{version}_{os}_{arch}.zip"
)

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
}
_OS_ALIASES = {
    "darwin": "darwin",
    "linux": "linux",
    "windows": "windows",
}
_VERSION_RE = re.compile(r"v?(\d+(?:\.\d+)+)")


def platform_target(system: Optional[str] = None, machine: Optional[str] = None) -> Tuple[str, str]:
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    if system not in _OS_ALIASES:
        raise InstallError(f"Unsupported operating system: {system}")
    if machine not in _ARCH_ALIASES:
        raise InstallError(f"Unsupported architecture: {machine}")
    return _OS_ALIASES[system], _ARCH_ALIASES[machine]


def download_url(version: str, os_name: str, arch: str) -> str:
    return DOWNLOAD_TEMPLATE.format(version=version, os=os_name, arch=arch)


def find_binary(cfg: Config) -> Optional[Tuple[str, str]]:
    """Locate the binary, preferring the project-local copy.

    Returns ``(path, "local" | "global")`` or None.
    """
    if os.path.isfile(cfg.local_binary):
        return cfg.local_binary, "local"
    found = shutil.which("pocketbase")
    if found:
        return found, "global"
    return None


def require_binary(cfg: Config) -> str:
    found = find_binary(cfg)
    if found is None:
        raise BinaryNotFoundError(cfg.local_binary)
    return found[0]


def binary_version(path: str) -> Optional[str]:
    """First line of ``<binary> --version``, or None if it cannot run."""
    try:
        out = subprocess.run(
            [path, "--version"], capture_output=True, text=True, timeout=10
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if out.returncode != 0:
        return None
    lines = out.stdout.strip().splitlines()
    return lines[0] if lines else None


def extract_version(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = _VERSION_RE.search(text)
    return match.group(1) if match else None


def version_tuple(version: str) -> Tuple[int, ...]:
    version = version.strip().lstrip("v")
    parts = []
    for piece in version.split("."):
        digits = re.match(r"\d+", piece)
        parts.append(int(digits.group(0)) if digits else 0)
    return tuple(parts)


def version_less_than(left: str, right: str) -> bool:
    return version_tuple(left) < version_tuple(right)


def installed_version(cfg: Config) -> Optional[str]:
    found = find_binary(cfg)
    if found is None:
        return None
    return extract_version(binary_version(found[0]))


def fetch_available_versions(limit: int = 15, session: Optional[requests.Session] = None) -> List[str]:
    http = session or requests.Session()
    try:
        resp = http.get(
            RELEASES_API,
            params={"per_page": limit},
            headers={"Accept": "application/vnd.github+json"},
            timeout=10,
        )
    except requests.RequestException as e:
        raise InstallError(f"Failed to fetch version information: {e}") from e
    if resp.status_code != 200:
        raise InstallError(f"Failed to fetch version information (HTTP {resp.status_code})")
    versions = []
    for release in resp.json():
        if release.get("draft") or release.get("prerelease"):
            continue
        tag = (release.get("tag_name") or "").lstrip("v")
        if tag:
            versions.append(tag)
    return versions[:limit]


def _verify_release(http: requests.Session, url: str) -> None:
    try:
        resp = http.head(url, allow_redirects=False, timeout=10)
    except requests.RequestException as e:
        raise InstallError(f"Could not reach {url}: {e}") from e
    if resp.status_code not in (200, 302):
        raise InstallError(
            f"Version not found or download URL invalid: {url} (HTTP {resp.status_code}). "
            f"Check available versions at {RELEASES_URL}"
        )


def _download(http: requests.Session, url: str, dest: str) -> None:
    try:
        with http.get(url, stream=True, timeout=60) as resp:
            resp.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in resp.iter_content(chunk_size=65536):
                    f.write(chunk)
    except requests.RequestException as e:
        raise InstallError(f"Failed to download PocketBase: {e}") from e


def _extract_binary(archive: str, binary_name: str, dest: str) -> None:
    try:
        with zipfile.ZipFile(archive) as zf:
            if binary_name not in zf.namelist():
                raise InstallError(f"{binary_name} missing from downloaded archive")
            with zf.open(binary_name) as src, open(dest, "wb") as out:
                shutil.copyfileobj(src, out)
    except zipfile.BadZipFile as e:
        raise InstallError(f"Downloaded archive is corrupt: {e}") from e


def install(
    cfg: Config,
    force: bool = False,
    confirm: Optional[Callable[[str], bool]] = None,
    session: Optional[requests.Session] = None,
    target: Optional[Tuple[str, str]] = None,
) -> Optional[str]:
    """Install the pinned version into ``<project>/bin``.

    Returns the binary path, or None if the user declined to replace an
    existing binary.
    """
    version = cfg.pb_version
    binary = cfg.local_binary
    if os.path.isfile(binary):
        current = binary_version(binary) or "unknown"
        logger.info("PocketBase already exists at %s", binary)
        logger.info("Current version: %s", current)
        logger.info("Target version: v%s", version)
        if extract_version(current) == version:
            logger.info("Target version v%s is already installed", version)
            return binary
        if not force and not (confirm and confirm(f"Do you want to install version v{version}?")):
            logger.info("Skipping installation")
            return None

    os_name, arch = target or platform_target()
    logger.info("Detected platform: %s/%s", os_name, arch)
    url = download_url(version, os_name, arch)
    logger.info("Download URL: %s", url)

    http = session or requests.Session()
    logger.info("Verifying release exists...")
    _verify_release(http, url)

    os.makedirs(cfg.bin_dir, exist_ok=True)
    member = "pocketbase.exe" if os_name == "windows" else "pocketbase"
    with tempfile.TemporaryDirectory(prefix="pb-install-") as tmp:
        archive = os.path.join(tmp, "pocketbase.zip")
        logger.info("Downloading PocketBase v%s...", version)
        _download(http, url, archive)
        logger.info("Extracting PocketBase...")
        extracted = os.path.join(tmp, member)
        _extract_binary(archive, member, extracted)
        shutil.move(extracted, binary)
    mode = os.stat(binary).st_mode
    os.chmod(binary, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    if binary_version(binary) is None:
        raise InstallError("Installation verification failed")
    logger.info("PocketBase v%s installed successfully to %s", version, binary)
    return binary
