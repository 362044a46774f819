import io
import os
import zipfile

import pytest
import requests

from pb_jelly import installer
from pb_jelly.errors import BinaryNotFoundError, InstallError

posix_only = pytest.mark.skipif(os.name == "nt", reason="installs a POSIX script as the binary")


def make_archive(version="0.23.4"):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("pocketbase", f'#!/bin/sh\necho "pocketbase version {version}"\n')
        zf.writestr("CHANGELOG.md", "changes\n")
    return buf.getvalue()


class FakeResponse:

    def __init__(self, status_code=200, content=b"", json_data=None):
        self.status_code = status_code
        self.content = content
        self._json = json_data

    def json(self):
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:

    def __init__(self, head_status=200, archive=b"", releases=None):
        self.head_status = head_status
        self.archive = archive
        self.releases = releases or []
        self.calls = []

    def head(self, url, **kwargs):
        self.calls.append(("HEAD", url))
        return FakeResponse(self.head_status)

    def get(self, url, **kwargs):
        self.calls.append(("GET", url))
        if url == installer.RELEASES_API:
            return FakeResponse(200, json_data=self.releases)
        return FakeResponse(200, content=self.archive)


@pytest.mark.parametrize("system,machine,expected", [
    ("Linux", "x86_64", ("linux", "amd64")),
    ("Darwin", "arm64", ("darwin", "arm64")),
    ("Linux", "aarch64", ("linux", "arm64")),
    ("Windows", "AMD64", ("windows", "amd64")),
])
def test_platform_target(system, machine, expected):
    assert installer.platform_target(system, machine) == expected


@pytest.mark.parametrize("system,machine", [("Plan9", "x86_64"), ("Linux", "mips")])
def test_platform_target_unsupported(system, machine):
    with pytest.raises(InstallError):
        installer.platform_target(system, machine)


def test_download_url():
    assert installer.download_url("0.23.4", "linux", "amd64") == (
        "https://github.com/pocketbase/pocketbase/releases/download/"
        "v0.23.4/pocketbase_0.23.4_linux_amd64.zip"
    )


def test_version_helpers():
    assert installer.extract_version("pocketbase version 0.23.4") == "0.23.4"
    assert installer.extract_version("v0.22.10") == "0.22.10"
    assert installer.extract_version("garbage") is None
    assert installer.version_less_than("0.9.0", "0.10.0")
    assert not installer.version_less_than("0.23.4", "0.23.4")
    assert installer.version_tuple("v1.2.3") == (1, 2, 3)


def test_require_binary_missing(cfg, monkeypatch):
    monkeypatch.setattr(installer.shutil, "which", lambda name: None)
    assert installer.find_binary(cfg) is None
    with pytest.raises(BinaryNotFoundError):
        installer.require_binary(cfg)


def test_find_binary_prefers_local(cfg, fake_binary, monkeypatch):
    monkeypatch.setattr(installer.shutil, "which", lambda name: "/usr/bin/pocketbase")
    assert installer.find_binary(cfg) == (cfg.local_binary, "local")
    assert installer.installed_version(cfg) == "0.23.4"


def test_find_binary_global(cfg, monkeypatch):
    monkeypatch.setattr(installer.shutil, "which", lambda name: "/usr/bin/pocketbase")
    assert installer.find_binary(cfg) == ("/usr/bin/pocketbase", "global")


@posix_only
def test_install_downloads_and_verifies(cfg):
    session = FakeSession(archive=make_archive())
    path = installer.install(cfg, session=session, target=("linux", "amd64"))
    assert path == cfg.local_binary
    assert os.access(path, os.X_OK)
    assert installer.binary_version(path) == "pocketbase version 0.23.4"
    url = installer.download_url("0.23.4", "linux", "amd64")
    assert session.calls == [("HEAD", url), ("GET", url)]


def test_install_missing_release(cfg):
    session = FakeSession(head_status=404)
    with pytest.raises(InstallError, match="Version not found"):
        installer.install(cfg, session=session, target=("linux", "amd64"))
    assert not os.path.exists(cfg.local_binary)


def test_install_corrupt_archive(cfg):
    session = FakeSession(archive=b"not a zip")
    with pytest.raises(InstallError, match="corrupt"):
        installer.install(cfg, session=session, target=("linux", "amd64"))


def test_install_same_version_is_noop(cfg, fake_binary):
    session = FakeSession()
    assert installer.install(cfg, session=session) == cfg.local_binary
    assert session.calls == []


@posix_only
def test_install_other_version_needs_confirmation(cfg, fake_binary):
    cfg.pb_version = "0.24.0"
    session = FakeSession(archive=make_archive("0.24.0"))
    prompts = []

    def decline(message):
        prompts.append(message)
        return False

    assert installer.install(cfg, confirm=decline, session=session, target=("linux", "amd64")) is None
    assert prompts and "v0.24.0" in prompts[0]
    assert session.calls == []

    installer.install(cfg, force=True, session=session, target=("linux", "amd64"))
    assert installer.installed_version(cfg) == "0.24.0"


def test_fetch_available_versions():
    session = FakeSession(releases=[
        {"tag_name": "v0.25.0-rc1", "prerelease": True},
        {"tag_name": "v0.24.1"},
        {"tag_name": "v0.24.0", "draft": True},
        {"tag_name": "v0.23.4"},
    ])
    assert installer.fetch_available_versions(session=session) == ["0.24.1", "0.23.4"]
