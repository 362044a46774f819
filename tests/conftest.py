import json
import os
import socket
import stat
import sys
import time

import pytest

from pb_jelly.config import Environment, load_config
from fake_pocketbase import FakePocketBase

FAKE_BINARY = r'''#!{python}
import json
import os
import sys
from http.server import BaseHTTPRequestHandler, HTTPServer

VERSION = "0.23.4"


def option(args, name, default=None):
    prefix = "--" + name + "="
    for arg in args:
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return default


class Health(BaseHTTPRequestHandler):
    def do_GET(self):
        body = b'{"code":200,"message":"API is healthy."}'
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


def record(data_dir, name, payload):
    os.makedirs(data_dir, exist_ok=True)
    with open(os.path.join(data_dir, name), "a") as f:
        f.write(json.dumps(payload) + "\n")


def main(args):
    if args[:1] == ["--version"]:
        print("pocketbase version " + VERSION)
        return 0
    data_dir = option(args, "dir", "pb_data")
    if args[:2] == ["superuser", "upsert"]:
        record(data_dir, "superusers.jsonl", {"email": args[2], "password": args[3]})
        print("Successfully saved superuser")
        return 0
    if args[:1] == ["migrate"]:
        record(data_dir, "migrate.jsonl", {"args": args, "cwd": os.getcwd()})
        return 0
    if args[:1] == ["serve"]:
        host, _, port = option(args, "http").rpartition(":")
        os.makedirs(data_dir, exist_ok=True)
        print("Server started at http://%s:%s" % (host, port), flush=True)
        HTTPServer((host, int(port)), Health).serve_forever()
        return 0
    print("unknown command %r" % (args,), file=sys.stderr)
    return 2


sys.exit(main(sys.argv[1:]))
'''


def pick_free_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def wait_for(predicate, timeout=10.0, poll_interval=0.1):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(poll_interval)
    return predicate()


def read_jsonl(path):
    if not os.path.exists(path):
        return []
    with open(path) as f:
        return [json.loads(line) for line in f if line.strip()]


@pytest.fixture(autouse=True)
def clean_environ(monkeypatch):
    for key in ("PB_PROJECT_DIR", "PB_HOST", "PB_VERSION", "DEV_PORT", "TEST_PORT"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def project(tmp_path):
    (tmp_path / ".pb-version").write_text("0.23.4\n")
    return tmp_path


@pytest.fixture
def cfg(project):
    cfg = load_config(project_dir=str(project), environ={})
    cfg.environments[Environment.DEV].port = pick_free_port()
    cfg.environments[Environment.TEST].port = pick_free_port()
    cfg.stop_retries = 20
    cfg.stop_interval = 0.1
    cfg.ready_timeout = 10
    cfg.ready_interval = 0.1
    return cfg


@pytest.fixture
def fake_binary(cfg):
    if os.name == "nt":
        pytest.skip("fake pocketbase binary is a POSIX script")
    os.makedirs(cfg.bin_dir, exist_ok=True)
    with open(cfg.local_binary, "w") as f:
        f.write(FAKE_BINARY.replace("{python}", sys.executable))
    mode = os.stat(cfg.local_binary).st_mode
    os.chmod(cfg.local_binary, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return cfg.local_binary


@pytest.fixture
def fake_api():
    server = FakePocketBase(port=pick_free_port())
    server.start()
    yield server
    server.stop()


@pytest.fixture
def api_cfg(cfg, fake_api):
    """Config whose test environment points at the in-process fake API."""
    cfg.environments[Environment.TEST].port = fake_api.port
    settings = cfg.settings(Environment.TEST)
    fake_api.superusers[settings.admin_email] = settings.admin_password
    return cfg
