import os
import socket

import pytest

from pb_jelly.config import Environment
from pb_jelly.errors import AlreadyRunningError, ConfigurationError, PortInUseError
from pb_jelly.process_tracker import ProcessTracker, ServerState, port_in_use
from pb_jelly.server import build_launch_spec, start_server
from conftest import read_jsonl, wait_for


@pytest.fixture
def tracker(cfg):
    t = ProcessTracker(cfg)
    yield t
    t.stop_all()


def test_launch_spec_dev(cfg, fake_binary):
    env = Environment.DEV
    spec = build_launch_spec(cfg, env)
    assert spec.argv == [
        fake_binary, "serve",
        f"--http=127.0.0.1:{cfg.port(env)}",
        f"--dir={cfg.data_dir(env)}",
    ]
    assert spec.cwd == cfg.env_dir(env)


def test_launch_spec_test_overrides(cfg, fake_binary):
    env = Environment.TEST
    spec = build_launch_spec(cfg, env, host="0.0.0.0", port=9999, args=["serve", "--origins=*"])
    assert spec.argv == [
        fake_binary, "serve", "--origins=*",
        "--http=0.0.0.0:9999",
        "--dev=false",
        f"--dir={cfg.data_dir(env)}",
    ]


def test_reset_is_test_only(cfg, fake_binary, tracker):
    with pytest.raises(ConfigurationError):
        start_server(cfg, Environment.DEV, tracker, reset=True)


def test_full_requires_background(cfg, fake_binary, tracker):
    with pytest.raises(ConfigurationError):
        start_server(cfg, Environment.TEST, tracker, background=False, full=True)


def test_refuses_port_held_by_other_process(cfg, fake_binary, tracker):
    env = Environment.TEST
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", cfg.port(env)))
        s.listen(1)
        with pytest.raises(PortInUseError):
            start_server(cfg, env, tracker)
    assert not os.path.exists(cfg.pid_file(env))


def test_background_full_start(cfg, fake_binary, tracker):
    env = Environment.TEST
    assert start_server(cfg, env, tracker, full=True) == 0
    assert tracker.status(env).state is ServerState.RUNNING
    assert port_in_use("127.0.0.1", cfg.port(env))
    admins = read_jsonl(os.path.join(cfg.data_dir(env), "superusers.jsonl"))
    assert admins == [{"email": "test-admin@example.com", "password": "test-admin-pass"}]

    with pytest.raises(AlreadyRunningError):
        start_server(cfg, env, tracker)


def test_reset_wipes_data_before_start(cfg, fake_binary, tracker):
    env = Environment.TEST
    os.makedirs(cfg.hooks_dir(env))
    os.makedirs(cfg.data_dir(env))
    marker = os.path.join(cfg.data_dir(env), "data.db")
    with open(marker, "w") as f:
        f.write("old")
    assert start_server(cfg, env, tracker, reset=True) == 0
    assert not os.path.exists(marker)
    assert not os.path.exists(cfg.hooks_dir(env))
    assert wait_for(lambda: port_in_use("127.0.0.1", cfg.port(env)))


def test_foreground_start_returns_exit_code(cfg, fake_binary, tracker):
    code = start_server(cfg, Environment.DEV, tracker, quiet=True, args=["bogus"])
    assert code == 2
    assert not os.path.exists(cfg.pid_file(Environment.DEV))
