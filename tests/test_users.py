import json
import os

import pytest

from pb_jelly.api_client import PocketBaseClient, users_collection_payload
from pb_jelly.config import Environment
from pb_jelly.errors import ApiError, ConfigurationError, PocketBaseToolError
from pb_jelly.users import (
    add_user,
    admin_credentials,
    create_user,
    load_seed_file,
    seed_users,
    setup_admin,
)
from conftest import read_jsonl

ENV = Environment.TEST


def write_seed(cfg, payload):
    os.makedirs(cfg.env_dir(ENV), exist_ok=True)
    with open(cfg.seed_file(ENV), "w") as f:
        json.dump(payload, f)


def emails(fake_api):
    return sorted(r["email"] for r in fake_api.records.get("users", []))


def test_client_requires_auth(fake_api):
    client = PocketBaseClient(fake_api.url)
    assert client.health()
    with pytest.raises(ApiError) as excinfo:
        client.list_collections()
    assert excinfo.value.status == 401


def test_client_bad_credentials(fake_api):
    fake_api.superusers["admin@example.com"] = "right"
    with pytest.raises(ApiError) as excinfo:
        PocketBaseClient(fake_api.url).auth_superuser("admin@example.com", "wrong")
    assert excinfo.value.status == 400


def test_client_unreachable():
    client = PocketBaseClient("http://127.0.0.1:9")
    assert not client.health()


def test_ensure_users_collection(fake_api):
    fake_api.superusers["a@example.com"] = "pw"
    client = PocketBaseClient(fake_api.url)
    client.auth_superuser("a@example.com", "pw")
    assert client.ensure_users_collection() is True
    assert client.ensure_users_collection() is False
    users = [c for c in client.list_collections() if c.name == "users"]
    assert users[0].type == "auth"


def test_users_collection_payload():
    payload = users_collection_payload()
    assert payload["type"] == "auth"
    assert [f["name"] for f in payload["fields"]] == ["name", "avatar"]


def test_load_seed_file(cfg):
    assert load_seed_file(cfg.seed_file(ENV)) is None
    write_seed(cfg, {"admin": {"email": "root@example.com", "password": "rootpass1"},
                     "users": [{"email": "a@example.com", "password": "password1", "name": "A"}]})
    seed = load_seed_file(cfg.seed_file(ENV))
    assert seed.admin.email == "root@example.com"
    assert seed.users[0].name == "A"
    assert admin_credentials(cfg, ENV, seed) == ("root@example.com", "rootpass1")


def test_invalid_seed_file(cfg):
    os.makedirs(cfg.env_dir(ENV), exist_ok=True)
    with open(cfg.seed_file(ENV), "w") as f:
        f.write("{not json")
    with pytest.raises(ConfigurationError):
        load_seed_file(cfg.seed_file(ENV))


def test_admin_credentials_fallback(cfg):
    assert admin_credentials(cfg, ENV) == ("test-admin@example.com", "test-admin-pass")


def test_setup_admin_runs_superuser_upsert(cfg, fake_binary):
    assert setup_admin(cfg, ENV) == ("test-admin@example.com", "test-admin-pass")
    records = read_jsonl(os.path.join(cfg.data_dir(ENV), "superusers.jsonl"))
    assert records == [{"email": "test-admin@example.com", "password": "test-admin-pass"}]


def test_setup_admin_without_binary(cfg, monkeypatch):
    monkeypatch.setattr("pb_jelly.installer.shutil.which", lambda name: None)
    with pytest.raises(PocketBaseToolError):
        setup_admin(cfg, ENV)


def test_seed_users_from_file_is_idempotent(api_cfg, fake_binary, fake_api):
    write_seed(api_cfg, {
        "admin": {"email": "test-admin@example.com", "password": "test-admin-pass"},
        "users": [
            {"email": "alice@example.com", "password": "alicepass1", "name": "Alice"},
            {"email": "bob@example.com", "password": "bobpass123"},
            {"email": "", "password": "nobody"},
        ],
    })
    assert seed_users(api_cfg, ENV) == 2
    assert emails(fake_api) == ["alice@example.com", "bob@example.com"]
    assert seed_users(api_cfg, ENV) == 0
    assert emails(fake_api) == ["alice@example.com", "bob@example.com"]
    alice = [r for r in fake_api.records["users"] if r["email"] == "alice@example.com"][0]
    assert alice["name"] == "Alice"


def test_seed_users_fallback_user(api_cfg, fake_binary, fake_api):
    assert seed_users(api_cfg, ENV) == 1
    assert emails(fake_api) == ["test@example.com"]
    assert fake_api.records["users"][0]["name"] == "Test User"


def test_seed_users_auth_failure(api_cfg, fake_binary, fake_api):
    fake_api.superusers.clear()
    with pytest.raises(ApiError, match="Failed to authenticate"):
        seed_users(api_cfg, ENV)


def test_create_user_skips_incomplete(fake_api):
    client = PocketBaseClient(fake_api.url)
    assert create_user(client, "", "pw") is False
    assert create_user(client, "x@example.com", "") is False


def test_add_user(api_cfg, fake_api):
    fake_api.add_collection("users", type="auth")
    assert add_user(api_cfg, ENV, "carol@example.com", "carolpass1", "Carol") is True
    assert add_user(api_cfg, ENV, "carol@example.com", "carolpass1") is False
    assert emails(fake_api) == ["carol@example.com"]
