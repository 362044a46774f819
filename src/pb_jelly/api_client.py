"""Minimal PocketBase HTTP API client.

Covers only the endpoints the tooling needs: health, superuser auth,
collections and records. Targets PocketBase 0.23+ (superusers live in the
``_superusers`` auth collection).
"""
import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel, ConfigDict

from .errors import ApiError

logger = logging.getLogger(__name__)

SUPERUSERS = "_superusers"
USERS = "users"


class Collection(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    name: str
    type: str = "base"
    system: bool = False


class RecordList(BaseModel):
    model_config = ConfigDict(extra="allow")

    page: int = 1
    perPage: int = 0
    totalItems: int = 0
    totalPages: int = 0
    items: List[Dict[str, Any]] = []


class AuthResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    token: str


def users_collection_payload(name: str = USERS) -> Dict[str, Any]:
    return {
        "name": name,
        "type": "auth",
        "fields": [
            {"name": "name", "type": "text", "required": False},
            {
                "name": "avatar",
                "type": "file",
                "required": False,
                "maxSelect": 1,
                "maxSize": 5242880,
                "mimeTypes": [
                    "image/jpeg", "image/png", "image/svg+xml", "image/gif", "image/webp"
                ],
            },
        ],
    }


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class PocketBaseClient:

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.token: Optional[str] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise ApiError(f"{method} {path} failed: {e}") from e
        if not resp.ok:
            raise ApiError(f"{method} {path} failed", status=resp.status_code, body=resp.text)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ApiError(f"{method} {path} returned invalid JSON", resp.status_code, resp.text) from e

    def health(self) -> bool:
        try:
            self._request("GET", "/api/health")
        except ApiError:
            return False
        return True

    def auth_superuser(self, email: str, password: str) -> str:
        data = self._request(
            "POST",
            f"/api/collections/{SUPERUSERS}/auth-with-password",
            json={"identity": email, "password": password},
        )
        self.token = AuthResult.model_validate(data).token
        return self.token

    def list_collections(self) -> List[Collection]:
        data = self._request("GET", "/api/collections", params={"perPage": 500})
        return [Collection.model_validate(item) for item in data.get("items", [])]

    def create_collection(self, payload: Dict[str, Any]) -> Collection:
        return Collection.model_validate(self._request("POST", "/api/collections", json=payload))

    def ensure_users_collection(self, name: str = USERS) -> bool:
        """Create the auth collection ``name`` if missing. Returns True if created."""
        if any(c.name == name for c in self.list_collections()):
            logger.debug("Users collection already exists")
            return False
        logger.info("Creating %s collection...", name)
        self.create_collection(users_collection_payload(name))
        return True

    def list_records(self, collection: str, per_page: int = 500, page: int = 1,
                     filter: Optional[str] = None) -> RecordList:
        params: Dict[str, Any] = {"perPage": per_page, "page": page}
        if filter:
            params["filter"] = filter
        data = self._request("GET", f"/api/collections/{collection}/records", params=params)
        return RecordList.model_validate(data)

    def find_by_email(self, collection: str, email: str) -> Optional[Dict[str, Any]]:
        records = self.list_records(collection, per_page=1, filter=f"(email={_quote(email)})")
        return records.items[0] if records.items else None

    def create_record(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/api/collections/{collection}/records", json=data)

    def delete_record(self, collection: str, record_id: str) -> None:
        self._request("DELETE", f"/api/collections/{collection}/records/{record_id}")
