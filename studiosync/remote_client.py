from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Any

import requests

from studiosync.models import RemoteConfig

logger = logging.getLogger(__name__)


class RemoteStoreError(Exception):
    status_code: int | None = None


class RemoteUnavailableError(RemoteStoreError):
    pass


class RemoteAuthError(RemoteStoreError):
    status_code = 401


class PayloadTooLargeError(RemoteStoreError):
    status_code = 413


def session_token(password: str, secret: str) -> str:
    return hashlib.sha256(f"{password}{secret}".encode("utf-8")).hexdigest()


def _check_response(response: requests.Response) -> None:
    if response.status_code == 401:
        raise RemoteAuthError("Remote store rejected the session token.")
    if response.status_code == 413:
        raise PayloadTooLargeError("Remote store rejected the payload as too large.")
    if response.status_code >= 500:
        raise RemoteUnavailableError(f"HTTP {response.status_code}: {response.text[:300]}")
    if not response.ok:
        error = RemoteStoreError(f"HTTP {response.status_code}: {response.text[:300]}")
        error.status_code = response.status_code
        raise error


class RemoteStoreClient:
    def __init__(self, config: RemoteConfig) -> None:
        self.config = config
        self._token: str | None = None
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return bool(self.config.base_url)

    def _endpoint(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    @property
    def has_token(self) -> bool:
        with self._lock:
            return self._token is not None

    def invalidate_token(self) -> None:
        with self._lock:
            self._token = None

    def login(self) -> str:
        try:
            response = requests.post(
                self._endpoint("/api/login"),
                json={"password": self.config.password},
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RemoteUnavailableError(f"{type(exc).__name__}: {exc}") from exc
        _check_response(response)
        try:
            payload = response.json() or {}
        except ValueError as exc:
            raise RemoteStoreError("Login response was not valid JSON.") from exc
        token = str(payload.get("token", "")).strip() if isinstance(payload, dict) else ""
        if not token:
            raise RemoteAuthError("Login response did not contain a token.")
        with self._lock:
            self._token = token
        return token

    def auth_headers(self) -> dict[str, str]:
        with self._lock:
            token = self._token
        if token is None:
            token = self.login()
        return {"Authorization": f"Bearer {token}"}

    def _request(self, method: str, **kwargs: Any) -> requests.Response:
        headers = self.auth_headers()
        try:
            response = requests.request(
                method,
                self._endpoint("/api/data"),
                headers={**headers, **kwargs.pop("headers", {})},
                timeout=self.config.timeout_seconds,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise RemoteUnavailableError(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code == 401:
            self.invalidate_token()
        _check_response(response)
        return response

    def fetch(self) -> dict[str, Any] | None:
        """Return the stored aggregate, or ``None`` when the store is empty."""
        response = self._request("GET")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteStoreError("Remote store returned invalid JSON.") from exc
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise RemoteStoreError("Remote store document root must be an object.")
        return payload

    def push(self, payload: dict[str, Any]) -> None:
        self._request(
            "POST",
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )

    def send_beacon(self, payload: dict[str, Any]) -> bool:
        """Best-effort short-timeout push used on shutdown; never raises."""
        try:
            with self._lock:
                token = self._token
            if token is None:
                token = self.login()
            response = requests.post(
                self._endpoint("/api/data"),
                params={"token": token},
                data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
                headers={"Content-Type": "application/json"},
                timeout=self.config.beacon_timeout_seconds,
            )
            _check_response(response)
            return True
        except (RemoteStoreError, requests.RequestException) as exc:
            logger.warning("Beacon flush failed: %s", exc)
            return False
