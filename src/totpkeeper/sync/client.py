"""HTTP client for the remote account service.

Talks to a Casdoor-style API: JSON envelopes of the form
``{"status": "ok" | "error", "msg": str, "data": ...}``. Every failure is
translated into a SyncError subclass whose ``kind`` can be shown to the user.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx
from pydantic import ValidationError

from totpkeeper.auth.totp import validate_secret
from totpkeeper.errors import (
    InvalidSecret,
    SyncAuthError,
    SyncNetworkError,
    SyncServerError,
    SyncTimeout,
)
from totpkeeper.models import Account, Credentials, RemoteAccount

logger = logging.getLogger(__name__)

FETCH_PATH = "/api/get-mfa-accounts"
PUSH_PATH = "/api/update-mfa-accounts"

_AUTH_HINTS = ("token", "unauthorized", "login", "permission", "forbidden")


class RemoteAccountsClient:
    """Fetches and pushes the user's account list."""

    def __init__(self, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> None:
        self.client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> RemoteAccountsClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # --- API ---

    def fetch_accounts(self, credentials: Credentials) -> list[Account]:
        """Return the server's canonical account list, in server order."""
        data = self._request("GET", credentials, FETCH_PATH)
        if data is None:
            return []
        if not isinstance(data, list):
            raise SyncServerError("Malformed account list from server")
        accounts = []
        for item in data:
            try:
                remote = RemoteAccount.model_validate(item)
                secret = validate_secret(remote.secret_key)
            except (ValidationError, InvalidSecret) as e:
                raise SyncServerError(f"Malformed account from server: {e}") from e
            accounts.append(remote.model_copy(update={"secret_key": secret}).to_account())
        logger.info("Fetched %d accounts from %s", len(accounts), credentials.server_url)
        return accounts

    def push_accounts(self, credentials: Credentials, accounts: Sequence[Account]) -> None:
        payload = {"mfaAccounts": [RemoteAccount.from_account(a).wire() for a in accounts]}
        self._request("POST", credentials, PUSH_PATH, json=payload)
        logger.info("Pushed %d accounts to %s", len(accounts), credentials.server_url)

    def is_reachable(self, server_url: str, timeout: float = 3.0) -> bool:
        """Cheap connectivity probe: any HTTP response counts as connected."""
        try:
            self.client.get(server_url, timeout=timeout)
            return True
        except (httpx.TransportError, httpx.InvalidURL):
            return False

    # --- Internals ---

    def _request(self, method: str, credentials: Credentials, path: str, **kwargs: Any) -> Any:
        url = credentials.server_url.rstrip("/") + path
        try:
            resp = self.client.request(
                method,
                url,
                params={"id": credentials.username},
                headers={"Authorization": f"Bearer {credentials.access_token}"},
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise SyncTimeout(f"Timed out contacting {credentials.server_url}") from e
        except httpx.TransportError as e:
            raise SyncNetworkError(f"Cannot reach {credentials.server_url}: {e}") from e
        except httpx.InvalidURL as e:
            raise SyncNetworkError(f"Invalid server URL {credentials.server_url!r}") from e

        if resp.status_code in (401, 403):
            raise SyncAuthError(f"Server rejected credentials (HTTP {resp.status_code})")
        if resp.status_code >= 400:
            raise SyncServerError(f"Server returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise SyncServerError("Server returned a non-JSON response") from e
        return _unwrap(body)


def _unwrap(body: Any) -> Any:
    if not isinstance(body, dict) or "status" not in body:
        return body
    if body.get("status") == "ok":
        return body.get("data")
    message = str(body.get("msg") or "Unknown server error")
    if any(hint in message.lower() for hint in _AUTH_HINTS):
        raise SyncAuthError(message)
    raise SyncServerError(message)
