"""
Remote change feed — the only network surface the reconciler sees.

RemoteFeed is the abstract boundary: an ordered, position-addressable
list of changes per collection, a push endpoint that acknowledges
accepted versions, and the account calls the key lifecycle needs.

HttpRemoteFeed talks to the Risu API:

    GET  /sync/pull?collection=&after=&limit=   -> {changes, has_more}
    POST /sync/push                             -> {id, version, position}
    POST /auth/e2e/enable                       -> {encryption_salt}
    POST /auth/refresh                          -> {id_token, refresh_token}
    POST /sync/reset

Retry policy: up to ``max_attempts`` tries with linear backoff on
connection errors, timeouts and 5xx; one token refresh on 401.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from .errors import AuthError, NetworkError, PaymentRequiredError, SyncAborted
from .models import PullPage, PushAck, PushEnvelope

logger = logging.getLogger("risu.feed")

M = TypeVar("M", bound=BaseModel)


def _parse(model: type[M], data: Any, what: str) -> M:
    """Validate a response body; malformed or empty bodies are transport failures."""
    if data is None:
        raise NetworkError(f"{what}: empty response")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise NetworkError(f"{what}: unexpected response ({exc.error_count()} errors)") from exc


class RemoteFeed(ABC):
    """Abstract remote change feed."""

    @abstractmethod
    def fetch_changes(self, collection: str, after: int, limit: int) -> PullPage:
        """Changes with position greater than ``after``, oldest first.

        Raises:
            NetworkError: Transport failure; nothing was consumed.
            AuthError: The session is no longer valid.
        """

    @abstractmethod
    def push_change(self, collection: str, envelope: PushEnvelope) -> PushAck:
        """Upload one encrypted note and return the acknowledgment."""

    @abstractmethod
    def publish_salt(self, salt: str, validator: Optional[str] = None) -> None:
        """Store the account salt (and passphrase validator) remotely."""

    def reset_remote(self) -> None:
        """Delete every remote record of the account."""
        raise NotImplementedError(f"{type(self).__name__} cannot reset remote data")


class HttpRemoteFeed(RemoteFeed):
    """Risu API client.

    Args:
        base_url: API root, e.g. ``https://risu-api.laiosys.dev``.
        auth: AuthSession supplying the bearer token and taking
            refreshed tokens back.
        timeout: Per-request timeout in seconds.
        max_attempts: Tries per request for retryable failures.
        backoff: Seconds multiplied by the attempt number between tries.
        cancel_event: When set, pending retries are abandoned.
        http: Optional ``requests.Session`` (tests inject one).
    """

    def __init__(
        self,
        base_url: str,
        auth: Any,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff: float = 0.5,
        cancel_event: Optional[threading.Event] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._cancel = cancel_event or threading.Event()
        self._http = http or requests.Session()

    # -------------------------------------------------------------------
    # RemoteFeed
    # -------------------------------------------------------------------

    def fetch_changes(self, collection: str, after: int, limit: int) -> PullPage:
        data = self._request(
            "GET",
            "/sync/pull",
            params={"collection": collection, "after": after, "limit": limit},
        )
        return _parse(PullPage, data, "GET /sync/pull")

    def push_change(self, collection: str, envelope: PushEnvelope) -> PushAck:
        data = self._request(
            "POST",
            "/sync/push",
            json={"collection": collection, "note": envelope.model_dump(mode="json")},
        )
        return _parse(PushAck, data, "POST /sync/push")

    def publish_salt(self, salt: str, validator: Optional[str] = None) -> None:
        payload = {"salt": salt}
        if validator:
            payload["validator"] = validator
        data = self._request("POST", "/auth/e2e/enable", json=payload)
        returned = (data or {}).get("encryption_salt")
        if returned and returned != salt:
            logger.warning("Account kept a different salt than the one published")

    def reset_remote(self) -> None:
        self._request("POST", "/sync/reset")

    # -------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Authenticated request with retry, refresh and error mapping."""
        url = f"{self.base_url}{path}"
        refreshed = False
        attempt = 0

        while True:
            attempt += 1
            if self._cancel.is_set():
                raise SyncAborted(f"{method} {path} cancelled")

            headers = {"Content-Type": "application/json"}
            token = self._token()
            if token:
                headers["Authorization"] = f"Bearer {token}"

            try:
                resp = self._http.request(
                    method, url, headers=headers, params=params, json=json,
                    timeout=self._timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as exc:
                if attempt < self._max_attempts:
                    logger.debug("%s %s failed (%s), retrying", method, path, exc)
                    self._sleep(attempt)
                    continue
                raise NetworkError(f"{method} {path}: {exc}") from exc
            except requests.RequestException as exc:
                raise NetworkError(f"{method} {path}: {exc}") from exc

            status = resp.status_code
            if status == 401:
                if not refreshed and self._refresh_token():
                    refreshed = True
                    continue
                raise AuthError(f"{method} {path}: unauthorized")
            if status == 403:
                raise PaymentRequiredError(f"{method} {path}: payment required")
            if status >= 500:
                if attempt < self._max_attempts:
                    self._sleep(attempt)
                    continue
                raise NetworkError(f"{method} {path}: {status}", status_code=status)
            if status >= 400:
                raise NetworkError(f"{method} {path}: {status} {resp.text[:200]}", status_code=status)

            if not resp.content:
                return None
            try:
                return resp.json()
            except ValueError as exc:
                raise NetworkError(f"{method} {path}: response is not JSON") from exc

    def _sleep(self, attempt: int) -> None:
        if self._cancel.wait(timeout=self._backoff * attempt):
            raise SyncAborted("request cancelled during backoff")

    def _token(self) -> Optional[str]:
        session = self._auth.current
        return session.token if session else None

    def _refresh_token(self) -> bool:
        """Swap the refresh token for a new bearer token."""
        session = self._auth.current
        if session is None or not session.refresh_token:
            return False
        try:
            resp = self._http.post(
                f"{self.base_url}/auth/refresh",
                json={"refresh_token": session.refresh_token},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Token refresh failed: %s", exc)
            return False
        if resp.status_code != 200:
            logger.warning("Token refresh rejected: %s", resp.status_code)
            return False
        try:
            data = resp.json()
            self._auth.update_tokens(data["id_token"], data.get("refresh_token"))
        except (ValueError, KeyError) as exc:
            logger.warning("Token refresh returned an unexpected body: %s", exc)
            return False
        logger.info("Session token refreshed")
        return True
