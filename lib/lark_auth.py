"""Tenant access token retrieval and caching for the Lark open API."""

from __future__ import annotations

import time
from typing import Callable, Optional, Tuple

import requests

from lib.config import LARK_BASE_URL, LARK_HTTP_TIMEOUT
from utils.errors import RemoteFatal, RemoteTransient
from utils.locks import ReadWriteLock
from utils.logging import logger

TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
# Refresh a little before the remote expiry so in-flight calls never carry a stale token.
TOKEN_EXPIRY_MARGIN_SECONDS = 60
AUTH_FAILURE_CODES = {10003, 10014, 99991600, 99991601}


def request_tenant_token(
    session: requests.Session,
    app_id: str,
    app_secret: str,
    base_url: str = LARK_BASE_URL,
    timeout: float = LARK_HTTP_TIMEOUT,
) -> Tuple[str, int]:
    """
    Exchange app credentials for a tenant access token.

    Returns:
        (token, expire_seconds)
    """
    try:
        response = session.post(
            f"{base_url}{TOKEN_PATH}",
            json={"app_id": app_id, "app_secret": app_secret},
            timeout=timeout,
        )
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise RemoteTransient(f"Token request failed: {exc}") from exc
    except requests.RequestException as exc:
        raise RemoteFatal(f"Token request failed: {exc}") from exc

    if response.status_code >= 500 or response.status_code == 429:
        raise RemoteTransient(f"Token request failed with HTTP {response.status_code}")
    try:
        body = response.json()
    except ValueError as exc:
        raise RemoteFatal(f"Token response is not JSON (HTTP {response.status_code})") from exc

    code = body.get("code", -1)
    if code != 0:
        msg = body.get("msg", "")
        if code in AUTH_FAILURE_CODES:
            raise RemoteFatal(f"App ID or App Secret is incorrect: {msg} (code: {code})", code=code, msg=msg)
        raise RemoteFatal(f"Failed to get tenant token: {msg} (code: {code})", code=code, msg=msg)
    return body["tenant_access_token"], int(body.get("expire", 7200))


class TenantTokenCache:
    """
    Shared token cache with double-checked locking.

    Callers take the read lock for the fast path; only a missing or expired
    token takes the write lock, and the token is checked again once it is held
    so concurrent callers trigger a single refresh.
    """

    def __init__(
        self,
        fetch: Callable[[], Tuple[str, int]],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._clock = clock
        self._lock = ReadWriteLock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def _valid_token(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    def get(self) -> str:
        with self._lock.read():
            token = self._valid_token()
        if token:
            return token

        with self._lock.write():
            token = self._valid_token()
            if token:
                return token
            token, expire = self._fetch()
            self._token = token
            self._expires_at = self._clock() + max(expire - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
            logger.debug("Tenant access token refreshed, valid for %ss", expire)
            return token

    def invalidate(self) -> None:
        with self._lock.write():
            self._token = None
            self._expires_at = 0.0
