# src/spanline/telemetry/exporters/auth.py
"""Authentication for OTLP exporters.

Three header sources, chosen from ExporterSettings:
- StaticHeaderAuth: configured headers only
- BearerTokenAuth: 'Authorization: Bearer <token>' plus configured headers
- OAuth2ClientCredentialsAuth: tokens from an OAuth2 token endpoint
  (client-credentials grant), cached until shortly before expiry

Header values are secrets; they are never logged.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import httpx

from spanline.contracts.defaults import INTERNAL_DEFAULTS
from spanline.contracts.errors import SpanlineError
from spanline.core.config import ExporterSettings, OAuth2Settings
from spanline.core.logging import get_logger

logger = get_logger(__name__)

_EXPIRY_SKEW_SECONDS = float(INTERNAL_DEFAULTS["oauth2"]["expiry_skew_seconds"])
_DEFAULT_EXPIRES_IN = int(INTERNAL_DEFAULTS["oauth2"]["default_expires_in"])


class TokenFetchError(SpanlineError):
    """Raised when an OAuth2 access token cannot be obtained.

    Attributes:
        retryable: True for transient failures (network, 5xx, 429), False
            when the token endpoint rejected the credentials
    """

    def __init__(self, message: str, *, retryable: bool) -> None:
        self.retryable = retryable
        super().__init__(message)


class AuthProvider(Protocol):
    """Supplies request headers (HTTP) or call metadata (gRPC)."""

    def headers(self) -> dict[str, str]:
        """Current headers. May raise TokenFetchError."""
        ...

    def invalidate(self) -> None:
        """Forget cached credentials after the collector rejected them."""
        ...

    def close(self) -> None:
        """Release connections owned by the provider."""
        ...


class StaticHeaderAuth:
    """Fixed headers from configuration."""

    def __init__(self, headers: Mapping[str, str] | None = None) -> None:
        self._headers = dict(headers or {})

    def headers(self) -> dict[str, str]:
        return dict(self._headers)

    def invalidate(self) -> None:
        pass

    def close(self) -> None:
        pass


class BearerTokenAuth(StaticHeaderAuth):
    """Static bearer token; the Authorization header wins over configured headers."""

    def __init__(self, token: str, headers: Mapping[str, str] | None = None) -> None:
        merged = {k: v for k, v in (headers or {}).items() if k.lower() != "authorization"}
        merged["Authorization"] = f"Bearer {token}"
        super().__init__(merged)


class OAuth2ClientCredentialsAuth:
    """OAuth2 client-credentials token provider with caching and refresh.

    The token is fetched lazily on first use and refreshed
    expiry_skew_seconds before it expires. Concurrent exporters share one
    fetch (the lock is held while fetching).
    """

    def __init__(
        self,
        settings: OAuth2Settings,
        headers: Mapping[str, str] | None = None,
        *,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._static_headers = {k: v for k, v in (headers or {}).items() if k.lower() != "authorization"}
        self._client = client if client is not None else httpx.Client(timeout=timeout)
        self._owns_client = client is None
        self._clock = clock
        self._lock = threading.Lock()
        self._token: str | None = None
        self._expires_at = 0.0

    def headers(self) -> dict[str, str]:
        result = dict(self._static_headers)
        result["Authorization"] = f"Bearer {self._access_token()}"
        return result

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _access_token(self) -> str:
        with self._lock:
            if self._token is not None and self._clock() < self._expires_at:
                return self._token
            token, expires_in = self._fetch_token()
            self._token = token
            self._expires_at = self._clock() + max(expires_in - _EXPIRY_SKEW_SECONDS, 0.0)
            return token

    def _fetch_token(self) -> tuple[str, float]:
        data: dict[str, Any] = {
            "grant_type": "client_credentials",
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
        }
        if self._settings.scopes:
            data["scope"] = " ".join(self._settings.scopes)
        if self._settings.audience:
            data["audience"] = self._settings.audience

        try:
            response = self._client.post(self._settings.token_url, data=data)
        except httpx.HTTPError as e:
            raise TokenFetchError(f"token request failed: {type(e).__name__}", retryable=True) from e

        if response.status_code != 200:
            retryable = response.status_code == 429 or response.status_code >= 500
            raise TokenFetchError(
                f"token endpoint returned HTTP {response.status_code}",
                retryable=retryable,
            )
        try:
            payload = response.json()
            token = payload["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise TokenFetchError("token endpoint response has no access_token", retryable=False) from e
        if not isinstance(token, str) or not token:
            raise TokenFetchError("token endpoint returned an empty access_token", retryable=False)

        expires_in = payload.get("expires_in", _DEFAULT_EXPIRES_IN)
        try:
            expires_seconds = float(expires_in)
        except (TypeError, ValueError):
            expires_seconds = float(_DEFAULT_EXPIRES_IN)
        logger.debug("OAuth2 token obtained", token_url=self._settings.token_url, expires_in=expires_seconds)
        return token, expires_seconds


def auth_from_settings(settings: ExporterSettings, *, client: httpx.Client | None = None) -> AuthProvider:
    """Choose the auth provider for an exporter configuration."""
    if settings.oauth2 is not None:
        return OAuth2ClientCredentialsAuth(
            settings.oauth2,
            settings.headers,
            client=client,
            timeout=settings.timeout_seconds,
        )
    if settings.bearer_token is not None:
        return BearerTokenAuth(settings.bearer_token, settings.headers)
    return StaticHeaderAuth(settings.headers)
