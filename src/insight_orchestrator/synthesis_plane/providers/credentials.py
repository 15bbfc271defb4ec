"""Credential resolution for the completion endpoint.

File: src/insight_orchestrator/synthesis_plane/providers/credentials.py

Pure logic: selects the ``api-key`` header or a bearer token obtained from an
injected token provider. Token acquisition itself (MSAL, managed identity, ...)
is the caller's concern; this module only caches what the provider returns.
"""

from __future__ import annotations

import asyncio
import enum
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final, Protocol, runtime_checkable

from insight_orchestrator.synthesis_plane.providers.base import AuthError

# ---------------------------------------------------------------------------
# Auth mode enum
# ---------------------------------------------------------------------------


class AuthMode(enum.Enum):
    """How the completion endpoint authenticates."""

    API_KEY = "api_key"
    ENTRA_ID = "entra_id"


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

DEFAULT_REFRESH_MARGIN_SECONDS: Final[float] = 60.0
DEFAULT_TENANT_KEY: Final[str] = "common"

API_KEY_REMEDIATION: Final[str] = (
    "set completion.api_key_env to an environment variable holding the resource key"
)
ENTRA_REMEDIATION: Final[str] = (
    "assign the 'Cognitive Services OpenAI User' role to the signed-in identity "
    "and confirm the tenant id"
)


@dataclass(frozen=True, slots=True)
class AccessToken:
    """Bearer token plus its absolute expiry (epoch seconds)."""

    token: str
    expires_at: float

    def __post_init__(self) -> None:
        if not isinstance(self.token, str) or not self.token.strip():
            raise ValueError("AccessToken.token cannot be empty")


@runtime_checkable
class TokenProvider(Protocol):
    """Injected capability that acquires bearer tokens."""

    async def get_token(self, tenant_id: str | None) -> AccessToken:
        """Return a token for ``tenant_id`` (``None`` selects the default tenant)."""


class CachingTokenProvider:
    """Reuse tokens until ``refresh_margin_seconds`` before they expire."""

    __slots__ = ("_inner", "_clock", "_margin", "_tokens", "_lock")

    def __init__(
        self,
        inner: TokenProvider,
        *,
        clock: Callable[[], float] = time.time,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
    ) -> None:
        if refresh_margin_seconds < 0:
            raise ValueError("refresh_margin_seconds must be >= 0")
        self._inner = inner
        self._clock = clock
        self._margin = refresh_margin_seconds
        self._tokens: dict[str, AccessToken] = {}
        self._lock = asyncio.Lock()

    async def get_token(self, tenant_id: str | None) -> AccessToken:
        key = tenant_id or DEFAULT_TENANT_KEY
        async with self._lock:
            cached = self._tokens.get(key)
            if cached is not None and cached.expires_at > self._clock() + self._margin:
                return cached
            fresh = await self._inner.get_token(tenant_id)
            self._tokens[key] = fresh
            return fresh

    def invalidate(self, tenant_id: str | None = None) -> None:
        self._tokens.pop(tenant_id or DEFAULT_TENANT_KEY, None)


# ---------------------------------------------------------------------------
# Header resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CredentialSettings:
    """Resolved credential inputs for one invoker."""

    auth_mode: AuthMode
    api_key: str | None = None
    token_provider: TokenProvider | None = None
    tenant_id: str | None = None


async def resolve_auth_headers(settings: CredentialSettings) -> dict[str, str]:
    """Return the auth header for one request or raise ``AuthError``."""

    if settings.auth_mode is AuthMode.ENTRA_ID:
        if settings.token_provider is None:
            raise AuthError(
                "entra_id auth selected but no token provider was supplied",
                remediation=ENTRA_REMEDIATION,
            )
        try:
            access = await settings.token_provider.get_token(settings.tenant_id)
        except AuthError:
            raise
        except Exception as exc:  # noqa: BLE001 - provider failures surface as auth failures.
            raise AuthError(
                f"token acquisition failed: {exc}",
                remediation=ENTRA_REMEDIATION,
            ) from exc
        return {"Authorization": f"Bearer {access.token}"}

    if settings.api_key is None or not settings.api_key.strip():
        raise AuthError("no API key is configured", remediation=API_KEY_REMEDIATION)
    return {"api-key": settings.api_key}


def remediation_for(mode: AuthMode) -> str:
    return ENTRA_REMEDIATION if mode is AuthMode.ENTRA_ID else API_KEY_REMEDIATION


__all__ = [
    "AccessToken",
    "AuthMode",
    "CachingTokenProvider",
    "CredentialSettings",
    "TokenProvider",
    "remediation_for",
    "resolve_auth_headers",
]
