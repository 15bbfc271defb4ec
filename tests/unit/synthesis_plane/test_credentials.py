"""Unit tests for credential header resolution and token caching."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from insight_orchestrator.synthesis_plane.providers import (
    AccessToken,
    AuthError,
    AuthMode,
    CachingTokenProvider,
    CredentialSettings,
    resolve_auth_headers,
)


@dataclass(slots=True)
class _CountingTokenProvider:
    lifetime_seconds: float = 3600.0
    now: float = 1_000.0
    calls: list[str | None] = field(default_factory=list)

    async def get_token(self, tenant_id: str | None) -> AccessToken:
        self.calls.append(tenant_id)
        return AccessToken(
            token=f"token-{len(self.calls)}", expires_at=self.now + self.lifetime_seconds
        )


@dataclass(slots=True)
class _FailingTokenProvider:
    async def get_token(self, tenant_id: str | None) -> AccessToken:
        raise RuntimeError("device code flow cancelled")


@dataclass(slots=True)
class _Clock:
    now: float = 1_000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.unit
async def test_api_key_mode_uses_api_key_header() -> None:
    headers = await resolve_auth_headers(
        CredentialSettings(auth_mode=AuthMode.API_KEY, api_key="secret")
    )

    assert headers == {"api-key": "secret"}


@pytest.mark.unit
async def test_api_key_mode_without_key_names_remediation() -> None:
    with pytest.raises(AuthError, match="api_key_env") as excinfo:
        await resolve_auth_headers(CredentialSettings(auth_mode=AuthMode.API_KEY, api_key=" "))

    assert excinfo.value.retryable is False


@pytest.mark.unit
async def test_entra_mode_requires_token_provider() -> None:
    with pytest.raises(AuthError, match="no token provider"):
        await resolve_auth_headers(CredentialSettings(auth_mode=AuthMode.ENTRA_ID))


@pytest.mark.unit
async def test_entra_token_failure_surfaces_as_auth_error() -> None:
    settings = CredentialSettings(
        auth_mode=AuthMode.ENTRA_ID, token_provider=_FailingTokenProvider()
    )

    with pytest.raises(AuthError, match="device code flow cancelled"):
        await resolve_auth_headers(settings)


@pytest.mark.unit
async def test_caching_provider_reuses_token_per_tenant_until_refresh_margin() -> None:
    inner = _CountingTokenProvider(lifetime_seconds=600.0)
    clock = _Clock()
    cache = CachingTokenProvider(inner, clock=clock, refresh_margin_seconds=60.0)

    first = await cache.get_token("tenant-a")
    again = await cache.get_token("tenant-a")
    other = await cache.get_token(None)

    assert first is again
    assert other.token == "token-2"
    assert inner.calls == ["tenant-a", None]

    clock.now = 1_000.0 + 600.0 - 30.0
    refreshed = await cache.get_token("tenant-a")

    assert refreshed.token == "token-3"


@pytest.mark.unit
async def test_caching_provider_invalidate_forces_refetch() -> None:
    inner = _CountingTokenProvider()
    cache = CachingTokenProvider(inner, clock=_Clock())

    await cache.get_token(None)
    cache.invalidate()
    await cache.get_token(None)

    assert inner.calls == [None, None]


def test_caching_provider_rejects_negative_margin() -> None:
    with pytest.raises(ValueError, match="refresh_margin_seconds"):
        CachingTokenProvider(_CountingTokenProvider(), refresh_margin_seconds=-1)
