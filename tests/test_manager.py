# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

from collections.abc import Callable
from typing import Any

import httpx
import pytest
from conftest import CLIENT_ID, ISSUER, NOW, FakeClock, FakeIdP

from coreason_keycloak import KeycloakSessionManager, MemoryCredentialStore, SessionState
from coreason_keycloak.cache import DiscoveryCache
from coreason_keycloak.config import KeycloakConfig
from coreason_keycloak.exceptions import InvalidAudienceError, TokenVerificationError

ORIGIN = "https://app.test"


@pytest.fixture
def manager(config: KeycloakConfig, http_client: httpx.AsyncClient, clock: FakeClock) -> KeycloakSessionManager:
    return KeycloakSessionManager(config, client=http_client, clock=clock)


@pytest.fixture
def store(clock: FakeClock) -> MemoryCredentialStore:
    return MemoryCredentialStore(clock)


@pytest.fixture
def bearer_claims(user_claims: dict[str, Any]) -> dict[str, Any]:
    return {**user_claims, "iss": ISSUER, "aud": CLIENT_ID, "exp": int(NOW) + 300}


@pytest.mark.asyncio
async def test_login_to_logout_round_trip(
    manager: KeycloakSessionManager,
    store: MemoryCredentialStore,
    idp: FakeIdP,
    clock: FakeClock,
    token_payload: Callable[..., dict[str, Any]],
) -> None:
    assert (await manager.session_status(store)).authenticated is False

    redirect = await manager.start_login(store, return_to="/home", origin=ORIGIN)
    idp.queue_tokens(token_payload())
    result = await manager.handle_callback(store, {"code": "c", "state": redirect.state}, origin=ORIGIN)
    assert result.redirect_to == "/home"

    status = await manager.session_status(store)
    assert status.authenticated
    assert status.user is not None
    assert status.user.has_client_role("editor")
    assert status.access_expires_at == int(NOW) + 300
    assert status.refresh_expires_at == int(NOW) + 1800

    clock.advance(250)
    idp.queue_tokens(token_payload())
    resolution = await manager.evaluate_session(store)
    assert resolution.state is SessionState.ACCESS_EXPIRED_REFRESH_VALID
    assert resolution.refreshed

    logout = await manager.logout(store, origin=ORIGIN)
    assert logout.provider_logout
    assert await manager.resolve_session(store) is None
    # Discovery was fetched once and served from cache afterwards
    assert len(idp.requests_to("/.well-known/openid-configuration")) == 1


@pytest.mark.asyncio
async def test_session_status_serializes(
    manager: KeycloakSessionManager,
    store: MemoryCredentialStore,
    idp: FakeIdP,
    token_payload: Callable[..., dict[str, Any]],
) -> None:
    redirect = await manager.start_login(store, origin=ORIGIN)
    payload = token_payload()
    idp.queue_tokens(payload)
    await manager.handle_callback(store, {"code": "c", "state": redirect.state}, origin=ORIGIN)

    body = (await manager.session_status(store)).model_dump(mode="json")

    assert body["authenticated"] is True
    assert body["access_token"] == payload["access_token"]
    assert body["user"]["roles"] == ["offline_access", "admin", "editor"]


@pytest.mark.asyncio
async def test_cookie_prefix_from_config(
    http_client: httpx.AsyncClient, clock: FakeClock, store: MemoryCredentialStore
) -> None:
    config = KeycloakConfig(url="https://idp.test", realm="demo", client_id="app", cookie_prefix="tenant1")
    manager = KeycloakSessionManager(config, client=http_client, clock=clock)

    await manager.start_login(store, origin=ORIGIN)

    assert store.get("tenant1_state") is not None
    assert store.get("kc_state") is None


@pytest.mark.asyncio
async def test_validate_bearer(
    manager: KeycloakSessionManager, make_token: Callable[..., str], bearer_claims: dict[str, Any]
) -> None:
    user = await manager.validate_bearer(f"Bearer {make_token(bearer_claims)}")

    assert user.sub == "user-123"
    assert user.roles == ["offline_access", "admin", "editor"]


@pytest.mark.asyncio
@pytest.mark.parametrize("header", ["", "Basic abc", "Bearer", "Bearer a b", "bearer"])
async def test_validate_bearer_malformed_header(manager: KeycloakSessionManager, idp: FakeIdP, header: str) -> None:
    with pytest.raises(TokenVerificationError, match="Authorization header"):
        await manager.validate_bearer(header)
    assert idp.requests == []


@pytest.mark.asyncio
async def test_validate_bearer_wrong_audience_is_not_downgraded(
    manager: KeycloakSessionManager, make_token: Callable[..., str], bearer_claims: dict[str, Any]
) -> None:
    token = make_token({**bearer_claims, "aud": "another-client"})
    with pytest.raises(InvalidAudienceError):
        await manager.validate_bearer(f"Bearer {token}")


@pytest.mark.asyncio
async def test_shared_discovery_cache_across_managers(
    config: KeycloakConfig, idp: FakeIdP, clock: FakeClock
) -> None:
    cache = DiscoveryCache()

    first = KeycloakSessionManager(config, client=idp.client(), discovery_cache=cache, clock=clock)
    second = KeycloakSessionManager(config, client=idp.client(), discovery_cache=cache, clock=clock)
    await first.discover()
    document = await second.discover()

    assert document.issuer == ISSUER
    assert len(idp.requests) == 1


@pytest.mark.asyncio
async def test_internal_client_closed_on_exit(config: KeycloakConfig) -> None:
    async with KeycloakSessionManager(config) as manager:
        client = manager._client
        assert not client.is_closed
        assert client.timeout.connect == config.http_timeout

    assert client.is_closed


@pytest.mark.asyncio
async def test_external_client_left_open(config: KeycloakConfig, http_client: httpx.AsyncClient) -> None:
    async with KeycloakSessionManager(config, client=http_client):
        pass

    assert not http_client.is_closed
