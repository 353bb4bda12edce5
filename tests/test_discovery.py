# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import httpx
import pytest
from conftest import BASE_URL, ISSUER, REALM, FakeClock, FakeIdP

from coreason_keycloak.cache import DiscoveryCache
from coreason_keycloak.discovery import EndpointDiscovery, realm_url
from coreason_keycloak.exceptions import DiscoveryError
from coreason_keycloak.transport import MAX_RESPONSE_BYTES


def test_realm_url_strips_trailing_slash() -> None:
    assert realm_url("https://idp.test/", "demo") == "https://idp.test/realms/demo"


@pytest.mark.asyncio
async def test_resolve_fetches_well_known_document(idp: FakeIdP, http_client: httpx.AsyncClient) -> None:
    discovery = EndpointDiscovery(http_client)

    document = await discovery.resolve(BASE_URL, REALM)

    assert document.issuer == ISSUER
    assert document.token_endpoint == f"{ISSUER}/protocol/openid-connect/token"
    assert document.userinfo_endpoint is not None
    assert str(idp.requests[0].url) == f"{ISSUER}/.well-known/openid-configuration"


@pytest.mark.asyncio
async def test_resolve_uses_cache_within_ttl(idp: FakeIdP, http_client: httpx.AsyncClient, clock: FakeClock) -> None:
    discovery = EndpointDiscovery(http_client, cache=DiscoveryCache(clock=clock))

    first = await discovery.resolve(BASE_URL, REALM)
    clock.advance(299)
    second = await discovery.resolve(BASE_URL + "/", REALM)

    assert first is second
    assert len(idp.requests) == 1


@pytest.mark.asyncio
async def test_resolve_refetches_after_ttl(idp: FakeIdP, http_client: httpx.AsyncClient, clock: FakeClock) -> None:
    discovery = EndpointDiscovery(http_client, cache=DiscoveryCache(clock=clock))

    await discovery.resolve(BASE_URL, REALM)
    clock.advance(300)
    await discovery.resolve(BASE_URL, REALM)

    assert len(idp.requests) == 2


@pytest.mark.asyncio
async def test_cache_is_keyed_by_realm(idp: FakeIdP, http_client: httpx.AsyncClient) -> None:
    cache = DiscoveryCache()
    discovery = EndpointDiscovery(http_client, cache=cache)

    await discovery.resolve(BASE_URL, REALM)
    await discovery.resolve(BASE_URL, "other")

    assert len(idp.requests) == 2
    assert len(cache) == 2


@pytest.mark.asyncio
async def test_shared_cache_across_instances(idp: FakeIdP) -> None:
    cache = DiscoveryCache()

    await EndpointDiscovery(idp.client(), cache=cache).resolve(BASE_URL, REALM)
    await EndpointDiscovery(idp.client(), cache=cache).resolve(BASE_URL, REALM)

    assert len(idp.requests) == 1


@pytest.mark.asyncio
async def test_missing_jwks_uri_raises_and_caches_nothing(idp: FakeIdP, http_client: httpx.AsyncClient) -> None:
    del idp.discovery["jwks_uri"]
    cache = DiscoveryCache()
    discovery = EndpointDiscovery(http_client, cache=cache)

    with pytest.raises(DiscoveryError, match="jwks_uri"):
        await discovery.resolve(BASE_URL, REALM)

    assert len(cache) == 0
    assert (BASE_URL, REALM) not in cache


@pytest.mark.asyncio
async def test_empty_required_endpoint_raises(idp: FakeIdP, http_client: httpx.AsyncClient) -> None:
    idp.discovery["end_session_endpoint"] = ""

    with pytest.raises(DiscoveryError, match="end_session_endpoint"):
        await EndpointDiscovery(http_client).resolve(BASE_URL, REALM)


@pytest.mark.asyncio
async def test_non_2xx_raises(idp: FakeIdP, http_client: httpx.AsyncClient) -> None:
    idp.discovery_status = 503

    with pytest.raises(DiscoveryError, match="HTTP 503"):
        await EndpointDiscovery(http_client).resolve(BASE_URL, REALM)


@pytest.mark.asyncio
async def test_invalid_json_raises() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")))

    with pytest.raises(DiscoveryError, match="Invalid JSON"):
        await EndpointDiscovery(client).resolve(BASE_URL, REALM)


@pytest.mark.asyncio
async def test_non_object_json_raises() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["a"])))

    with pytest.raises(DiscoveryError, match="not a JSON object"):
        await EndpointDiscovery(client).resolve(BASE_URL, REALM)


@pytest.mark.asyncio
async def test_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    with pytest.raises(DiscoveryError, match="connection refused"):
        await EndpointDiscovery(client).resolve(BASE_URL, REALM)


@pytest.mark.asyncio
async def test_oversized_document_raises() -> None:
    body = b"x" * (MAX_RESPONSE_BYTES + 1)
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)))

    with pytest.raises(DiscoveryError, match="too large"):
        await EndpointDiscovery(client).resolve(BASE_URL, REALM)


@pytest.mark.asyncio
async def test_clear_cache_forces_refetch(idp: FakeIdP, http_client: httpx.AsyncClient) -> None:
    discovery = EndpointDiscovery(http_client)

    await discovery.resolve(BASE_URL, REALM)
    discovery.clear_cache()
    await discovery.resolve(BASE_URL, REALM)

    assert len(idp.requests) == 2
