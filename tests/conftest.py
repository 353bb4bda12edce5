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
from urllib.parse import parse_qsl

import httpx
import pytest
from authlib.jose import JsonWebKey, jwt

from coreason_keycloak.config import KeycloakConfig

BASE_URL = "https://idp.test"
REALM = "demo"
CLIENT_ID = "app"
ISSUER = f"{BASE_URL}/realms/{REALM}"
OIDC_BASE = f"{ISSUER}/protocol/openid-connect"
NOW = 1_700_000_000.0


def discovery_document(issuer: str = ISSUER) -> dict[str, Any]:
    base = f"{issuer}/protocol/openid-connect"
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{base}/auth",
        "token_endpoint": f"{base}/token",
        "end_session_endpoint": f"{base}/logout",
        "jwks_uri": f"{base}/certs",
        "userinfo_endpoint": f"{base}/userinfo",
    }


def form_of(request: httpx.Request) -> dict[str, str]:
    return dict(parse_qsl(request.content.decode("utf-8")))


class FakeClock:
    """Settable epoch clock shared by stores, caches and token normalization."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdP:
    """
    Wire-level Keycloak stand-in for httpx.MockTransport.

    Token endpoint responses are queued; an empty queue answers invalid_grant.
    """

    def __init__(self, key: Any) -> None:
        self.discovery: dict[str, Any] = discovery_document()
        self.discovery_status = 200
        self.jwks: dict[str, Any] = {"keys": [key.as_dict(is_private=False)]}
        self.token_responses: list[httpx.Response] = []
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(self.discovery_status, json=self.discovery)
        if path.endswith("/certs"):
            return httpx.Response(200, json=self.jwks)
        if path.endswith("/token"):
            if not self.token_responses:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return self.token_responses.pop(0)
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def requests_to(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def queue_tokens(self, payload: dict[str, Any], status_code: int = 200) -> None:
        self.token_responses.append(httpx.Response(status_code, json=payload))


@pytest.fixture
def config() -> KeycloakConfig:
    return KeycloakConfig(url=BASE_URL, realm=REALM, client_id=CLIENT_ID)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="session")
def signing_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture
def make_token(signing_key: Any) -> Callable[..., str]:
    """Mints an RS256 JWT; `key` and `headers` override the defaults."""

    def _make(claims: dict[str, Any], key: Any = None, headers: dict[str, Any] | None = None) -> str:
        if key is None:
            key = signing_key
        if headers is None:
            headers = {"alg": "RS256", "kid": key.as_dict()["kid"]}
        return jwt.encode(headers, claims, key).decode("utf-8")  # type: ignore[no-any-return]

    return _make


@pytest.fixture
def user_claims() -> dict[str, Any]:
    return {
        "sub": "user-123",
        "preferred_username": "alice",
        "email": "alice@example.com",
        "email_verified": True,
        "realm_access": {"roles": ["offline_access", "admin"]},
        "resource_access": {CLIENT_ID: {"roles": ["editor", "admin"]}, "other": {"roles": ["ignored"]}},
    }


@pytest.fixture
def token_payload(make_token: Callable[..., str], user_claims: dict[str, Any]) -> Callable[..., dict[str, Any]]:
    """Builds a token-endpoint JSON body whose tokens carry `user_claims`."""

    def _payload(expires_in: int = 300, refresh_expires_in: int = 1800, **overrides: Any) -> dict[str, Any]:
        claims = {**user_claims, "iss": ISSUER, "aud": CLIENT_ID, "exp": int(NOW) + expires_in}
        payload: dict[str, Any] = {
            "access_token": make_token({**claims, "typ": "Bearer"}),
            "refresh_token": make_token({"sub": claims["sub"], "typ": "Refresh"}),
            "id_token": make_token({**claims, "typ": "ID"}),
            "token_type": "Bearer",
            "expires_in": expires_in,
            "refresh_expires_in": refresh_expires_in,
        }
        payload.update(overrides)
        return payload

    return _payload


@pytest.fixture
def idp(signing_key: Any) -> FakeIdP:
    return FakeIdP(signing_key)


@pytest.fixture
def http_client(idp: FakeIdP) -> httpx.AsyncClient:
    return idp.client()
