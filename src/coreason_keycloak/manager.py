# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

"""
KeycloakSessionManager component for orchestrating login, session resolution and logout.
"""

import re
import time
from collections.abc import Callable, Mapping
from typing import Any

import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from coreason_keycloak.cache import DiscoveryCache, JWKSCache
from coreason_keycloak.config import KeycloakConfig
from coreason_keycloak.discovery import EndpointDiscovery
from coreason_keycloak.exceptions import TokenVerificationError
from coreason_keycloak.flows import AuthFlows
from coreason_keycloak.jwt_processor import RemoteKeySet, TokenVerifier, extract_user
from coreason_keycloak.models import (
    AuthorizationRedirect,
    CallbackResult,
    KeycloakUser,
    LogoutRedirect,
    Session,
    SessionStatus,
)
from coreason_keycloak.models_internal import DiscoveryDocument
from coreason_keycloak.pkce import CryptoProvider, PKCEGenerator
from coreason_keycloak.session import SessionResolution, SessionResolver
from coreason_keycloak.store import CredentialStore, CredentialStoreAdapter
from coreason_keycloak.token_client import TokenExchangeClient

BEARER_PATTERN = re.compile(r"^Bearer\s+(\S+)$")


class KeycloakSessionManager:
    """
    Async facade over the relying-party components (The Core).
    Handles resources via async context manager.

    Every request-scoped method takes the caller's CredentialStore; the manager itself
    holds no per-user state and may be shared across requests.
    """

    def __init__(
        self,
        config: KeycloakConfig,
        client: httpx.AsyncClient | None = None,
        discovery_cache: DiscoveryCache | None = None,
        jwks_cache: JWKSCache | None = None,
        crypto: CryptoProvider | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the KeycloakSessionManager.

        Args:
            config: The provider configuration.
            client: External async client (optional). If not provided, one is created with `config.http_timeout`.
            discovery_cache: Shared discovery cache (optional), e.g. one per process across tenants.
            jwks_cache: Shared signing-key cache (optional).
            crypto: Randomness and SHA-256 provider for PKCE (optional).
            clock: Epoch-seconds clock.
        """
        self.config = config
        self._internal_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=config.http_timeout)

        # Instrument the client for distributed tracing
        HTTPXClientInstrumentor().instrument_client(self._client)

        self.discovery = EndpointDiscovery(self._client, cache=discovery_cache)
        self.token_client = TokenExchangeClient(self._client, self.discovery, clock=clock)
        self.verifier = TokenVerifier(self.discovery, RemoteKeySet(self._client, cache=jwks_cache), clock=clock)
        self.resolver = SessionResolver(config, self.token_client, clock=clock)
        self.flows = AuthFlows(config, self.discovery, self.token_client, PKCEGenerator(crypto))

    async def __aenter__(self) -> "KeycloakSessionManager":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client:
            await self._client.aclose()

    def credentials(self, store: CredentialStore) -> CredentialStoreAdapter:
        """Wraps a caller's store with this tenant's key prefix."""
        return CredentialStoreAdapter(store, prefix=self.config.cookie_prefix)

    async def discover(self) -> DiscoveryDocument:
        """
        Returns the realm's discovery document.

        Raises:
            DiscoveryError: If the document cannot be fetched or is incomplete.
        """
        return await self.discovery.resolve(self.config.url, self.config.realm)

    async def start_login(
        self, store: CredentialStore, return_to: str | None = "/", origin: str | None = None
    ) -> AuthorizationRedirect:
        return await self.flows.start_login(self.credentials(store), return_to=return_to, origin=origin)

    async def handle_callback(
        self, store: CredentialStore, params: Mapping[str, str], origin: str | None = None
    ) -> CallbackResult:
        return await self.flows.handle_callback(self.credentials(store), params, origin=origin)

    async def logout(
        self, store: CredentialStore, return_to: str | None = None, origin: str | None = None
    ) -> LogoutRedirect:
        return await self.flows.logout(self.credentials(store), return_to=return_to, origin=origin)

    async def evaluate_session(self, store: CredentialStore) -> SessionResolution:
        """Resolves the session and reports how (state, refresh, absorbed error)."""
        return await self.resolver.evaluate(self.credentials(store))

    async def resolve_session(self, store: CredentialStore) -> Session | None:
        """
        Returns the caller's session, refreshing the access token when needed.

        Args:
            store: The caller's credential store.

        Returns:
            Session | None: None when unauthenticated (including a failed refresh).
        """
        return await self.resolver.resolve(self.credentials(store))

    async def session_status(self, store: CredentialStore) -> SessionStatus:
        """JSON-ready form of `resolve_session`."""
        return SessionStatus.from_session(await self.resolve_session(store))

    async def verify_token(self, token: str) -> dict[str, Any]:
        """
        Verifies a JWT against the realm's signing keys, issuer and this client's audience.

        Raises:
            TokenVerificationError: Or one of its subclasses, if the token is not valid.
            DiscoveryError: If realm metadata or keys cannot be fetched.
        """
        return await self.verifier.verify(token, self.config.url, self.config.realm, self.config.client_id)

    async def validate_bearer(self, auth_header: str) -> KeycloakUser:
        """
        Validates the Bearer token from an Authorization header and returns its user.

        Args:
            auth_header: The raw 'Authorization' header value (e.g., "Bearer <token>").

        Returns:
            KeycloakUser: The verified user.

        Raises:
            TokenVerificationError: If the header is malformed, missing, or the token is invalid.
            TokenExpiredError: If the token has expired.
            InvalidAudienceError: If the token audience does not contain the client ID.
            SignatureVerificationError: If the token signature is invalid.
            IdentityMappingError: If the verified claims have no subject.
            DiscoveryError: If realm metadata or keys cannot be fetched.
        """
        if not auth_header:
            raise TokenVerificationError("Missing Authorization header.")

        # Strict regex validation to avoid raw string splitting
        match = BEARER_PATTERN.match(auth_header.strip())
        if not match:
            raise TokenVerificationError("Invalid Authorization header format. Must start with 'Bearer '.")

        claims = await self.verify_token(match.group(1))
        return extract_user(claims, self.config.client_id)
