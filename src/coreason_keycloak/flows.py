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
Authorization Code + PKCE flow orchestration: login start, callback, logout.
"""

import hmac
from collections.abc import Mapping
from urllib.parse import urlsplit

import httpx

from coreason_keycloak.config import KeycloakConfig
from coreason_keycloak.discovery import EndpointDiscovery
from coreason_keycloak.exceptions import CallbackError, CSRFError, DiscoveryError, ProviderCallbackError
from coreason_keycloak.models import AuthorizationRedirect, CallbackResult, LogoutRedirect
from coreason_keycloak.pkce import PKCEGenerator
from coreason_keycloak.store import CredentialStoreAdapter
from coreason_keycloak.token_client import TokenExchangeClient
from coreason_keycloak.utils.logger import logger

DEFAULT_RETURN_TO = "/"


def resolve_redirect_uri(config: KeycloakConfig, origin: str | None = None) -> str:
    """
    The callback URL: the configured one, else {origin}{auth_base_path}/callback.

    Raises:
        ValueError: If neither a configured redirect_uri nor an origin is available.
    """
    if config.redirect_uri:
        return config.redirect_uri
    if not origin:
        raise ValueError("redirect_uri is not configured and no request origin was given")
    base_path = config.auth_base_path.rstrip("/")
    return f"{origin.rstrip('/')}{base_path}/callback"


def sanitize_return_to(value: str | None) -> str:
    """
    Accepts only same-site relative paths ("/dashboard?tab=1"); anything else becomes "/".
    Blocks open redirects via absolute or protocol-relative URLs.
    """
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return DEFAULT_RETURN_TO
    parts = urlsplit(value)
    if parts.scheme or parts.netloc:
        return DEFAULT_RETURN_TO
    return value


def states_match(received: str | None, expected: str | None) -> bool:
    """Constant-time comparison; absence on either side is a mismatch."""
    if not received or not expected:
        return False
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def _same_origin(url: str, origin: str) -> bool:
    target, base = urlsplit(url), urlsplit(origin)
    return "\\" not in url and bool(target.scheme) and (target.scheme, target.netloc) == (base.scheme, base.netloc)


def resolve_post_logout_uri(config: KeycloakConfig, return_to: str | None = None, origin: str | None = None) -> str:
    """
    Where the browser lands after logout.

    An explicit `return_to` is honored only as a relative path (joined to `origin`), an
    absolute URL on `origin`, or the configured post-logout URI. Otherwise the configured
    URI, then `origin`, then "/" is used.
    """
    fallback = config.post_logout_redirect_uri or origin or DEFAULT_RETURN_TO
    if not return_to:
        return fallback
    if return_to == config.post_logout_redirect_uri:
        return return_to
    if sanitize_return_to(return_to) == return_to:
        return f"{origin.rstrip('/')}{return_to}" if origin else return_to
    if origin and _same_origin(return_to, origin):
        return return_to
    logger.warning("Ignoring post-logout return_to outside the request origin")
    return fallback


class AuthFlows:
    """
    Sequences the browser-facing steps of the Authorization Code flow.

    Attributes:
        config (KeycloakConfig): Provider settings.
        discovery (EndpointDiscovery): Resolves authorization / end-session endpoints.
        token_client (TokenExchangeClient): Exchanges the authorization code.
        pkce (PKCEGenerator): Verifier, challenge and state source.
    """

    def __init__(
        self,
        config: KeycloakConfig,
        discovery: EndpointDiscovery,
        token_client: TokenExchangeClient,
        pkce: PKCEGenerator | None = None,
    ) -> None:
        self.config = config
        self.discovery = discovery
        self.token_client = token_client
        self.pkce = pkce or PKCEGenerator()

    async def start_login(
        self,
        credentials: CredentialStoreAdapter,
        return_to: str | None = DEFAULT_RETURN_TO,
        origin: str | None = None,
    ) -> AuthorizationRedirect:
        """
        Generates PKCE material, persists it for the callback, and builds the authorization URL.

        Args:
            credentials: Adapter over the caller's credential store.
            return_to: Post-login destination (relative path).
            origin: Request origin, used when no redirect_uri is configured.

        Returns:
            AuthorizationRedirect: The URL to redirect the browser to.

        Raises:
            DiscoveryError: If the authorization endpoint cannot be discovered.
        """
        endpoints = await self.discovery.resolve(self.config.url, self.config.realm)
        code_verifier, code_challenge = self.pkce.generate_pair()
        state = self.pkce.generate_state()
        redirect_uri = resolve_redirect_uri(self.config, origin)

        credentials.save_pkce(code_verifier, state, sanitize_return_to(return_to))

        url = httpx.URL(endpoints.authorization_endpoint).copy_merge_params(
            {
                "client_id": self.config.client_id,
                "response_type": "code",
                "redirect_uri": redirect_uri,
                "scope": " ".join(self.config.requested_scopes),
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            }
        )
        logger.info(f"Starting login for client '{self.config.client_id}' in realm '{self.config.realm}'")
        return AuthorizationRedirect(url=str(url), state=state, redirect_uri=redirect_uri)

    async def handle_callback(
        self,
        credentials: CredentialStoreAdapter,
        params: Mapping[str, str],
        origin: str | None = None,
    ) -> CallbackResult:
        """
        Validates the provider's redirect and exchanges the code for tokens.

        Args:
            credentials: Adapter over the caller's credential store.
            params: Query parameters of the callback request.
            origin: Request origin, used when no redirect_uri is configured.

        Returns:
            CallbackResult: Persisted tokens and where to send the browser.

        Raises:
            ProviderCallbackError: If the provider returned an 'error' parameter.
            CallbackError: If 'code' or the persisted code verifier is missing.
            CSRFError: If 'state' is absent or differs from the persisted state.
            DiscoveryError: If the token endpoint cannot be discovered.
            TokenExchangeError: If the token endpoint rejects the code.
        """
        error = params.get("error")
        if error:
            logger.warning(f"Identity provider returned error on callback: {error}")
            raise ProviderCallbackError(error, params.get("error_description"))

        code = params.get("code")
        if not code:
            raise CallbackError("Missing authorization code")

        pending = credentials.load_pkce()
        if not states_match(params.get("state"), pending.state):
            logger.warning("Callback state mismatch, rejecting (possible CSRF)")
            raise CSRFError("Invalid state parameter - possible CSRF attack")

        if not pending.code_verifier:
            raise CallbackError("Missing PKCE code verifier - the login may have expired")

        redirect_uri = resolve_redirect_uri(self.config, origin)
        try:
            tokens = await self.token_client.exchange_code(self.config, code, pending.code_verifier, redirect_uri)
            credentials.save_tokens(tokens)
        finally:
            # The code and verifier are single-use whatever the outcome
            credentials.clear_pkce()

        logger.info("Login completed; tokens persisted")
        return CallbackResult(redirect_to=sanitize_return_to(pending.return_to), tokens=tokens)

    async def logout(
        self,
        credentials: CredentialStoreAdapter,
        return_to: str | None = None,
        origin: str | None = None,
    ) -> LogoutRedirect:
        """
        Clears local credentials and builds the provider logout redirect.

        Never raises for an unreachable provider: on DiscoveryError the browser is sent
        straight to the post-logout URI.

        Args:
            credentials: Adapter over the caller's credential store.
            return_to: Post-logout URI overriding the configured one; must be a relative path
                or on `origin`, anything else is ignored.
            origin: Request origin, the last-resort post-logout URI.

        Returns:
            LogoutRedirect: Where to send the browser.
        """
        post_logout_redirect_uri = resolve_post_logout_uri(self.config, return_to, origin)

        # Read before clearing: the provider wants it as a logout hint
        id_token = credentials.load_tokens().id_token
        credentials.clear_tokens()

        try:
            endpoints = await self.discovery.resolve(self.config.url, self.config.realm)
        except DiscoveryError as e:
            logger.warning(f"Provider logout unavailable, falling back to local redirect: {e}")
            return LogoutRedirect(url=post_logout_redirect_uri, provider_logout=False)

        params = {
            "post_logout_redirect_uri": post_logout_redirect_uri,
            "client_id": self.config.client_id,
        }
        if id_token:
            params["id_token_hint"] = id_token

        url = httpx.URL(endpoints.end_session_endpoint).copy_merge_params(params)
        logger.info("Local session cleared; redirecting to provider logout")
        return LogoutRedirect(url=str(url), provider_logout=True)
