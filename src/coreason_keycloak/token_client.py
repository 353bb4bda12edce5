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
TokenExchangeClient component for the authorization_code and refresh_token grants.
"""

import time
from collections.abc import Callable

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_keycloak.config import KeycloakConfig
from coreason_keycloak.discovery import EndpointDiscovery
from coreason_keycloak.exceptions import OversizedResponseError, TokenExchangeError
from coreason_keycloak.models import TokenSet
from coreason_keycloak.models_internal import TokenEndpointResponse
from coreason_keycloak.transport import fetch_bounded
from coreason_keycloak.utils.logger import logger

tracer = trace.get_tracer(__name__)


def normalize_token_response(response: TokenEndpointResponse, now: int) -> TokenSet:
    """
    Converts relative lifetimes into absolute epoch-second expiries.

    Args:
        response: The validated token endpoint response.
        now: Current epoch seconds.

    Returns:
        TokenSet: access_expires_at = now + expires_in, refresh_expires_at = now + refresh_expires_in,
            or None for a refresh lifetime of 0 (offline token).
    """
    refresh_expires_at = now + response.refresh_expires_in if response.refresh_expires_in > 0 else None
    return TokenSet(
        access_token=response.access_token,
        refresh_token=response.refresh_token,
        id_token=response.id_token,
        token_type=response.token_type,
        expires_in=response.expires_in,
        refresh_expires_in=response.refresh_expires_in,
        access_expires_at=now + response.expires_in,
        refresh_expires_at=refresh_expires_at,
    )


def retain_refresh_token(tokens: TokenSet, refresh_token: str, refresh_expires_at: int | None, now: int) -> TokenSet:
    """
    Carries the current refresh token into a refresh result that did not rotate it.

    Args:
        tokens: The refresh grant result.
        refresh_token: The refresh token that was just redeemed.
        refresh_expires_at: Its stored expiry, None if it has none.
        now: Current epoch seconds.

    Returns:
        TokenSet: `tokens` unchanged when it carries its own refresh token.
    """
    if tokens.refresh_token is not None:
        return tokens
    remaining = max(refresh_expires_at - now, 0) if refresh_expires_at is not None else 0
    return tokens.model_copy(
        update={
            "refresh_token": refresh_token,
            "refresh_expires_in": remaining,
            "refresh_expires_at": refresh_expires_at,
        }
    )


class TokenExchangeClient:
    """
    Performs the two token-endpoint grants and normalizes their responses.

    No automatic retry: the caller decides the user-facing outcome of a TokenExchangeError.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        discovery: EndpointDiscovery,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the TokenExchangeClient.

        Args:
            client: The async HTTP client to use for requests.
            discovery: Resolves the realm's token endpoint.
            clock: Epoch-seconds clock used for expiry normalization.
        """
        self.client = client
        self.discovery = discovery
        self._clock = clock

    async def exchange_code(
        self,
        config: KeycloakConfig,
        code: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> TokenSet:
        """
        Exchanges an authorization code for tokens (grant_type=authorization_code).

        The verifier, never the challenge, is sent: it proves possession.

        Args:
            config: Provider settings.
            code: The authorization code from the callback.
            code_verifier: The PKCE verifier persisted at login start.
            redirect_uri: Must equal the redirect_uri sent at login start.

        Returns:
            TokenSet: The normalized tokens.

        Raises:
            DiscoveryError: If the token endpoint cannot be discovered.
            TokenExchangeError: If the token endpoint rejects the grant or cannot be reached.
        """
        data = {
            "grant_type": "authorization_code",
            "client_id": config.client_id,
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }
        return await self._request_tokens(config, data, "authorization_code")

    async def refresh(self, config: KeycloakConfig, refresh_token: str) -> TokenSet:
        """
        Exchanges a refresh token for a fresh token set (grant_type=refresh_token).

        Raises:
            DiscoveryError: If the token endpoint cannot be discovered.
            TokenExchangeError: If the token endpoint rejects the grant or cannot be reached.
        """
        data = {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "refresh_token": refresh_token,
        }
        return await self._request_tokens(config, data, "refresh_token")

    async def _request_tokens(self, config: KeycloakConfig, data: dict[str, str], grant: str) -> TokenSet:
        if config.client_secret is not None:
            data["client_secret"] = config.client_secret.get_secret_value()

        endpoints = await self.discovery.resolve(config.url, config.realm)
        url = endpoints.token_endpoint

        with tracer.start_as_current_span("token_exchange") as span:
            span.set_attribute("oauth.grant_type", grant)
            try:
                tokens = await self._post(url, data, grant)
            except TokenExchangeError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                if e.status_code is not None:
                    span.set_attribute("http.status_code", e.status_code)
                raise
            span.set_status(Status(StatusCode.OK))

        logger.info(f"Token endpoint accepted {grant} grant; access token valid for {tokens.expires_in}s")
        return tokens

    async def _post(self, url: str, data: dict[str, str], grant: str) -> TokenSet:
        try:
            response = await fetch_bounded(self.client, "POST", url, data=data)
        except (httpx.HTTPError, OversizedResponseError) as e:
            logger.error(f"Token request ({grant}) failed: {e}")
            raise TokenExchangeError(f"Token request ({grant}) failed: {e}") from e

        if not response.is_success:
            logger.warning(f"Token endpoint rejected {grant} grant with HTTP {response.status_code}")
            raise TokenExchangeError(
                f"Token exchange failed ({grant}): HTTP {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = TokenEndpointResponse.model_validate(response.json_body())
        except (ValueError, ValidationError) as e:
            raise TokenExchangeError(
                f"Invalid token response ({grant}): {e}",
                status_code=response.status_code,
                body=response.text,
            ) from e

        return normalize_token_response(payload, int(self._clock()))
