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
JWT processing: unverified claim decoding, signature verification against the realm's
remote key set, Keycloak role extraction and expiry checks.
"""

import time
from collections.abc import Callable, Sequence
from typing import Any, cast

import anyio
import httpx
from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebToken
from authlib.jose.errors import (
    BadSignatureError,
    ExpiredTokenError,
    InvalidClaimError,
    JoseError,
    MissingClaimError,
)
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_keycloak.cache import JWKSCache
from coreason_keycloak.discovery import EndpointDiscovery
from coreason_keycloak.exceptions import (
    CoreasonKeycloakError,
    DiscoveryError,
    IdentityMappingError,
    InvalidAudienceError,
    InvalidIssuerError,
    OversizedResponseError,
    SignatureVerificationError,
    TokenDecodeError,
    TokenExpiredError,
    TokenVerificationError,
)
from coreason_keycloak.models import KeycloakClaims, KeycloakUser
from coreason_keycloak.transport import fetch_bounded
from coreason_keycloak.utils.logger import logger

tracer = trace.get_tracer(__name__)

DEFAULT_ALGORITHMS: tuple[str, ...] = ("RS256", "RS384", "RS512", "PS256", "ES256")


def decode_token(token: str) -> dict[str, Any]:
    """
    Decodes a JWT payload WITHOUT verifying its signature.

    Only for tokens whose authenticity was established by the exchange that issued them
    (e.g. tokens this process received directly from the token endpoint).

    Args:
        token: Compact JWT (header.payload.signature).

    Returns:
        dict[str, Any]: The payload claims.

    Raises:
        TokenDecodeError: If the token is not a well-formed JWT with a JSON object payload.
    """
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise TokenDecodeError(f"Malformed JWT: expected 3 segments, got {len(parts)}")
    try:
        claims = json_loads(urlsafe_b64decode(to_bytes(parts[1])).decode("utf-8"))
    except ValueError as e:
        raise TokenDecodeError(f"Malformed JWT payload: {e}") from e
    if not isinstance(claims, dict):
        raise TokenDecodeError("Malformed JWT payload: not a JSON object")
    return claims


def merge_claims(id_claims: dict[str, Any], access_claims: dict[str, Any]) -> dict[str, Any]:
    """
    Single merge of the two claim sets: ID token claims win on collision,
    access token claims fill the gaps (typically the role claims).
    """
    return {**access_claims, **id_claims}


def extract_user(claims: dict[str, Any], client_id: str) -> KeycloakUser:
    """
    Projects claims onto a KeycloakUser.

    Args:
        claims: Decoded (or verified) claims.
        client_id: Selects resource_access[client_id].roles.

    Returns:
        KeycloakUser: roles is the deduplicated union of realm and client roles, realm roles first.

    Raises:
        IdentityMappingError: If 'sub' is missing or the role claims are malformed.
    """
    try:
        parsed = KeycloakClaims.model_validate(claims)
    except ValidationError as e:
        raise IdentityMappingError(f"Claims cannot be mapped to a user: {e}") from e

    realm_roles = parsed.realm_roles
    client_roles = parsed.client_roles(client_id)

    return KeycloakUser(
        sub=parsed.sub,
        name=parsed.name,
        given_name=parsed.given_name,
        family_name=parsed.family_name,
        preferred_username=parsed.preferred_username,
        email=parsed.email,
        email_verified=parsed.email_verified,
        roles=list(dict.fromkeys([*realm_roles, *client_roles])),
        realm_roles=realm_roles,
        client_roles=client_roles,
        raw_claims=dict(claims),
    )


def is_expired(expires_at: int | float, margin_seconds: int | float = 60, now: float | None = None) -> bool:
    """
    True when now >= expires_at - margin_seconds.

    The margin lets a still-valid token be refreshed before it can expire mid-request.
    """
    current = int(time.time()) if now is None else now
    return current >= expires_at - margin_seconds


class RemoteKeySet:
    """
    Fetches and caches signing-key sets by jwks_uri.

    Keys are kept until a verification misses (unknown kid / bad signature), which forces
    a refresh. Forced refreshes are rate-limited by `refresh_cooldown`.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: JWKSCache | None = None,
        refresh_cooldown: float = 30.0,
    ) -> None:
        self.client = client
        self.cache = cache if cache is not None else JWKSCache()
        self.refresh_cooldown = refresh_cooldown
        self._lock: anyio.Lock | None = None

    async def get(self, jwks_uri: str, force_refresh: bool = False) -> dict[str, Any]:
        """
        Returns the key set, using the cache unless `force_refresh`.

        Raises:
            DiscoveryError: If the key set cannot be fetched or is malformed.
        """
        if not force_refresh:
            cached = self.cache.get(jwks_uri)
            if cached is not None:
                return cached

        if self._lock is None:
            self._lock = anyio.Lock()

        async with self._lock:
            cached = self.cache.get(jwks_uri)
            age = self.cache.age(jwks_uri)

            if cached is not None and not force_refresh:
                return cached

            if cached is not None and age is not None and age < self.refresh_cooldown:
                logger.warning("JWKS refresh cooldown active. Returning cached keys despite force_refresh request.")
                return cached

            jwks = await self._fetch(jwks_uri)
            self.cache.set(jwks_uri, jwks)
            return jwks

    async def _fetch(self, jwks_uri: str) -> dict[str, Any]:
        try:
            response = await fetch_bounded(self.client, "GET", jwks_uri)
        except (httpx.HTTPError, OversizedResponseError) as e:
            raise DiscoveryError(f"Failed to fetch JWKS from {jwks_uri}: {e}") from e

        if not response.is_success:
            raise DiscoveryError(f"Failed to fetch JWKS from {jwks_uri}: HTTP {response.status_code}")

        try:
            jwks = response.json_body()
        except ValueError as e:
            raise DiscoveryError(f"Invalid JSON in JWKS from {jwks_uri}: {e}") from e

        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise DiscoveryError(f"JWKS from {jwks_uri} does not contain a 'keys' list")

        logger.debug(f"Fetched {len(jwks['keys'])} signing key(s) from {jwks_uri}")
        return jwks


class TokenVerifier:
    """
    Verifies tokens whose provenance is not already trusted (e.g. bearer tokens from external callers).

    Checks signature against the realm JWKS, issuer == discovered issuer, audience contains
    the client ID, and exp/nbf.
    """

    def __init__(
        self,
        discovery: EndpointDiscovery,
        key_set: RemoteKeySet,
        allowed_algorithms: Sequence[str] = DEFAULT_ALGORITHMS,
        leeway: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the TokenVerifier.

        Args:
            discovery: Resolves the realm's issuer and jwks_uri.
            key_set: Remote key-set cache.
            allowed_algorithms: Accepted JWS algorithms; anything else is rejected.
            leeway: Acceptable clock skew in seconds.
            clock: Epoch-seconds clock for exp/nbf checks.
        """
        self.discovery = discovery
        self.key_set = key_set
        self.allowed_algorithms = list(allowed_algorithms)
        self.leeway = leeway
        self._clock = clock
        # A dedicated instance so algorithms outside the allow-list are rejected
        self.jwt = JsonWebToken(self.allowed_algorithms)

    async def verify(self, token: str, base_url: str, realm: str, client_id: str) -> dict[str, Any]:
        """
        Validates the JWT signature and claims.

        Emits an OpenTelemetry span `verify_token`.

        Args:
            token: The raw JWT (without "Bearer ").
            base_url: Keycloak base URL.
            realm: The realm name.
            client_id: Expected audience.

        Returns:
            dict[str, Any]: The verified claims.

        Raises:
            TokenExpiredError: If the token has expired.
            InvalidAudienceError: If the audience does not contain the client ID.
            InvalidIssuerError: If the issuer is not the realm issuer.
            SignatureVerificationError: If the signature is invalid or no key matches.
            TokenVerificationError: For any other claim or format failure.
            DiscoveryError: If the realm metadata or key set cannot be fetched.
        """
        with tracer.start_as_current_span("verify_token") as span:
            token = token.strip()

            try:
                endpoints = await self.discovery.resolve(base_url, realm)
                claims_options = {
                    "exp": {"essential": True},
                    "nbf": {"essential": False},
                    "aud": {"essential": True, "value": client_id},
                    "iss": {"essential": True, "value": endpoints.issuer},
                }

                jwks = await self.key_set.get(endpoints.jwks_uri)
                try:
                    claims = self._decode(token, jwks, claims_options)
                except (ValueError, BadSignatureError):
                    # Unknown kid or bad signature: the realm may have rotated keys
                    logger.info("Verification failed with cached keys, refreshing JWKS and retrying...")
                    span.add_event("refreshing_jwks")
                    jwks = await self.key_set.get(endpoints.jwks_uri, force_refresh=True)
                    claims = self._decode(token, jwks, claims_options)

                span.set_status(Status(StatusCode.OK))
                logger.debug("Token verified against realm keys")
                return dict(claims)

            except ExpiredTokenError as e:
                self._fail(span, e, "Token expired")
                raise TokenExpiredError(f"Token has expired: {e}") from e
            except InvalidClaimError as e:
                self._fail(span, e, "Invalid claim")
                if "aud" in str(e):
                    raise InvalidAudienceError(f"Invalid audience: {e}") from e
                if "iss" in str(e):
                    raise InvalidIssuerError(f"Invalid issuer: {e}") from e
                raise TokenVerificationError(f"Invalid claim: {e}") from e
            except MissingClaimError as e:
                self._fail(span, e, "Missing claim")
                raise TokenVerificationError(f"Missing claim: {e}") from e
            except BadSignatureError as e:
                self._fail(span, e, "Bad signature")
                raise SignatureVerificationError(f"Invalid signature: {e}") from e
            except JoseError as e:
                self._fail(span, e, "JOSE error")
                raise TokenVerificationError(f"Token verification failed: {e}") from e
            except ValueError as e:
                # Authlib raises ValueError when no key in the set matches the token's kid
                self._fail(span, e, "No matching key")
                raise SignatureVerificationError(f"Invalid signature or key not found: {e}") from e
            except CoreasonKeycloakError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

    def _decode(self, token: str, jwks: dict[str, Any], claims_options: dict[str, Any]) -> Any:
        jwt_any = cast("Any", self.jwt)
        claims = jwt_any.decode(token, jwks, claims_options=claims_options)
        claims.validate(now=int(self._clock()), leeway=self.leeway)
        return claims

    @staticmethod
    def _fail(span: Any, exc: Exception, reason: str) -> None:
        logger.warning(f"Verification failed: {reason}")
        span.record_exception(exc)
        span.set_status(Status(StatusCode.ERROR, str(exc)))
