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
SessionResolver: decides from stored (possibly stale) credentials whether the caller is
authenticated, needs a token refresh, or has no session.
"""

import time
from collections.abc import Callable
from enum import StrEnum

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, ConfigDict

from coreason_keycloak.config import KeycloakConfig
from coreason_keycloak.exceptions import CoreasonKeycloakError, IdentityMappingError, TokenDecodeError
from coreason_keycloak.jwt_processor import decode_token, extract_user, is_expired, merge_claims
from coreason_keycloak.models import Session, StoredCredentials
from coreason_keycloak.store import CredentialStoreAdapter
from coreason_keycloak.token_client import TokenExchangeClient, retain_refresh_token
from coreason_keycloak.utils.logger import logger

tracer = trace.get_tracer(__name__)


class SessionState(StrEnum):
    NO_CREDENTIALS = "no_credentials"
    ACCESS_VALID = "access_valid"
    ACCESS_EXPIRED_REFRESH_VALID = "access_expired_refresh_valid"
    ACCESS_EXPIRED_REFRESH_EXPIRED = "access_expired_refresh_expired"


class SessionResolution(BaseModel):
    """
    Outcome of one resolution.

    Attributes:
        state: The state the stored credentials were classified into.
        session: The session, or None when unauthenticated.
        refreshed: True when a refresh exchange produced (and persisted) new tokens.
        error: Why a session could not be produced despite credentials (refresh failure,
            undecodable token). A failed refresh is a normal outcome, not an exception.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    state: SessionState
    session: Session | None = None
    refreshed: bool = False
    error: Exception | None = None


def build_session(
    access_token: str,
    id_token: str | None,
    access_expires_at: int | None,
    refresh_expires_at: int | None,
    client_id: str,
) -> Session:
    """
    Builds a Session from tokens already trusted by the exchange that issued them.

    ID token claims are preferred; the access token supplies whatever the ID token omits
    (usually realm_access / resource_access).

    Raises:
        TokenDecodeError: If a token is not a well-formed JWT.
        IdentityMappingError: If the merged claims have no subject.
    """
    access_claims = decode_token(access_token)
    claims = merge_claims(decode_token(id_token), access_claims) if id_token else access_claims

    return Session(
        user=extract_user(claims, client_id),
        access_token=access_token,
        id_token=id_token or access_token,
        access_expires_at=access_expires_at or 0,
        refresh_expires_at=refresh_expires_at or 0,
    )


def classify(stored: StoredCredentials, refresh_margin: int, now: float | None = None) -> SessionState:
    """
    Pure classification of stored credentials; performs no I/O.

    An access token without an expiry stamp is treated as expired.
    A refresh token without an expiry stamp is treated as still valid and left to the provider to judge.
    """
    if not stored.access_token and not stored.refresh_token:
        return SessionState.NO_CREDENTIALS

    if (
        stored.access_token
        and stored.access_expires_at is not None
        and not is_expired(stored.access_expires_at, refresh_margin, now=now)
    ):
        return SessionState.ACCESS_VALID

    if not stored.refresh_token:
        return SessionState.ACCESS_EXPIRED_REFRESH_EXPIRED

    if stored.refresh_expires_at is not None and is_expired(stored.refresh_expires_at, 0, now=now):
        return SessionState.ACCESS_EXPIRED_REFRESH_EXPIRED

    return SessionState.ACCESS_EXPIRED_REFRESH_VALID


class SessionResolver:
    """
    The session state machine.

    Concurrent resolutions over the same expired credentials may each refresh; each
    produces an independently valid TokenSet, so no refresh lock is taken.
    """

    def __init__(
        self,
        config: KeycloakConfig,
        token_client: TokenExchangeClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the SessionResolver.

        Args:
            config: Provider settings (client ID, refresh margin).
            token_client: Used for the refresh exchange.
            clock: Epoch-seconds clock for expiry checks.
        """
        self.config = config
        self.token_client = token_client
        self._clock = clock

    async def resolve(self, credentials: CredentialStoreAdapter) -> Session | None:
        """Returns the caller's session, or None when unauthenticated."""
        return (await self.evaluate(credentials)).session

    async def evaluate(self, credentials: CredentialStoreAdapter) -> SessionResolution:
        """
        Classifies the stored credentials and acts on the result.

        Never deletes stored credentials: "session is invalid" and "clear storage" are
        the caller's separate decisions.

        Args:
            credentials: Adapter over the caller's credential store.

        Returns:
            SessionResolution: State, session (or None), and any absorbed error.
        """
        stored = credentials.load_tokens()
        state = classify(stored, self.config.refresh_margin_seconds, now=self._clock())

        with tracer.start_as_current_span("resolve_session") as span:
            span.set_attribute("session.state", state.value)

            if state is SessionState.ACCESS_VALID and stored.access_token:
                return self._from_stored(state, stored.access_token, stored)

            if state is SessionState.ACCESS_EXPIRED_REFRESH_VALID and stored.refresh_token:
                resolution = await self._refresh(credentials, stored.refresh_token, stored.refresh_expires_at)
                if resolution.error is not None:
                    span.set_status(Status(StatusCode.ERROR, str(resolution.error)))
                return resolution

            logger.debug(f"No session: {state.value}")
            return SessionResolution(state=state)

    def _from_stored(self, state: SessionState, access_token: str, stored: StoredCredentials) -> SessionResolution:
        try:
            session = build_session(
                access_token,
                stored.id_token,
                stored.access_expires_at,
                stored.refresh_expires_at,
                self.config.client_id,
            )
        except (TokenDecodeError, IdentityMappingError) as e:
            logger.warning(f"Stored credentials could not be decoded, treating as unauthenticated: {e}")
            return SessionResolution(state=state, error=e)
        return SessionResolution(state=state, session=session)

    async def _refresh(
        self, credentials: CredentialStoreAdapter, refresh_token: str, refresh_expires_at: int | None
    ) -> SessionResolution:
        state = SessionState.ACCESS_EXPIRED_REFRESH_VALID
        try:
            tokens = await self.token_client.refresh(self.config, refresh_token)
            # Providers that do not rotate refresh tokens omit it from the response
            tokens = retain_refresh_token(tokens, refresh_token, refresh_expires_at, int(self._clock()))
            session = build_session(
                tokens.access_token,
                tokens.id_token,
                tokens.access_expires_at,
                tokens.refresh_expires_at,
                self.config.client_id,
            )
        except CoreasonKeycloakError as e:
            # Stale credentials stay in place: the failure may be transient
            logger.warning(f"Session refresh failed, caller is unauthenticated for now: {e}")
            return SessionResolution(state=state, error=e)

        credentials.save_tokens(tokens)
        logger.info("Session refreshed; new access token persisted")
        return SessionResolution(state=state, session=session, refreshed=True)
