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
Credential store abstraction and the key layout used to persist tokens and PKCE state.
"""

import time
from collections.abc import Callable
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from coreason_keycloak.models import PKCEExchange, StoredCredentials, TokenSet
from coreason_keycloak.utils.logger import logger

PKCE_TTL_SECONDS = 300
# Storage lifetime of a refresh token the provider reports as non-expiring
UNBOUNDED_REFRESH_TTL_SECONDS = 30 * 24 * 3600


class CredentialStore(Protocol):
    """
    Per-caller key-value storage (typically browser cookies).

    `secret=True` maps to HttpOnly: the value must not be readable by client-side code.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, *, secret: bool, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


class StoredValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    secret: bool
    expires_at: float


class MemoryCredentialStore:
    """
    In-memory implementation of CredentialStore.
    Uses a dictionary with lazy expiry. Not suitable for distributed systems.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: dict[str, StoredValue] = {}

    def get(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._values[key]
            return None
        return entry.value

    def set(self, key: str, value: str, *, secret: bool, ttl_seconds: int) -> None:
        self._values[key] = StoredValue(value=value, secret=secret, expires_at=self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def is_secret(self, key: str) -> bool | None:
        """The secrecy flag a key was stored with, or None if absent."""
        entry = self._values.get(key)
        return entry.secret if entry else None

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None


class CredentialKeys(BaseModel):
    """Key names derived from a prefix."""

    model_config = ConfigDict(frozen=True)

    prefix: str

    @property
    def access_token(self) -> str:
        return f"{self.prefix}_at"

    @property
    def refresh_token(self) -> str:
        return f"{self.prefix}_rt"

    @property
    def id_token(self) -> str:
        return f"{self.prefix}_id"

    @property
    def access_expires_at(self) -> str:
        return f"{self.prefix}_exp"

    @property
    def refresh_expires_at(self) -> str:
        return f"{self.prefix}_rexp"

    @property
    def code_verifier(self) -> str:
        return f"{self.prefix}_cv"

    @property
    def state(self) -> str:
        return f"{self.prefix}_state"

    @property
    def return_to(self) -> str:
        return f"{self.prefix}_return"

    @property
    def session_keys(self) -> tuple[str, ...]:
        return (
            self.access_token,
            self.refresh_token,
            self.id_token,
            self.access_expires_at,
            self.refresh_expires_at,
        )

    @property
    def pkce_keys(self) -> tuple[str, ...]:
        return (self.code_verifier, self.state, self.return_to)


def _parse_epoch(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric expiry value in credential store")
        return None


class CredentialStoreAdapter:
    """
    Maps TokenSet and PKCEExchange records onto a CredentialStore.

    Tokens and PKCE values are secret; expiry stamps and the return-to path are not,
    so client-side code can check expiry without seeing a credential.
    """

    def __init__(self, store: CredentialStore, prefix: str = "kc") -> None:
        self.store = store
        self.keys = CredentialKeys(prefix=prefix)

    def save_tokens(self, tokens: TokenSet) -> None:
        """Full replacement of the stored token set."""
        keys = self.keys
        refresh_ttl = tokens.refresh_expires_in
        if tokens.refresh_expires_at is None:
            refresh_ttl = UNBOUNDED_REFRESH_TTL_SECONDS
        self.store.set(keys.access_token, tokens.access_token, secret=True, ttl_seconds=tokens.expires_in)
        if tokens.refresh_token is not None:
            self.store.set(keys.refresh_token, tokens.refresh_token, secret=True, ttl_seconds=refresh_ttl)
        else:
            self.store.delete(keys.refresh_token)
        if tokens.id_token is not None:
            self.store.set(keys.id_token, tokens.id_token, secret=True, ttl_seconds=tokens.expires_in)
        else:
            self.store.delete(keys.id_token)
        # Stamps outlive the access token so an expired access token can still be detected
        stamp_ttl = max(tokens.expires_in, refresh_ttl)
        self.store.set(keys.access_expires_at, str(tokens.access_expires_at), secret=False, ttl_seconds=stamp_ttl)
        if tokens.refresh_expires_at is not None:
            self.store.set(
                keys.refresh_expires_at, str(tokens.refresh_expires_at), secret=False, ttl_seconds=stamp_ttl
            )
        else:
            self.store.delete(keys.refresh_expires_at)

    def load_tokens(self) -> StoredCredentials:
        keys = self.keys
        return StoredCredentials(
            access_token=self.store.get(keys.access_token),
            refresh_token=self.store.get(keys.refresh_token),
            id_token=self.store.get(keys.id_token),
            access_expires_at=_parse_epoch(self.store.get(keys.access_expires_at)),
            refresh_expires_at=_parse_epoch(self.store.get(keys.refresh_expires_at)),
        )

    def clear_tokens(self) -> None:
        for key in self.keys.session_keys:
            self.store.delete(key)

    def save_pkce(self, code_verifier: str, state: str, return_to: str) -> None:
        keys = self.keys
        self.store.set(keys.code_verifier, code_verifier, secret=True, ttl_seconds=PKCE_TTL_SECONDS)
        self.store.set(keys.state, state, secret=True, ttl_seconds=PKCE_TTL_SECONDS)
        self.store.set(keys.return_to, return_to, secret=False, ttl_seconds=PKCE_TTL_SECONDS)

    def load_pkce(self) -> PKCEExchange:
        keys = self.keys
        return PKCEExchange(
            code_verifier=self.store.get(keys.code_verifier),
            state=self.store.get(keys.state),
            return_to=self.store.get(keys.return_to),
        )

    def clear_pkce(self) -> None:
        for key in self.keys.pkce_keys:
            self.store.delete(key)
