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
Data models for the coreason-keycloak package.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TokenSet(BaseModel):
    """
    Normalized result of a token-endpoint exchange.

    Expiries are absolute epoch seconds so persisted state is self-contained across requests.
    Frozen: a refresh produces a new TokenSet, tokens are never edited in place.
    refresh_expires_at is None when the provider gives the refresh token no expiry
    (Keycloak reports offline tokens with refresh_expires_in=0).
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(..., repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    id_token: str | None = Field(default=None, repr=False)
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int
    access_expires_at: int
    refresh_expires_at: int | None = None


class StoredCredentials(BaseModel):
    """
    Token state as read back from the credential store. Any field may be missing
    (expired cookie, partial write, first visit).
    """

    model_config = ConfigDict(frozen=True)

    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    id_token: str | None = Field(default=None, repr=False)
    access_expires_at: int | None = None
    refresh_expires_at: int | None = None


class PKCEExchange(BaseModel):
    """
    Single-use login-in-progress record, persisted between login start and callback.

    Attributes:
        code_verifier (str | None): The PKCE verifier (secret).
        state (str | None): The CSRF nonce sent to the provider (secret).
        return_to (str | None): Where to send the browser after login.
    """

    model_config = ConfigDict(frozen=True)

    code_verifier: str | None = Field(default=None, repr=False)
    state: str | None = Field(default=None, repr=False)
    return_to: str | None = None


class RoleAccess(BaseModel):
    """A Keycloak role container (`realm_access` or one entry of `resource_access`)."""

    model_config = ConfigDict(frozen=True, extra="allow")

    roles: list[str] = Field(default_factory=list)

    @field_validator("roles", mode="before")
    @classmethod
    def ensure_list_of_strings(cls, v: Any) -> list[str]:
        """Ensures the value is a list of strings, filtering out None values."""
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        if isinstance(v, (list, tuple)):
            return [str(item) for item in v if item is not None]
        return []


class KeycloakClaims(BaseModel):
    """
    Known OIDC/Keycloak claims plus an open extension map (extra claims are retained).
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    sub: str
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    preferred_username: str | None = None
    email: str | None = None
    email_verified: bool | None = None
    realm_access: RoleAccess | None = None
    resource_access: dict[str, RoleAccess] = Field(default_factory=dict)

    @field_validator("resource_access", mode="before")
    @classmethod
    def default_resource_access(cls, v: Any) -> Any:
        return {} if v is None else v

    def client_roles(self, client_id: str) -> list[str]:
        access = self.resource_access.get(client_id)
        return list(access.roles) if access else []

    @property
    def realm_roles(self) -> list[str]:
        return list(self.realm_access.roles) if self.realm_access else []


class KeycloakUser(BaseModel):
    """
    Read-only projection of token claims, recomputed on every session resolution.

    This model is frozen (immutable) to ensure integrity as it passes through the system.
    """

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "sub": "f3b1c0de-1d2e-4c5b-9a8f-0123456789ab",
                "preferred_username": "alice",
                "email": "alice@coreason.ai",
                "roles": ["admin", "editor"],
                "realm_roles": ["admin"],
                "client_roles": ["editor"],
            }
        },
    )

    sub: str = Field(..., description="The immutable subject ID.")
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    preferred_username: str | None = None
    email: str | None = None
    email_verified: bool | None = None
    roles: list[str] = Field(
        default_factory=list, description="Union of realm and client roles, deduplicated, first-seen order."
    )
    realm_roles: list[str] = Field(default_factory=list)
    client_roles: list[str] = Field(default_factory=list)
    raw_claims: dict[str, Any] = Field(default_factory=dict, repr=False)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_realm_role(self, role: str) -> bool:
        return role in self.realm_roles

    def has_client_role(self, role: str) -> bool:
        return role in self.client_roles

    def __repr__(self) -> str:
        # PII fields MUST be redacted in __repr__
        return (
            f"KeycloakUser(sub='<REDACTED>', "
            f"email='<REDACTED>', "
            f"roles={self.roles!r}, "
            f"realm_roles={self.realm_roles!r}, "
            f"client_roles={self.client_roles!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


class Session(BaseModel):
    """An authenticated session. Its absence (None), not an empty object, means unauthenticated."""

    model_config = ConfigDict(frozen=True)

    user: KeycloakUser
    access_token: str = Field(..., repr=False)
    id_token: str = Field(..., repr=False)
    access_expires_at: int
    refresh_expires_at: int


class SessionStatus(BaseModel):
    """
    JSON-ready answer to "who is calling", suitable for a session endpoint response body.
    """

    authenticated: bool
    user: KeycloakUser | None = None
    access_token: str | None = Field(default=None, repr=False)
    access_expires_at: int | None = None
    refresh_expires_at: int | None = None

    @classmethod
    def from_session(cls, session: Session | None) -> "SessionStatus":
        if session is None:
            return cls(authenticated=False)
        return cls(
            authenticated=True,
            user=session.user,
            access_token=session.access_token,
            access_expires_at=session.access_expires_at,
            refresh_expires_at=session.refresh_expires_at,
        )


class AuthorizationRedirect(BaseModel):
    """Result of login start: where to send the browser."""

    model_config = ConfigDict(frozen=True)

    url: str
    state: str = Field(..., repr=False)
    redirect_uri: str


class CallbackResult(BaseModel):
    """Result of a successful callback: tokens were persisted, send the browser to `redirect_to`."""

    model_config = ConfigDict(frozen=True)

    redirect_to: str
    tokens: TokenSet


class LogoutRedirect(BaseModel):
    """
    Result of logout.

    Attributes:
        url (str): Redirect target (provider end-session URL, or the local post-logout URI on fallback).
        provider_logout (bool): False when discovery failed and the provider was not contacted.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    provider_logout: bool
