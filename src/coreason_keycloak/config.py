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
Configuration for the coreason-keycloak package.
"""

from urllib.parse import urlparse

from pydantic import Field, SecretStr, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SCOPES: tuple[str, ...] = ("openid", "profile", "email")


class KeycloakConfig(BaseSettings):
    """
    Per-tenant relying-party settings. Frozen: supplied once at startup and shared read-only.

    Attributes:
        url (str): Keycloak base URL (e.g. https://keycloak.example.com). Trailing slash is stripped.
        realm (str): The realm name.
        client_id (str): The OIDC client ID.
        client_secret (SecretStr | None): Client secret for confidential clients.
        scopes (list[str]): Scopes requested in addition to 'openid profile email'.
        redirect_uri (str | None): Callback URL. Defaults to {origin}{auth_base_path}/callback.
        post_logout_redirect_uri (str | None): Where the provider sends the browser after logout.
        auth_base_path (str): Mount point of the auth routes in the host application.
        cookie_prefix (str): Prefix of every credential-store key.
        refresh_margin_seconds (int): Refresh the access token this many seconds before it expires.
        http_timeout (float): Timeout in seconds for all IdP network operations.
        unsafe_local_dev (bool): Allow plain http:// provider URLs (local development only).
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_KEYCLOAK_",
        case_sensitive=False,
        frozen=True,
    )

    url: str
    realm: str
    client_id: str
    client_secret: SecretStr | None = None
    scopes: list[str] = Field(default_factory=list)
    redirect_uri: str | None = None
    post_logout_redirect_uri: str | None = None
    auth_base_path: str = "/api/auth"
    cookie_prefix: str = "kc"
    refresh_margin_seconds: int = Field(default=60, ge=0)
    http_timeout: float = Field(default=10.0, gt=0, description="Timeout in seconds for all IdP network operations.")
    unsafe_local_dev: bool = False

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        """
        Strips whitespace and trailing slashes, and checks that the URL has a scheme and host.

        Args:
            v: The raw base URL.

        Returns:
            The normalized base URL.

        Raises:
            ValueError: If the URL is not absolute.
        """
        v = v.strip().rstrip("/")
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Keycloak URL must be an absolute http(s) URL, got '{v}'")
        return v

    @field_validator("realm", "client_id", "cookie_prefix")
    @classmethod
    def require_non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Value must not be empty")
        return v

    @field_validator("scopes")
    @classmethod
    def dedupe_scopes(cls, v: list[str]) -> list[str]:
        """Drops blanks and duplicates, keeping first-seen order."""
        return list(dict.fromkeys(s.strip() for s in v if s and s.strip()))

    @field_validator("auth_base_path")
    @classmethod
    def normalize_base_path(cls, v: str) -> str:
        return "/" + v.strip().strip("/")

    @field_validator("redirect_uri", "post_logout_redirect_uri")
    @classmethod
    def validate_absolute_uri(cls, v: str | None, info: ValidationInfo) -> str | None:
        if v is None:
            return v
        v = v.strip()
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"{info.field_name} must be an absolute URL, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_https(self) -> "KeycloakConfig":
        """
        Ensures the provider URL uses HTTPS, unless strictly opted out for local dev.
        """
        if self.url.startswith("http://") and not self.unsafe_local_dev:
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return self

    @property
    def requested_scopes(self) -> list[str]:
        """The default OIDC scopes followed by the configured extras, deduplicated."""
        return list(dict.fromkeys([*DEFAULT_SCOPES, *self.scopes]))
