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
Custom exceptions for the coreason-keycloak package.
"""


class CoreasonKeycloakError(Exception):
    """Base exception for all coreason-keycloak errors."""


class DiscoveryError(CoreasonKeycloakError):
    """
    Raised when the OIDC discovery document cannot be fetched or is incomplete.
    Nothing is cached when this is raised.
    """


class OversizedResponseError(CoreasonKeycloakError):
    """Raised when an HTTP response is too large."""


class TokenExchangeError(CoreasonKeycloakError):
    """
    Raised when the token endpoint rejects a grant or cannot be reached.

    Attributes:
        status_code (int | None): HTTP status returned by the token endpoint, None for transport failures.
        body (str): The raw response body (may be empty).
    """

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TokenDecodeError(CoreasonKeycloakError):
    """Raised when a JWT cannot be parsed (wrong segment count, bad base64, non-JSON payload)."""


class TokenVerificationError(CoreasonKeycloakError):
    """
    Raised when a token fails verification (bad signature, wrong issuer or audience, expired).
    Never downgraded to "unauthenticated": it may indicate tampering.
    """


class TokenExpiredError(TokenVerificationError):
    """Raised when the provided token has expired."""


class InvalidAudienceError(TokenVerificationError):
    """Raised when the token's audience does not contain the client ID."""


class InvalidIssuerError(TokenVerificationError):
    """Raised when the token's issuer does not match the discovered realm issuer."""


class SignatureVerificationError(TokenVerificationError):
    """Raised when the token's signature cannot be verified."""


class IdentityMappingError(CoreasonKeycloakError):
    """Raised when claims cannot be mapped to a user (e.g. missing 'sub')."""


class CallbackError(CoreasonKeycloakError):
    """Raised when the authorization callback is missing required inputs (code, code verifier)."""


class CSRFError(CallbackError):
    """Raised when the callback 'state' is absent or does not match the persisted state."""


class ProviderCallbackError(CallbackError):
    """
    Raised when the identity provider redirected back with an 'error' parameter.

    Attributes:
        error (str): The OAuth2 error code (e.g. access_denied).
        description (str | None): The optional error_description.
    """

    def __init__(self, error: str, description: str | None = None) -> None:
        message = f"Identity provider returned error '{error}'"
        if description:
            message = f"{message}: {description}"
        super().__init__(message)
        self.error = error
        self.description = description
