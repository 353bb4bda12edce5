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
Wire-level data models for the coreason-keycloak package.
These mirror what the identity provider sends and are validated strictly on arrival.
"""

from pydantic import BaseModel, ConfigDict, Field


class DiscoveryDocument(BaseModel):
    """
    OIDC Configuration from .well-known/openid-configuration.

    The five endpoint fields the relying party depends on are required and must be non-empty.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str = Field(..., min_length=1, description="The OIDC issuer URL.")
    authorization_endpoint: str = Field(..., min_length=1, description="The authorization endpoint URL.")
    token_endpoint: str = Field(..., min_length=1, description="The token endpoint URL.")
    end_session_endpoint: str = Field(..., min_length=1, description="The RP-initiated logout endpoint URL.")
    jwks_uri: str = Field(..., min_length=1, description="The URL to the JWKS.")
    userinfo_endpoint: str | None = Field(default=None, description="The userinfo endpoint URL.")
    introspection_endpoint: str | None = Field(default=None, description="The token introspection endpoint URL.")


class TokenEndpointResponse(BaseModel):
    """
    Raw successful response of the token endpoint (authorization_code and refresh_token grants).

    Attributes:
        access_token (str): The access token issued by the authorization server.
        refresh_token (str | None): The refresh token, if issued.
        id_token (str | None): The ID token, if issued.
        token_type (str): The type of the token (e.g. "Bearer").
        expires_in (int): The lifetime in seconds of the access token.
        refresh_expires_in (int): The lifetime in seconds of the refresh token (Keycloak extension).
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int = Field(..., ge=0)
    refresh_expires_in: int = Field(default=0, ge=0)
    scope: str | None = None
    session_state: str | None = None
