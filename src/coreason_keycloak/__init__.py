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
Keycloak relying-party core: Authorization Code + PKCE login, session resolution with
token refresh, and logout, decoupled from any web framework.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .cache import DiscoveryCache, JWKSCache
from .config import KeycloakConfig
from .exceptions import (
    CallbackError,
    CoreasonKeycloakError,
    CSRFError,
    DiscoveryError,
    ProviderCallbackError,
    TokenExchangeError,
    TokenVerificationError,
)
from .manager import KeycloakSessionManager
from .models import KeycloakUser, Session, SessionStatus, TokenSet
from .session import SessionState
from .store import CredentialStore, MemoryCredentialStore

__all__ = [
    "CSRFError",
    "CallbackError",
    "CoreasonKeycloakError",
    "CredentialStore",
    "DiscoveryCache",
    "DiscoveryError",
    "JWKSCache",
    "KeycloakConfig",
    "KeycloakSessionManager",
    "KeycloakUser",
    "MemoryCredentialStore",
    "ProviderCallbackError",
    "Session",
    "SessionState",
    "SessionStatus",
    "TokenExchangeError",
    "TokenSet",
    "TokenVerificationError",
]
