# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import pytest
from pydantic import SecretStr, ValidationError

from coreason_keycloak.config import KeycloakConfig


def test_defaults() -> None:
    config = KeycloakConfig(url="https://idp.test/", realm="demo", client_id="app")

    assert config.url == "https://idp.test"
    assert config.client_secret is None
    assert config.auth_base_path == "/api/auth"
    assert config.cookie_prefix == "kc"
    assert config.refresh_margin_seconds == 60
    assert config.http_timeout == 10.0
    assert config.requested_scopes == ["openid", "profile", "email"]


def test_extra_scopes_deduplicated_in_order() -> None:
    config = KeycloakConfig(
        url="https://idp.test", realm="demo", client_id="app", scopes=["roles", "email", " ", "roles", "offline_access"]
    )
    assert config.scopes == ["roles", "email", "offline_access"]
    assert config.requested_scopes == ["openid", "profile", "email", "roles", "offline_access"]


def test_http_rejected_without_local_dev() -> None:
    with pytest.raises(ValidationError, match="HTTPS is required"):
        KeycloakConfig(url="http://localhost:8080", realm="demo", client_id="app")


def test_http_allowed_for_local_dev() -> None:
    config = KeycloakConfig(url="http://localhost:8080/", realm="demo", client_id="app", unsafe_local_dev=True)
    assert config.url == "http://localhost:8080"


@pytest.mark.parametrize("url", ["idp.test", "ftp://idp.test", "https://", ""])
def test_url_must_be_absolute(url: str) -> None:
    with pytest.raises(ValidationError):
        KeycloakConfig(url=url, realm="demo", client_id="app")


@pytest.mark.parametrize("field", ["realm", "client_id", "cookie_prefix"])
def test_empty_identifiers_rejected(field: str) -> None:
    values = {"url": "https://idp.test", "realm": "demo", "client_id": "app", field: "  "}
    with pytest.raises(ValidationError, match="must not be empty"):
        KeycloakConfig(**values)


def test_auth_base_path_normalized() -> None:
    config = KeycloakConfig(url="https://idp.test", realm="demo", client_id="app", auth_base_path="auth/")
    assert config.auth_base_path == "/auth"


def test_redirect_uris_must_be_absolute() -> None:
    with pytest.raises(ValidationError, match="redirect_uri must be an absolute URL"):
        KeycloakConfig(url="https://idp.test", realm="demo", client_id="app", redirect_uri="/callback")


def test_client_secret_is_masked() -> None:
    config = KeycloakConfig(url="https://idp.test", realm="demo", client_id="app", client_secret=SecretStr("s3cr3t"))
    assert "s3cr3t" not in repr(config)
    assert config.client_secret is not None
    assert config.client_secret.get_secret_value() == "s3cr3t"


def test_config_is_frozen() -> None:
    config = KeycloakConfig(url="https://idp.test", realm="demo", client_id="app")
    with pytest.raises(ValidationError):
        config.realm = "other"  # type: ignore[misc]


def test_loaded_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COREASON_KEYCLOAK_URL", "https://env.idp.test")
    monkeypatch.setenv("COREASON_KEYCLOAK_REALM", "env-realm")
    monkeypatch.setenv("COREASON_KEYCLOAK_CLIENT_ID", "env-app")
    monkeypatch.setenv("COREASON_KEYCLOAK_REFRESH_MARGIN_SECONDS", "30")

    config = KeycloakConfig()  # type: ignore[call-arg]

    assert config.url == "https://env.idp.test"
    assert config.realm == "env-realm"
    assert config.client_id == "env-app"
    assert config.refresh_margin_seconds == 30


def test_negative_refresh_margin_rejected() -> None:
    with pytest.raises(ValidationError):
        KeycloakConfig(url="https://idp.test", realm="demo", client_id="app", refresh_margin_seconds=-1)
