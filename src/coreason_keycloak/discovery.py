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
Endpoint discovery component for resolving and caching a realm's OIDC metadata.
"""

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_keycloak.cache import DiscoveryCache
from coreason_keycloak.exceptions import DiscoveryError, OversizedResponseError
from coreason_keycloak.models_internal import DiscoveryDocument
from coreason_keycloak.transport import fetch_bounded
from coreason_keycloak.utils.logger import logger

tracer = trace.get_tracer(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


def realm_url(base_url: str, realm: str) -> str:
    """
    Builds the issuer URL of a Keycloak realm.

    Args:
        base_url: Keycloak base URL, with or without a trailing slash.
        realm: The realm name.

    Returns:
        str: e.g. https://keycloak.example.com/realms/demo
    """
    return f"{base_url.rstrip('/')}/realms/{realm}"


class EndpointDiscovery:
    """
    Fetches and caches the realm's discovery document.

    There is no retry: callers decide whether a DiscoveryError is worth retrying.

    Attributes:
        client (httpx.AsyncClient): The async HTTP client used for requests.
        cache (DiscoveryCache): Process-wide document cache keyed by (base URL, realm).
    """

    def __init__(self, client: httpx.AsyncClient, cache: DiscoveryCache | None = None) -> None:
        """
        Initialize the EndpointDiscovery.

        Args:
            client: The async HTTP client to use for requests.
            cache: Shared discovery cache. A private one is created when omitted.
        """
        self.client = client
        self.cache = cache if cache is not None else DiscoveryCache()

    async def resolve(self, base_url: str, realm: str) -> DiscoveryDocument:
        """
        Returns the discovery document for a realm, from cache when fresh.

        Args:
            base_url: Keycloak base URL.
            realm: The realm name.

        Returns:
            DiscoveryDocument: The validated document.

        Raises:
            DiscoveryError: On transport failure, non-2xx status, oversized or non-JSON body,
                or a missing required field. Nothing is cached in that case.
        """
        key = (base_url.rstrip("/"), realm)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        well_known_url = realm_url(base_url, realm) + WELL_KNOWN_PATH

        with tracer.start_as_current_span("oidc_discovery") as span:
            span.set_attribute("http.url", well_known_url)
            try:
                document = await self._fetch(well_known_url)
            except DiscoveryError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            span.set_status(Status(StatusCode.OK))

        self.cache.set(key, document)
        logger.debug(f"Discovered OIDC endpoints for realm '{realm}' (issuer {document.issuer})")
        return document

    async def _fetch(self, well_known_url: str) -> DiscoveryDocument:
        try:
            response = await fetch_bounded(self.client, "GET", well_known_url)
        except (httpx.HTTPError, OversizedResponseError) as e:
            logger.error(f"OIDC discovery request to {well_known_url} failed: {e}")
            raise DiscoveryError(f"Failed to fetch OIDC configuration from {well_known_url}: {e}") from e

        if not response.is_success:
            logger.error(f"OIDC discovery returned HTTP {response.status_code} from {well_known_url}")
            raise DiscoveryError(
                f"Failed to discover OIDC endpoints from {well_known_url}: HTTP {response.status_code}"
            )

        try:
            data = response.json_body()
        except ValueError as e:
            raise DiscoveryError(f"Invalid JSON in OIDC configuration from {well_known_url}: {e}") from e

        if not isinstance(data, dict):
            raise DiscoveryError(f"OIDC configuration from {well_known_url} is not a JSON object")

        try:
            return DiscoveryDocument(**data)
        except ValidationError as e:
            missing = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
            logger.error(f"Incomplete OIDC configuration from {well_known_url}: {missing}")
            raise DiscoveryError(
                f"Missing or invalid required OIDC endpoint(s) [{missing}] in discovery document from {well_known_url}"
            ) from e

    def clear_cache(self) -> None:
        """Drops every cached document (test isolation, forced re-discovery)."""
        self.cache.clear()
