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
Size-bounded HTTP reads against the identity provider.
"""

import json
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

from coreason_keycloak.exceptions import OversizedResponseError

MAX_RESPONSE_BYTES = 1_000_000


class BoundedResponse(BaseModel):
    """A fully read HTTP response whose body is known to be under the size cap."""

    model_config = ConfigDict(frozen=True)

    status_code: int
    content: bytes

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json_body(self) -> Any:
        """
        Raises:
            ValueError: If the body is not valid JSON (json.JSONDecodeError is a ValueError).
        """
        return json.loads(self.content)


async def fetch_bounded(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    data: dict[str, str] | None = None,
    max_bytes: int = MAX_RESPONSE_BYTES,
) -> BoundedResponse:
    """
    Performs a request and reads the body in chunks, aborting once it exceeds `max_bytes`.

    Unlike `raise_for_status`, non-2xx responses are returned so callers can surface the body.

    Args:
        client: The async HTTP client.
        method: HTTP method.
        url: Target URL.
        data: Optional form fields (sent as application/x-www-form-urlencoded).
        max_bytes: Body size cap.

    Returns:
        BoundedResponse: Status code and raw body.

    Raises:
        OversizedResponseError: If Content-Length or the streamed body exceeds the cap.
        httpx.HTTPError: For transport failures.
    """
    async with client.stream(method, url, data=data, follow_redirects=True) as response:
        content_length = response.headers.get("Content-Length")
        if content_length:
            try:
                if int(content_length) > max_bytes:
                    raise OversizedResponseError(f"Response from {url} too large ({content_length} bytes)")
            except ValueError:
                pass

        content = bytearray()
        async for chunk in response.aiter_bytes():
            content.extend(chunk)
            if len(content) > max_bytes:
                raise OversizedResponseError(f"Response from {url} exceeded {max_bytes} bytes")

        return BoundedResponse(status_code=response.status_code, content=bytes(content))
