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
Process-wide caches for discovery documents and signing-key sets.

These are constructed once per process and passed to every component that needs them,
rather than living as module globals. Writes are last-writer-wins.
"""

import time
from collections.abc import Callable, Hashable
from typing import Any, Generic, TypeVar

from coreason_keycloak.models_internal import DiscoveryDocument

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DISCOVERY_TTL_SECONDS = 300.0


class TTLCache(Generic[K, V]):
    """
    Dictionary-backed cache with lazy expiry.

    Attributes:
        ttl (float | None): Entry lifetime in seconds. None keeps entries until cleared.
    """

    def __init__(self, ttl: float | None = None, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[K, tuple[V, float]] = {}

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if self.ttl is not None and self._clock() - stored_at >= self.ttl:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (value, self._clock())

    def age(self, key: K) -> float | None:
        """Seconds since the entry was stored, or None if absent."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._clock() - entry[1]

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._entries)


class DiscoveryCache(TTLCache[tuple[str, str], DiscoveryDocument]):
    """Discovery documents keyed by (base URL, realm), valid for 5 minutes."""

    def __init__(self, ttl: float = DISCOVERY_TTL_SECONDS, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ttl=ttl, clock=clock)


class JWKSCache(TTLCache[str, dict[str, Any]]):
    """
    Key sets keyed by jwks_uri. No TTL: keys rotate via 'kid', and an unknown kid
    triggers a refresh (see jwt_processor.RemoteKeySet).
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ttl=None, clock=clock)
