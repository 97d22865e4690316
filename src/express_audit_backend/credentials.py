from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping

from .errors import AuthFailure
from .state_store import StateStore

logger = logging.getLogger(__name__)

# 22 hours, below the 24 hour lifetime of issued tokens.
DEFAULT_TOKEN_TTL_SECONDS = 79200

TokenFetcher = Callable[[], Awaitable[Mapping[str, Any]]]


class CredentialCache:
    """Bearer tokens cached under a named key in the shared state store."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    async def get_token(
        self,
        cache_key: str,
        fetch_fn: TokenFetcher,
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    ) -> str:
        """
        Return the cached token for ``cache_key`` or fetch and cache a fresh one.

        Errors raised by ``fetch_fn`` propagate unchanged; a token response
        without an ``access_token`` raises :class:`AuthFailure`.  Nothing is
        retried here.
        """
        cached = self._store.get(cache_key)
        if cached is not None:
            logger.debug(f"Using cached token for {cache_key}")
            return cached

        logger.debug(f"No cached token for {cache_key}, requesting a new one")
        token_response = await fetch_fn()
        access_token = token_response.get("access_token") if token_response else None
        if not access_token:
            logger.error(f"Token issuer returned no access token for {cache_key}")
            raise AuthFailure(f"no access token issued for {cache_key}")

        self._store.put(cache_key, access_token, ttl_seconds)
        return access_token

    def invalidate(self, cache_key: str) -> None:
        self._store.delete(cache_key)
