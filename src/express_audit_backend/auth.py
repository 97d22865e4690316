"""
Bearer token plumbing for the repository and manifest service clients.

Tokens come from one of two places:

- the IMS client-credentials exchange, cached through :class:`CredentialCache`
- the ``Authorization`` header of the request currently being handled, when a
  service is configured with ``use_passed_auth``
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Any, Dict, Optional

import httpx

from .credentials import DEFAULT_TOKEN_TTL_SECONDS, CredentialCache
from .errors import AuthFailure

logger = logging.getLogger(__name__)

# Authorization header of the request being handled, set by the HTTP layer.
incoming_authorization: ContextVar[Optional[str]] = ContextVar("incoming_authorization", default=None)


def bearer_from_header(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class ImsTokenIssuer:
    """Client-credentials token exchange against the IMS ``/ims/token/v3`` endpoint."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        ims_endpoint: str,
        client_id: str,
        client_secret: str,
        scopes: str,
    ) -> None:
        self._http = http_client
        self.token_url = f"{ims_endpoint.rstrip('/')}/ims/token/v3"
        self.client_id = client_id
        self._client_secret = client_secret
        self.scopes = scopes

    async def __call__(self) -> Dict[str, Any]:
        form = {
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "grant_type": "client_credentials",
            "scope": self.scopes,
        }
        try:
            response = await self._http.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthFailure(f"request to {self.token_url} failed: {exc}") from exc

        if not response.is_success:
            logger.error(f"Token request to {self.token_url} failed with status code {response.status_code}")
            raise AuthFailure(f"request to {self.token_url} failed with status code {response.status_code}")
        return response.json()


class TokenProvider:
    """Resolves the bearer token for one downstream service."""

    def __init__(
        self,
        cache: CredentialCache,
        issuer: ImsTokenIssuer,
        cache_key: str,
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
        use_passed_auth: bool = False,
    ) -> None:
        self.cache = cache
        self.issuer = issuer
        self.cache_key = cache_key
        self.ttl_seconds = ttl_seconds
        self.use_passed_auth = use_passed_auth

    async def __call__(self) -> str:
        if self.use_passed_auth:
            token = bearer_from_header(incoming_authorization.get())
            if not token:
                raise AuthFailure(f"{self.cache_key}: passed auth configured but no bearer token on request")
            return token
        return await self.cache.get_token(self.cache_key, self.issuer, self.ttl_seconds)
