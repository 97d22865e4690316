"""
Read and write calls against the AEM content repository.

This module provides the repository operations the audit workflow needs:
- Fetching asset metadata and repository resource descriptors
- Resolving a time-limited presigned download URL for an asset
- Writing a visible comment onto an asset
- Patching an application metadata field so the audit result is filterable

Every call is authenticated with a bearer token from a :class:`TokenProvider`.
Any non-2xx response raises :class:`RequestFailed` naming the stage that failed.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .errors import RequestFailed
from .report_engine import AssetReport, format_report_comment

logger = logging.getLogger(__name__)

DOWNLOAD_REL = "http://ns.adobe.com/adobecloud/rel/download"
APPLICATION_METADATA_REL = "http://ns.adobe.com/adobecloud/rel/metadata/application"
CONTENT_NAMESPACE = "/content/dam"
API_NAMESPACE = "/api/assets"


def to_api_path(asset_path: str) -> str:
    """
    Rewrite a ``/content/dam`` asset path into the Assets HTTP API namespace.

    Example:
        >>> to_api_path("/content/dam/brand/hero.psd")
        "/api/assets/brand/hero.psd"
        >>> to_api_path("/brand/hero.psd")
        "/api/assets/brand/hero.psd"
    """
    api_path = asset_path.replace(CONTENT_NAMESPACE, API_NAMESPACE, 1)
    if API_NAMESPACE not in api_path:
        api_path = API_NAMESPACE + api_path
    return api_path


class RepositoryClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: Callable[[], Awaitable[str]],
        client_id: str = "",
    ) -> None:
        self._http = http_client
        self._token_provider = token_provider
        self.client_id = client_id

    async def _headers(self, content_type: Optional[str] = "application/json") -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {await self._token_provider()}"}
        if content_type:
            headers["Content-Type"] = content_type
        if self.client_id:
            headers["x-api-key"] = self.client_id
        return headers

    async def _request(self, stage: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.error(f"{stage} request to {url} failed: {exc}")
            raise RequestFailed(stage, url=url, detail=str(exc)) from exc

        if not response.is_success:
            logger.error(f"{stage} request to {url} failed with status code {response.status_code}")
            raise RequestFailed(stage, status=response.status_code, url=url)
        return response

    @staticmethod
    def _json(stage: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RequestFailed(stage, status=response.status_code, url=str(response.url), detail="response is not JSON") from exc

    async def fetch_asset_metadata(self, host: str, path: str) -> Dict[str, Any]:
        url = f"{host}{path}.3.json"
        response = await self._request("asset-metadata", "GET", url, headers=await self._headers())
        return self._json("asset-metadata", response)

    async def fetch_repository_resource(self, host: str, path: str) -> Dict[str, Any]:
        url = f"{host}/adobe/repository"
        response = await self._request(
            "presign-resolve", "GET", url, params={"path": path}, headers=await self._headers()
        )
        return self._json("presign-resolve", response)

    async def fetch_presigned_download_url(self, host: str, path: str) -> str:
        """
        Resolve a presigned download URL for an asset.

        Two requests: the repository resource descriptor (stage
        ``presign-resolve``) supplies the download relation link, which is then
        fetched (stage ``presign-fetch``) for the actual presigned ``href``.
        """
        descriptor = await self.fetch_repository_resource(host, path)
        try:
            download_url = descriptor["_links"][DOWNLOAD_REL]["href"]
        except (KeyError, TypeError) as exc:
            raise RequestFailed("presign-resolve", url=f"{host}/adobe/repository", detail="no download link in resource descriptor") from exc

        response = await self._request("presign-fetch", "GET", download_url, headers=await self._headers())
        payload = self._json("presign-fetch", response)
        href = None
        if isinstance(payload, dict):
            href = payload.get("href") or (payload.get("data") or {}).get("href")
        if not href:
            raise RequestFailed("presign-fetch", status=response.status_code, url=download_url, detail="no href in download response")
        return href

    async def write_comment(self, host: str, path: str, text: str) -> Any:
        url = f"{host}{to_api_path(path)}/comments/*"
        logger.debug(f"Writing comment to {url}")
        response = await self._request(
            "comment-write",
            "POST",
            url,
            files={"message": (None, text)},
            headers=await self._headers(content_type=None),
        )
        return response.json() if response.content else None

    async def write_report(self, host: str, path: str, report: AssetReport) -> Any:
        return await self.write_comment(host, path, format_report_comment(report))

    async def patch_metadata(
        self,
        host: str,
        path: str,
        property_path: str,
        value: Any,
        asset_id: Optional[str] = None,
    ) -> Any:
        """Add ``value`` at ``property_path`` in the asset's application metadata."""
        if asset_id:
            url = f"{host}/adobe/assets/{asset_id}/metadata"
            params = None
        else:
            url = f"{host}/adobe/repository"
            params = {"path": path, "resource": APPLICATION_METADATA_REL}
        operations = [{"op": "add", "path": property_path, "value": value}]
        response = await self._request(
            "metadata-patch",
            "PATCH",
            url,
            params=params,
            json=operations,
            headers=await self._headers(content_type="application/json-patch+json"),
        )
        return response.json() if response.content else None
