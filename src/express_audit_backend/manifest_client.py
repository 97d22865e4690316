"""
Asynchronous manifest requests against the Photoshop document manifest service.

Submitting a request only returns a job link; the manifest itself arrives
later through the completion webhook carrying the same job id.  The last path
segment of ``_links.self.href`` is that job id.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

import httpx

from .errors import ManifestSubmissionFailed
from .models import ManifestSubmission

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_ENDPOINT = "https://image.adobe.io/pie/psdService/documentManifest"


def job_id_from_href(href: str) -> str:
    """
    Extract the job id from a manifest job link.

    Example:
        >>> job_id_from_href("https://image.adobe.io/pie/psdService/status/00bd53a5")
        "00bd53a5"
    """
    segments = [segment for segment in href.split("?", 1)[0].split("/") if segment]
    if not segments:
        raise ValueError(f"no job id in {href!r}")
    return segments[-1]


class ManifestClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: Callable[[], Awaitable[str]],
        client_id: str = "",
        org_id: str = "",
        endpoint: str = DEFAULT_MANIFEST_ENDPOINT,
    ) -> None:
        self._http = http_client
        self._token_provider = token_provider
        self.client_id = client_id
        self.org_id = org_id
        self.endpoint = endpoint

    async def submit_manifest_request(self, presigned_url: str, emit_event: bool = False) -> ManifestSubmission:
        """
        Submit a manifest extraction job for the asset behind ``presigned_url``.

        Args:
            presigned_url: Presigned download URL of the source document
            emit_event: Send the org id header so the service emits a
                completion event when the job finishes

        Returns:
            ManifestSubmission with the extracted job id and the raw response

        Raises:
            ManifestSubmissionFailed: On transport errors, non-2xx responses or
                a response without a job link
        """
        headers = {
            "Authorization": f"Bearer {await self._token_provider()}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.client_id:
            headers["x-api-key"] = self.client_id
        if emit_event and self.org_id:
            headers["x-gw-ims-org-id"] = self.org_id

        body = {"inputs": [{"href": presigned_url, "storage": "external"}]}

        try:
            response = await self._http.post(self.endpoint, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.error(f"Manifest request to {self.endpoint} failed: {exc}")
            raise ManifestSubmissionFailed(url=self.endpoint, detail=str(exc)) from exc

        if not response.is_success:
            logger.error(f"Manifest request to {self.endpoint} failed with status code {response.status_code}")
            raise ManifestSubmissionFailed(status=response.status_code, url=self.endpoint)

        href: Optional[str] = None
        try:
            raw = response.json()
            href = raw["_links"]["self"]["href"]
            job_id = job_id_from_href(href)
        except (ValueError, KeyError, TypeError) as exc:
            raise ManifestSubmissionFailed(
                status=response.status_code,
                url=self.endpoint,
                detail=f"malformed response, job link {href!r}",
            ) from exc

        logger.info(f"Manifest job {job_id} submitted")
        return ManifestSubmission(job_id=job_id, raw=raw)
