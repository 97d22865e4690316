"""Exception hierarchy shared by the webhook handlers and their API clients.

Each exception carries the HTTP status code the webhook sender should see, so
handlers can turn any failure into a response without a lookup table.  The
``stage`` recorded on :class:`RequestFailed` names the downstream call that
failed (presign-fetch, comment-write, metadata-patch, manifest-submit, ...)
and is what ties a log line from the entry webhook to one from the completion
webhook.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ExpressAuditError",
    "MissingRequiredInput",
    "AuthFailure",
    "RequestFailed",
    "ManifestSubmissionFailed",
    "InvalidManifest",
    "JobNotFound",
    "RetryExhausted",
]


class ExpressAuditError(RuntimeError):
    """Base exception for audit workflow failures."""

    status_code: int = 500


class MissingRequiredInput(ExpressAuditError):
    """Raised when a request lacks fields the handler cannot work without."""

    status_code = 400

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        names = ", ".join(f"'{name}'" for name in self.missing)
        super().__init__(f"missing parameter(s) {names}")


class AuthFailure(ExpressAuditError):
    """Raised when a bearer token could not be issued."""


class RequestFailed(ExpressAuditError):
    """Raised when a downstream HTTP call returned a non-2xx status or an unusable body."""

    def __init__(
        self,
        stage: str,
        status: Optional[int] = None,
        url: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.stage = stage
        self.status = status
        self.url = url
        self.detail = detail
        message = f"{stage} request"
        if url:
            message += f" to {url}"
        message += " failed"
        if status is not None:
            message += f" with status code {status}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ManifestSubmissionFailed(RequestFailed):
    """Raised when the manifest service rejects a submission or returns no job link."""

    def __init__(
        self,
        status: Optional[int] = None,
        url: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__("manifest-submit", status=status, url=url, detail=detail)


class InvalidManifest(ExpressAuditError):
    """Raised when a manifest payload is not structured as expected."""

    status_code = 400


class JobNotFound(ExpressAuditError):
    """Raised when a completion event references an unknown job.

    Handlers treat this as a benign no-op rather than an error response.
    """

    status_code = 200

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"No Job Data found for {job_id}")


class RetryExhausted(ExpressAuditError):
    """Raised when a transient failure persists past the retry ceiling."""

    def __init__(self, job_id: str, passes: int) -> None:
        self.job_id = job_id
        self.passes = passes
        super().__init__(f"job {job_id} failed after {passes} passes")
