"""
Two-webhook audit workflow: asset processed -> manifest requested -> manifest delivered.

The entry webhook fires when the repository finishes processing an asset.
Qualifying Photoshop documents get a presigned download URL, a manifest
request is submitted with completion events enabled, and a :class:`JobRecord`
is stored under the returned job id.

The completion webhook fires when the manifest job finishes.  The stored record
is looked up, its pass count incremented and persisted, and then either:

- the job failed transiently and is resubmitted after a fixed backoff
- the job failed past the retry ceiling and its record is discarded
- the job failed permanently and its record is kept for diagnosis
- the manifest arrived, the rules are evaluated and the results written back

Each invocation is independent; all state shared between them goes through
the :class:`JobCorrelationStore`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import ValidationError

from .errors import ExpressAuditError, InvalidManifest, JobNotFound, RequestFailed, RetryExhausted
from .job_store import DEFAULT_JOB_TTL_SECONDS, JobCorrelationStore
from .logging_utils import DebugTrace
from .manifest_client import ManifestClient
from .models import JobRecord, JobState, WebhookResponse
from .report_engine import MAX_SIZE_BYTES, AssetReport, build_asset_report
from .report_store import ReportStore, aggregate_reports
from .repository_client import RepositoryClient
from .utils import check_missing_request_inputs, error_response, get_nested

logger = logging.getLogger(__name__)

PHOTOSHOP_FORMAT = "image/vnd.adobe.photoshop"
MAX_PROCESS_PASSES = 5
RETRY_BACKOFF_SECONDS = 15
METADATA_PROPERTY = "/adobe-express-compatible"
TRANSIENT_FAILURE_MARKERS = ("unable to download the asset",)


def failure_reason(output: Mapping[str, Any]) -> str:
    """Flatten whatever error detail a failed manifest output carries into one string."""
    detail = output.get("errors") or output.get("error") or output.get("message") or ""
    if isinstance(detail, str):
        return detail
    return json.dumps(detail, sort_keys=True)


def is_transient_failure(output: Mapping[str, Any]) -> bool:
    reason = failure_reason(output).lower()
    return any(marker in reason for marker in TRANSIENT_FAILURE_MARKERS)


class AuditOrchestrator:
    """
    Drives the entry and completion webhooks of the audit workflow.

    Attributes:
        repository: Client for the content repository
        manifest: Client for the manifest service
        jobs: Correlation store shared by all invocations
        reports: Optional report store; written when ``generate_report_log`` is set
    """

    def __init__(
        self,
        repository: RepositoryClient,
        manifest: ManifestClient,
        jobs: JobCorrelationStore,
        reports: Optional[ReportStore] = None,
        target_format: str = PHOTOSHOP_FORMAT,
        max_asset_size_bytes: int = MAX_SIZE_BYTES,
        max_process_passes: int = MAX_PROCESS_PASSES,
        retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS,
        job_ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS,
        metadata_property: str = METADATA_PROPERTY,
        generate_report_log: bool = False,
        debug: bool = False,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.repository = repository
        self.manifest = manifest
        self.jobs = jobs
        self.reports = reports
        self.target_format = target_format
        self.max_asset_size_bytes = max_asset_size_bytes
        self.max_process_passes = max_process_passes
        self.retry_backoff_seconds = retry_backoff_seconds
        self.job_ttl_seconds = job_ttl_seconds
        self.metadata_property = metadata_property
        self.generate_report_log = generate_report_log
        self.debug = debug
        self._sleep = sleep or asyncio.sleep

    def _trace(self, action: str) -> DebugTrace:
        return DebugTrace(action, logger, enabled=self.debug)

    @staticmethod
    def _respond(trace: DebugTrace, status_code: int, body: Any) -> WebhookResponse:
        return WebhookResponse(status_code=status_code, body=trace.attach(body))

    @staticmethod
    def _transition(job_id: str, state: JobState, asset_path: str = "") -> None:
        logger.info(f"job {job_id} -> {state.value} {asset_path}".rstrip())

    async def handle_asset_event(self, params: Mapping[str, Any]) -> WebhookResponse:
        """
        Entry webhook: start a manifest job for a newly processed Photoshop asset.

        Returns 200 with the stored job data on success, 200 with a ``skipped``
        status for assets that are not audited, 204 for assets too large to
        process, 400 for malformed events and 500 when a downstream call fails.
        No job record exists unless every downstream call succeeded.
        """
        trace = self._trace("onAssetProcessed")

        if params.get("challenge"):
            return WebhookResponse(status_code=200, body={"challenge": params["challenge"]})

        try:
            check_missing_request_inputs(params, ["data"])
        except ExpressAuditError as exc:
            return error_response(exc.status_code, str(exc), logger)

        try:
            metadata = get_nested(params, "data.repositoryMetadata")
            if not isinstance(metadata, Mapping):
                trace("No repository metadata found")
                return self._respond(trace, 200, {"status": "skipped - no metadata found"})

            asset_format = metadata.get("dc:format")
            if asset_format != self.target_format:
                trace(f"Not a target format file, skipping processing {asset_format}")
                return self._respond(trace, 200, {"status": f"skipped - no metadata found {asset_format}"})

            asset_size = int(metadata.get("repo:size") or 0)
            if asset_size > self.max_asset_size_bytes:
                logger.info(f"Asset {metadata.get('repo:path')} is {asset_size} bytes, skipping processing")
                return self._respond(trace, 204, "asset too large for express")

            asset_path = metadata.get("repo:path") or ""
            host = f"https://{metadata.get('repo:repositoryId')}"

            self._transition("-", JobState.PRESIGN_REQUESTED, asset_path)
            try:
                presigned_url = await self.repository.fetch_presigned_download_url(host, asset_path)
            except ExpressAuditError as exc:
                logger.error(f"presigned url pull failure for {asset_path}: {exc}")
                return self._respond(trace, 500, {"error": "presigned url pull failure"})
            trace(f"presigned url resolved for {asset_path}")

            try:
                submission = await self.manifest.submit_manifest_request(presigned_url, emit_event=True)
            except ExpressAuditError as exc:
                logger.error(f"manifest request failure for {asset_path}: {exc}")
                return self._respond(trace, 500, {"error": "manifest request failure"})
            self._transition(submission.job_id, JobState.MANIFEST_SUBMITTED, asset_path)

            record = JobRecord(
                job_id=submission.job_id,
                repository_host=host,
                asset_path=asset_path,
                presigned_download_url=presigned_url,
                asset_size_bytes=asset_size,
                asset_uuid=metadata.get("repo:assetId"),
                asset_name=metadata.get("repo:name"),
                raw_asset_metadata=dict(metadata),
            )
            try:
                self.jobs.put(record.job_id, record, self.job_ttl_seconds)
            except Exception:
                logger.exception(f"state save failure for job {record.job_id}")
                return self._respond(trace, 500, {"error": "state save failure"})
            self._transition(record.job_id, JobState.AWAITING_COMPLETION, asset_path)

            return self._respond(trace, 200, {"jobId": record.job_id, "jobData": record.to_store()})
        except Exception:
            logger.exception("Unhandled error in asset processed webhook")
            return self._respond(trace, 500, {"error": "server error"})

    async def handle_manifest_event(self, params: Mapping[str, Any]) -> WebhookResponse:
        """
        Completion webhook: match a finished manifest job to its record and act on it.

        Unknown and already completed jobs are answered with a 200 no-op so
        redelivered events are harmless.  The incremented pass count is
        persisted before anything else happens.
        """
        trace = self._trace("onManifestComplete")

        if params.get("challenge"):
            return WebhookResponse(status_code=200, body={"challenge": params["challenge"]})

        try:
            check_missing_request_inputs(params, ["event.body.jobId"])
        except ExpressAuditError as exc:
            return error_response(exc.status_code, str(exc), logger)

        job_id = str(get_nested(params, "event.body.jobId"))
        try:
            try:
                record = self.jobs.require(job_id)
            except JobNotFound as exc:
                trace(str(exc))
                return self._respond(trace, exc.status_code, {"message": "No Job Data found", "jobId": job_id})

            if record.processing_complete:
                trace(f"Job {record.job_id} already processed")
                return self._respond(trace, 200, {"message": "Job already processed", "jobId": record.job_id})

            record.process_pass_count += 1
            self.jobs.put(record.job_id, record, self.job_ttl_seconds)
            trace(f"Job {record.job_id} pass {record.process_pass_count}")

            manifest = get_nested(params, "event.body")
            output = get_nested(manifest, "outputs.0")
            if isinstance(output, Mapping) and output.get("status") == "failed":
                return await self._handle_failed_job(record, output, trace)

            return await self._complete_job(record, manifest, trace)
        except Exception:
            logger.exception(f"Unhandled error in manifest complete webhook for job {job_id}")
            return self._respond(trace, 500, {"error": "server error"})

    async def _handle_failed_job(
        self, record: JobRecord, output: Mapping[str, Any], trace: DebugTrace
    ) -> WebhookResponse:
        reason = failure_reason(output)
        passes = record.process_pass_count

        if passes < self.max_process_passes and is_transient_failure(output):
            self._transition(record.job_id, JobState.RETRY_PENDING, record.asset_path)
            logger.warning(f"Job {record.job_id} failed transiently on pass {passes}: {reason}; retrying in {self.retry_backoff_seconds}s")
            await self._sleep(self.retry_backoff_seconds)
            try:
                submission = await self.manifest.submit_manifest_request(record.presigned_download_url, emit_event=True)
            except ExpressAuditError as exc:
                logger.error(f"Resubmission failed for job {record.job_id} ({record.asset_path}): {exc}")
                return self._respond(trace, 500, {"error": "manifest resubmission failure", "jobId": record.job_id})

            record.resubmitted_job_ids.append(submission.job_id)
            self.jobs.put(record.job_id, record, self.job_ttl_seconds)
            self.jobs.put_alias(submission.job_id, record.job_id, self.job_ttl_seconds)
            self._transition(record.job_id, JobState.MANIFEST_SUBMITTED, record.asset_path)
            return self._respond(
                trace,
                202,
                {
                    "message": "retry submitted",
                    "jobId": record.job_id,
                    "retryJobId": submission.job_id,
                    "processPassCount": passes,
                },
            )

        if passes >= self.max_process_passes:
            exc = RetryExhausted(record.job_id, passes)
            logger.error(f"{exc} ({record.asset_path}): {reason}")
            self.jobs.discard(record)
            self._transition(record.job_id, JobState.DISCARDED, record.asset_path)
            return self._respond(trace, exc.status_code, {"error": str(exc), "jobId": record.job_id})

        logger.error(f"Job {record.job_id} ({record.asset_path}) failed: {reason}")
        self._transition(record.job_id, JobState.FAILED, record.asset_path)
        return self._respond(trace, 500, {"error": "manifest job failed", "reason": reason, "jobId": record.job_id})

    async def _complete_job(self, record: JobRecord, manifest: Any, trace: DebugTrace) -> WebhookResponse:
        try:
            report = await self.run_audit(manifest, record.repository_host, record.asset_path, snapshot=record)
        except InvalidManifest as exc:
            logger.error(f"Invalid manifest for job {record.job_id}: {exc}")
            return self._respond(trace, exc.status_code, {"error": str(exc), "jobId": record.job_id})
        except RequestFailed as exc:
            logger.error(f"Writing audit results failed for job {record.job_id} ({record.asset_path}) at {exc.stage}: {exc}")
            return self._respond(trace, exc.status_code, {"error": f"{exc.stage} failure", "jobId": record.job_id})
        except ExpressAuditError as exc:
            logger.error(f"Audit write-back failed for job {record.job_id} ({record.asset_path}): {exc}")
            return self._respond(trace, exc.status_code, {"error": "audit write-back failure", "jobId": record.job_id})
        trace(f"audit written to {record.asset_path}")

        record.processing_complete = True
        self.jobs.put(record.job_id, record, self.job_ttl_seconds)
        self._transition(record.job_id, JobState.SUCCEEDED, record.asset_path)

        self._save_report(report)
        return self._respond(trace, 200, {"jobId": record.job_id, "report": report.get_report_as_json()})

    async def run_audit(
        self,
        manifest: Any,
        host: str,
        path: str,
        snapshot: Optional[JobRecord] = None,
    ) -> AssetReport:
        """
        Evaluate a manifest and write the outcome onto the asset.

        Without a snapshot the asset size comes from a fresh repository
        metadata fetch.  Writes a comment with the full report and patches the
        compatibility metadata field.
        """
        if not isinstance(manifest, Mapping):
            raise InvalidManifest("manifest type is not a json object")

        asset_metadata = None
        if snapshot is None:
            asset_metadata = await self.repository.fetch_asset_metadata(host, path)

        report = build_asset_report(manifest, snapshot=snapshot, asset_metadata=asset_metadata)
        if not report.asset_path:
            report = replace(report, asset_path=path)

        await self.repository.write_report(host, path, report)
        await self.repository.patch_metadata(
            host,
            path,
            self.metadata_property,
            report.express_compatibility,
            asset_id=snapshot.asset_uuid if snapshot else None,
        )
        logger.info(f"Audit of {path}: {report.status}")
        return report

    def _save_report(self, report: AssetReport) -> None:
        if not (self.generate_report_log and self.reports is not None):
            return
        try:
            key = self.reports.write(report)
            logger.debug(f"Saved report {key}")
        except Exception:
            logger.exception(f"Saving report for {report.asset_path} failed")

    async def handle_audit_request(self, params: Mapping[str, Any]) -> WebhookResponse:
        """Synchronous audit of a manifest the caller already holds."""
        trace = self._trace("expressAudit")
        try:
            check_missing_request_inputs(params, ["manifest", "host", "path"])
        except ExpressAuditError as exc:
            return error_response(exc.status_code, str(exc), logger)

        job_data = params.get("jobData") or params.get("job_data")
        if job_data is not None and not isinstance(job_data, Mapping):
            return error_response(400, "invalid jobData", logger)
        try:
            snapshot = JobRecord.model_validate(job_data) if job_data is not None else None
        except ValidationError as exc:
            return error_response(400, f"invalid jobData: {exc.error_count()} error(s)", logger)
        try:
            report = await self.run_audit(params["manifest"], params["host"], params["path"], snapshot=snapshot)
        except ExpressAuditError as exc:
            logger.error(f"Audit of {params['path']} failed: {exc}")
            return self._respond(trace, exc.status_code, {"error": str(exc)})

        if snapshot is not None:
            snapshot.processing_complete = True
            self.jobs.put(snapshot.job_id, snapshot, self.job_ttl_seconds)
        self._save_report(report)
        return self._respond(trace, 200, report.get_report_as_json())

    def report_summary(self) -> WebhookResponse:
        if self.reports is None:
            return error_response(404, "report store not configured", logger)
        summary = aggregate_reports(self.reports)
        return WebhookResponse(status_code=200, body={"assetReport": summary.model_dump()})

    def clean_reports(self) -> WebhookResponse:
        if self.reports is None:
            return error_response(404, "report store not configured", logger)
        deleted = self.reports.delete_all()
        logger.info(f"Deleted {deleted} asset reports")
        return WebhookResponse(status_code=200, body={"deleted": deleted})
