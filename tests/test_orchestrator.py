"""
Tests for the two-webhook audit workflow and its retry handling.
"""

import asyncio

import pytest

from express_audit_backend.configuration import make_settings
from express_audit_backend.main import build_orchestrator

TRANSIENT_REASON = "Unable to download the asset"


def _job_keys(orchestrator):
    return [key for key in orchestrator.jobs._store._entries if key.startswith("job:")]


def _start_job(orchestrator, asset_event):
    result = asyncio.run(orchestrator.handle_asset_event(asset_event()))
    assert result.status_code == 200
    return result.body["jobId"]


class TestAssetProcessedWebhook:
    """Tests for the entry webhook."""

    def test_challenge_is_echoed(self, orchestrator, fake_services):
        result = asyncio.run(orchestrator.handle_asset_event({"challenge": "abc123"}))
        assert result.status_code == 200
        assert result.body == {"challenge": "abc123"}
        assert fake_services.requests == []

    def test_missing_data_is_rejected(self, orchestrator):
        result = asyncio.run(orchestrator.handle_asset_event({"type": "aem.assets.asset.processing_completed"}))
        assert result.status_code == 400
        assert result.body == {"error": "missing parameter(s) 'data'"}

    def test_event_without_metadata_is_skipped(self, orchestrator, fake_services):
        result = asyncio.run(orchestrator.handle_asset_event({"data": {"other": 1}}))
        assert result.status_code == 200
        assert result.body == {"status": "skipped - no metadata found"}
        assert fake_services.requests == []

    def test_non_photoshop_asset_is_skipped(self, orchestrator, asset_event, fake_services):
        result = asyncio.run(orchestrator.handle_asset_event(asset_event(asset_format="image/png")))
        assert result.status_code == 200
        assert result.body == {"status": "skipped - no metadata found image/png"}
        assert fake_services.requests == []

    def test_oversized_asset_is_not_processed(self, orchestrator, asset_event, fake_services):
        result = asyncio.run(orchestrator.handle_asset_event(asset_event(size=520093697)))
        assert result.status_code == 204
        assert fake_services.requests == []
        assert _job_keys(orchestrator) == []

    def test_successful_submission_stores_record(self, orchestrator, asset_event, fake_services):
        result = asyncio.run(orchestrator.handle_asset_event(asset_event()))

        assert result.status_code == 200
        assert result.body["jobId"] == "job-1"
        job_data = result.body["jobData"]
        assert job_data["assetPath"] == "/content/dam/brand/hero.psd"
        assert job_data["repositoryHost"] == "https://author-p1-e2.adobeaemcloud.com"
        assert job_data["presignedDownloadUrl"] == "https://presigned.example.com/hero.psd?sig=abc"
        assert job_data["processPassCount"] == 0

        record = orchestrator.jobs.get("job-1")
        assert record.asset_size_bytes == 1000
        assert record.processing_complete is False

        submission = fake_services.requests_for("manifest")[0]
        assert b"https://presigned.example.com/hero.psd?sig=abc" in submission.content

    def test_tokens_are_cached_between_events(self, orchestrator, asset_event, fake_services):
        _start_job(orchestrator, asset_event)
        _start_job(orchestrator, asset_event)
        # one token per downstream service
        assert fake_services.token_requests == 2

    def test_presign_failure_creates_no_record(self, orchestrator, asset_event, fake_services):
        fake_services.status_overrides["download"] = 500
        result = asyncio.run(orchestrator.handle_asset_event(asset_event()))
        assert result.status_code == 500
        assert result.body == {"error": "presigned url pull failure"}
        assert fake_services.manifest_submissions == 0
        assert _job_keys(orchestrator) == []

    def test_manifest_submit_failure_creates_no_record(self, orchestrator, asset_event, fake_services):
        fake_services.status_overrides["manifest"] = 503
        result = asyncio.run(orchestrator.handle_asset_event(asset_event()))
        assert result.status_code == 500
        assert result.body == {"error": "manifest request failure"}
        assert _job_keys(orchestrator) == []

    def test_token_failure_is_reported_as_presign_failure(self, orchestrator, asset_event, fake_services):
        fake_services.status_overrides["token"] = 401
        result = asyncio.run(orchestrator.handle_asset_event(asset_event()))
        assert result.status_code == 500
        assert _job_keys(orchestrator) == []


class TestManifestCompleteWebhook:
    """Tests for the completion webhook."""

    def test_challenge_is_echoed(self, orchestrator):
        result = asyncio.run(orchestrator.handle_manifest_event({"challenge": "xyz"}))
        assert result.body == {"challenge": "xyz"}

    def test_missing_job_id_is_rejected(self, orchestrator):
        result = asyncio.run(orchestrator.handle_manifest_event({"event": {"body": {}}}))
        assert result.status_code == 400
        assert result.body == {"error": "missing parameter(s) 'event.body.jobId'"}

    def test_unknown_job_is_a_no_op(self, orchestrator, manifest_event, fake_services):
        result = asyncio.run(orchestrator.handle_manifest_event(manifest_event("job-unknown")))
        assert result.status_code == 200
        assert result.body == {"message": "No Job Data found", "jobId": "job-unknown"}
        assert fake_services.requests == []

    def test_success_writes_comment_and_metadata(self, orchestrator, asset_event, manifest_event, fake_services):
        job_id = _start_job(orchestrator, asset_event)

        result = asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id)))

        assert result.status_code == 200
        report = result.body["report"]
        assert report["status"] == "ok"
        assert report["size"] == 1000
        assert report["assetPath"] == "/content/dam/brand/hero.psd"

        comments = fake_services.requests_for("comment")
        assert len(comments) == 1
        assert comments[0].url.path.startswith("/api/assets/brand/hero.psd/comments/")
        assert b"status: ok" in comments[0].content

        patches = fake_services.requests_for("metadata_patch")
        assert len(patches) == 1
        assert patches[0].headers["content-type"] == "application/json-patch+json"
        assert b"Compatible_Editable" in patches[0].content

        record = orchestrator.jobs.get(job_id)
        assert record.processing_complete is True
        assert record.process_pass_count == 1

    def test_failing_rule_marks_asset_linked(self, orchestrator, asset_event, manifest_event, fake_services):
        job_id = _start_job(orchestrator, asset_event)
        result = asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id, width=9000)))
        assert result.status_code == 200
        assert result.body["report"]["widthOk"] is False
        assert result.body["report"]["status"] == "error"
        assert b"Compatible_Linked" in fake_services.requests_for("metadata_patch")[0].content

    def test_redelivered_event_is_idempotent(self, orchestrator, asset_event, manifest_event, fake_services):
        job_id = _start_job(orchestrator, asset_event)
        asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id)))

        result = asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id)))

        assert result.status_code == 200
        assert result.body["message"] == "Job already processed"
        assert len(fake_services.requests_for("comment")) == 1
        assert len(fake_services.requests_for("metadata_patch")) == 1
        assert orchestrator.jobs.get(job_id).process_pass_count == 1

    def test_report_is_saved_when_enabled(self, orchestrator, asset_event, manifest_event):
        job_id = _start_job(orchestrator, asset_event)
        asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id)))
        assert orchestrator.reports.list() == ["asset-report/urn-aaid-aem-1234.json"]

    def test_write_back_failure_leaves_job_incomplete(self, orchestrator, asset_event, manifest_event, fake_services):
        job_id = _start_job(orchestrator, asset_event)
        fake_services.status_overrides["comment"] = 500

        result = asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id)))

        assert result.status_code == 500
        assert result.body["error"] == "comment-write failure"
        record = orchestrator.jobs.get(job_id)
        assert record.processing_complete is False
        assert record.process_pass_count == 1
        assert orchestrator.reports.list() == []

    def test_malformed_manifest_is_rejected(self, orchestrator, asset_event):
        job_id = _start_job(orchestrator, asset_event)
        event = {"event": {"body": {"jobId": job_id, "outputs": []}}}
        result = asyncio.run(orchestrator.handle_manifest_event(event))
        assert result.status_code == 400

    @pytest.mark.parametrize(
        "output",
        [
            "failed",
            {"status": "succeeded", "document": "psd", "layers": []},
            {"status": "succeeded", "document": {"width": "wide"}, "layers": []},
            {"status": "succeeded", "document": {}, "layers": 7},
            {"status": "succeeded", "document": {}, "layers": [{"type": "layerSection", "children": 5}]},
        ],
    )
    def test_malformed_output_is_rejected(self, orchestrator, asset_event, fake_services, output):
        job_id = _start_job(orchestrator, asset_event)
        event = {"event": {"body": {"jobId": job_id, "outputs": [output]}}}

        result = asyncio.run(orchestrator.handle_manifest_event(event))

        assert result.status_code == 400
        assert result.body["jobId"] == job_id
        assert fake_services.requests_for("comment") == []
        assert orchestrator.jobs.get(job_id).processing_complete is False

    def test_token_failure_during_write_back(self, orchestrator, asset_event, manifest_event, fake_services):
        job_id = _start_job(orchestrator, asset_event)
        orchestrator.jobs._store.delete("aem-auth-key")
        fake_services.status_overrides["token"] = 401

        result = asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id)))

        assert result.status_code == 500
        assert result.body == {"error": "audit write-back failure", "jobId": job_id}
        record = orchestrator.jobs.get(job_id)
        assert record.processing_complete is False
        assert record.process_pass_count == 1


class TestRetries:
    """Tests for transient failure resubmission and the retry ceiling."""

    def test_transient_failure_then_success(self, orchestrator, asset_event, manifest_event, fake_services, fake_sleep):
        job_id = _start_job(orchestrator, asset_event)

        retry = asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id, status="failed", reason=TRANSIENT_REASON)))
        assert retry.status_code == 202
        assert retry.body["message"] == "retry submitted"
        assert retry.body["retryJobId"] == "job-2"
        assert retry.body["processPassCount"] == 1
        assert fake_sleep.calls == [15]
        assert fake_services.manifest_submissions == 2

        # the resubmitted job resolves to the original record
        assert orchestrator.jobs.resolve("job-2").job_id == job_id
        assert orchestrator.jobs.get("job-2") is None

        result = asyncio.run(orchestrator.handle_manifest_event(manifest_event("job-2")))
        assert result.status_code == 200
        assert result.body["jobId"] == job_id
        assert result.body["report"]["status"] == "ok"

        record = orchestrator.jobs.get(job_id)
        assert record.process_pass_count == 2
        assert record.processing_complete is True
        assert record.resubmitted_job_ids == ["job-2"]

    def test_retry_ceiling_discards_record(self, orchestrator, asset_event, manifest_event, fake_services, fake_sleep):
        job_id = _start_job(orchestrator, asset_event)
        current = job_id

        for attempt in range(1, 5):
            result = asyncio.run(orchestrator.handle_manifest_event(manifest_event(current, status="failed", reason=TRANSIENT_REASON)))
            assert result.status_code == 202
            assert result.body["processPassCount"] == attempt
            current = result.body["retryJobId"]

        final = asyncio.run(orchestrator.handle_manifest_event(manifest_event(current, status="failed", reason=TRANSIENT_REASON)))

        assert final.status_code == 500
        assert final.body["error"] == f"job {job_id} failed after 5 passes"
        # initial submission plus four retries, never a sixth
        assert fake_services.manifest_submissions == 5
        assert len(fake_sleep.calls) == 4
        assert _job_keys(orchestrator) == []
        assert orchestrator.jobs.resolve(job_id) is None
        assert orchestrator.jobs.resolve(current) is None

    def test_non_transient_failure_keeps_record(self, orchestrator, asset_event, manifest_event, fake_services, fake_sleep):
        job_id = _start_job(orchestrator, asset_event)

        result = asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id, status="failed", reason="Invalid input file")))

        assert result.status_code == 500
        assert result.body["error"] == "manifest job failed"
        assert "Invalid input file" in result.body["reason"]
        assert fake_sleep.calls == []
        assert fake_services.manifest_submissions == 1
        record = orchestrator.jobs.get(job_id)
        assert record.process_pass_count == 1
        assert record.processing_complete is False

    def test_resubmission_failure_is_reported(self, orchestrator, asset_event, manifest_event, fake_services):
        job_id = _start_job(orchestrator, asset_event)
        fake_services.status_overrides["manifest"] = 500

        result = asyncio.run(orchestrator.handle_manifest_event(manifest_event(job_id, status="failed", reason=TRANSIENT_REASON)))

        assert result.status_code == 500
        assert result.body["error"] == "manifest resubmission failure"
        assert orchestrator.jobs.get(job_id).process_pass_count == 1


class TestDirectAudit:
    def test_audit_without_snapshot_reads_repository_size(self, orchestrator, manifest_body, fake_services):
        params = {
            "manifest": manifest_body(),
            "host": "https://author-p1-e2.adobeaemcloud.com",
            "path": "/content/dam/brand/hero.psd",
        }
        result = asyncio.run(orchestrator.handle_audit_request(params))

        assert result.status_code == 200
        assert result.body["size"] == 2048
        assert result.body["assetUuid"] == "uuid-1"
        assert result.body["assetPath"] == "/content/dam/brand/hero.psd"
        assert len(fake_services.requests_for("asset_metadata")) == 1
        patch = fake_services.requests_for("metadata_patch")[0]
        assert patch.url.path == "/adobe/repository"
        assert patch.url.params["path"] == "/content/dam/brand/hero.psd"

    def test_audit_requires_inputs(self, orchestrator):
        result = asyncio.run(orchestrator.handle_audit_request({"manifest": {}}))
        assert result.status_code == 400
        assert result.body == {"error": "missing parameter(s) 'host', 'path'"}

    @pytest.mark.parametrize("job_data", ["oops", 42, ["job-1"]])
    def test_audit_rejects_non_object_job_data(self, orchestrator, manifest_body, fake_services, job_data):
        params = {"manifest": manifest_body(), "host": "https://host", "path": "/content/dam/a.psd", "jobData": job_data}
        result = asyncio.run(orchestrator.handle_audit_request(params))
        assert result.status_code == 400
        assert result.body == {"error": "invalid jobData"}
        assert fake_services.requests == []

    def test_audit_rejects_non_object_manifest(self, orchestrator):
        params = {"manifest": "not json", "host": "https://host", "path": "/content/dam/a.psd"}
        result = asyncio.run(orchestrator.handle_audit_request(params))
        assert result.status_code == 400


class TestDebugTrace:
    def test_debug_messages_attached_in_debug_mode(self, http_client, fake_sleep, report_root):
        settings = make_settings(
            {
                "log_level": "debug",
                "state": {"backend": "memory"},
                "reports": {"backend": "local", "local_root": report_root},
            }
        )
        orchestrator = build_orchestrator(settings, http_client=http_client, sleep=fake_sleep)
        result = asyncio.run(orchestrator.handle_asset_event({"data": {"other": 1}}))
        assert result.body["debug"]["onAssetProcessed"] == [{"debugMessage": "No repository metadata found"}]

    def test_no_debug_key_by_default(self, orchestrator):
        result = asyncio.run(orchestrator.handle_asset_event({"data": {"other": 1}}))
        assert "debug" not in result.body
