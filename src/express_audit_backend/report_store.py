"""
Persisted asset reports and their on-demand aggregation.

Reports are JSON blobs stored under a key prefix, one per audited asset
(``<prefix><asset uuid>.json``), so re-auditing an asset overwrites its
previous report.  Two backends share one interface:

- LocalReportStore: files under a local directory
- S3ReportStore: objects in the bucket named by ``S3_BUCKET_NAME``

No index is kept; :func:`aggregate_reports` reads every report on each call.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, List, Protocol

import boto3
from botocore.exceptions import ClientError

from .models import ReportSummary
from .report_engine import AssetReport
from .utils import ensure_directory, sanitize_label

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "asset-report/"


def report_key(report: AssetReport, prefix: str = DEFAULT_PREFIX) -> str:
    if report.asset_uuid:
        return f"{prefix}{sanitize_label(report.asset_uuid, fallback='asset')}.json"
    return f"{prefix}{report.filename}"


class ReportStore(Protocol):
    prefix: str

    def list(self) -> List[str]: ...

    def read(self, key: str) -> Dict[str, Any]: ...

    def write(self, report: AssetReport) -> str: ...

    def delete_all(self) -> int: ...


class LocalReportStore:
    def __init__(self, root: Path, prefix: str = DEFAULT_PREFIX) -> None:
        self.root = Path(root)
        self.prefix = prefix

    @property
    def directory(self) -> Path:
        return self.root / self.prefix

    def list(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(f"{self.prefix}{path.name}" for path in self.directory.glob("*.json"))

    def read(self, key: str) -> Dict[str, Any]:
        return json.loads((self.root / key).read_text(encoding="utf-8"))

    def write(self, report: AssetReport) -> str:
        key = report_key(report, self.prefix)
        ensure_directory(self.directory)
        (self.root / key).write_text(json.dumps(report.get_report_as_json(), indent=2), encoding="utf-8")
        logger.debug(f"Saved asset report {key} to {self.root}")
        return key

    def delete_all(self) -> int:
        count = len(self.list())
        shutil.rmtree(self.directory, ignore_errors=True)
        return count


class S3ReportStore:
    def __init__(self, bucket: str, prefix: str = DEFAULT_PREFIX, client: Any = None) -> None:
        self.bucket = bucket
        self.prefix = prefix
        self._client = client or boto3.client("s3")

    def list(self) -> List[str]:
        keys: List[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except ClientError as e:
            logger.error(f"Listing s3://{self.bucket}/{self.prefix} failed: {e}")
            raise
        return sorted(keys)

    def read(self, key: str) -> Dict[str, Any]:
        response = self._client.get_object(Bucket=self.bucket, Key=key)
        return json.loads(response["Body"].read())

    def write(self, report: AssetReport) -> str:
        key = report_key(report, self.prefix)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=json.dumps(report.get_report_as_json()).encode("utf-8"),
                ContentType="application/json",
            )
        except ClientError as e:
            logger.error(f"Saving report to s3://{self.bucket}/{key} failed: {e}")
            raise
        logger.debug(f"Saved asset report s3://{self.bucket}/{key}")
        return key

    def delete_all(self) -> int:
        keys = self.list()
        # delete_objects accepts at most 1000 keys per call
        for start in range(0, len(keys), 1000):
            batch = [{"Key": key} for key in keys[start:start + 1000]]
            self._client.delete_objects(Bucket=self.bucket, Delete={"Objects": batch})
        return len(keys)


_ISSUE_FIELDS = {
    "sizeOk": "size_was_issue",
    "widthOk": "width_was_issue",
    "heightOk": "height_was_issue",
    "artboardCountOk": "artboard_count_was_issue",
    "imageModeOk": "image_mode_was_issue",
    "layerCountOk": "layer_count_was_issue",
    "smartObjectCountOk": "smart_object_count_was_issue",
}


def summarize(reports: Iterable[Dict[str, Any]]) -> ReportSummary:
    counts: Dict[str, int] = {name: 0 for name in ReportSummary.model_fields}
    for report in reports:
        counts["total_count"] += 1
        for rule, counter in _ISSUE_FIELDS.items():
            if report.get(rule) is False:
                counts[counter] += 1
        if report.get("status") == "error":
            counts["error_count"] += 1
    return ReportSummary(**counts)


def aggregate_reports(store: ReportStore) -> ReportSummary:
    return summarize(store.read(key) for key in store.list())


def create_report_store(backend: str, prefix: str, local_root: str = "data/reports", s3_bucket: str = "") -> ReportStore:
    if backend == "s3":
        if not s3_bucket:
            raise ValueError("S3 report backend selected but S3_BUCKET_NAME is not configured")
        return S3ReportStore(s3_bucket, prefix)
    if backend == "local":
        return LocalReportStore(Path(local_root), prefix)
    raise ValueError(f"Unknown report backend: {backend}")
