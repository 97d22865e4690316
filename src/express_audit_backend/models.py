from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobState(str, Enum):
    IDLE = "idle"
    PRESIGN_REQUESTED = "presign_requested"
    MANIFEST_SUBMITTED = "manifest_submitted"
    AWAITING_COMPLETION = "awaiting_completion"
    RETRY_PENDING = "retry_pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DISCARDED = "discarded"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class JobRecord(CamelModel):
    """One in-flight audit job, keyed by the manifest service job id."""

    job_id: str
    repository_host: str
    asset_path: str
    presigned_download_url: str
    asset_size_bytes: int = 0
    asset_uuid: Optional[str] = None
    asset_name: Optional[str] = None
    raw_asset_metadata: Dict[str, Any] = Field(default_factory=dict)
    process_pass_count: int = 0
    processing_complete: bool = False
    resubmitted_job_ids: List[str] = Field(default_factory=list)


class ManifestSubmission(BaseModel):
    job_id: str
    raw: Dict[str, Any]


class WebhookResponse(BaseModel):
    status_code: int
    body: Any = None


class ManifestRequest(CamelModel):
    presigned_url: str
    emit_event: bool = False


class ReportSummary(BaseModel):
    total_count: int = 0
    size_was_issue: int = 0
    width_was_issue: int = 0
    height_was_issue: int = 0
    artboard_count_was_issue: int = 0
    image_mode_was_issue: int = 0
    layer_count_was_issue: int = 0
    smart_object_count_was_issue: int = 0
    error_count: int = 0
