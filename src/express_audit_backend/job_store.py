"""
Correlation records for in-flight audit jobs.

A record is written by the entry webhook under the manifest service job id and
read back by the completion webhook carrying that id.  A retry resubmission is
issued a new job id by the manifest service; that id is stored as an alias
pointing at the original record, so pass counting continues on one record.

There is no compare-and-swap in the underlying state store.  Two concurrent
deliveries for the same job can both read the same pass count; the retry
ceiling bounds what such a race can cost.
"""

from __future__ import annotations

import logging
from typing import Optional

from .errors import JobNotFound
from .models import JobRecord
from .state_store import StateStore

logger = logging.getLogger(__name__)

# 18000 seconds (5 hours) is the ttl every job write uses.
DEFAULT_JOB_TTL_SECONDS = 18000

_ALIAS_KEY = "aliasOf"


class JobCorrelationStore:
    def __init__(self, store: StateStore, key_prefix: str = "job:") -> None:
        self._store = store
        self.key_prefix = key_prefix

    def _key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    def put(self, job_id: str, record: JobRecord, ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS) -> None:
        self._store.put(self._key(job_id), record.to_store(), ttl_seconds)

    def get(self, job_id: str) -> Optional[JobRecord]:
        data = self._store.get(self._key(job_id))
        if data is None or _ALIAS_KEY in data:
            return None
        return JobRecord.model_validate(data)

    def delete(self, job_id: str) -> bool:
        return self._store.delete(self._key(job_id))

    def put_alias(self, alias_id: str, job_id: str, ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS) -> None:
        self._store.put(self._key(alias_id), {_ALIAS_KEY: job_id}, ttl_seconds)

    def resolve(self, job_id: str) -> Optional[JobRecord]:
        """Return the record for ``job_id``, following a retry alias to its original record."""
        data = self._store.get(self._key(job_id))
        if data is None:
            return None
        if _ALIAS_KEY in data:
            logger.debug(f"Job {job_id} is a resubmission of {data[_ALIAS_KEY]}")
            return self.get(data[_ALIAS_KEY])
        return JobRecord.model_validate(data)

    def require(self, job_id: str) -> JobRecord:
        record = self.resolve(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return record

    def discard(self, record: JobRecord) -> None:
        """Delete a record together with every alias issued for it."""
        for alias_id in record.resubmitted_job_ids:
            self.delete(alias_id)
        self.delete(record.job_id)
