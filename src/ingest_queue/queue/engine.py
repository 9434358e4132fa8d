"""Job queue engine: the only component that mutates job status.

Wraps a JobStore with input validation, the state machine and stuck-job
reclamation. All time arithmetic goes through the injected clock.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from ..errors import InvalidTransition, ValidationError
from ..models import QueueConfig
from .backends import JobStore
from .models import IngestFileInput, Job, JobStatus, parse_job_input, parse_job_type
from .sqlite_backend import utcnow

logger = logging.getLogger(__name__)

STUCK_JOB_REASON = "Job stuck in processing state - automatically failed"


class JobQueue:
    """Queue operations over an abstract JobStore.

    State machine:
        enqueue        -> queued
        claim_next     queued -> processing
        complete       processing -> done
        fail           processing -> failed
        reclaim_stuck  processing -> failed (stale only)
        retry          failed -> queued (administrative)
    """

    def __init__(
        self,
        store: JobStore,
        config: Optional[QueueConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or QueueConfig()
        self.clock = clock

    def enqueue(
        self,
        job_type: Any,
        input: Union[Dict[str, Any], BaseModel],
        created_by: Optional[str] = None,
    ) -> int:
        """Validate and insert a queued job.

        Raises:
            ValidationError: Unknown type or input not matching its schema
            StoreError: Store unavailable
        """
        parsed_type = parse_job_type(job_type)
        payload = parse_job_input(parsed_type, input)
        job = self.store.insert_job(
            parsed_type.value, payload.model_dump(mode="json"), created_by
        )
        logger.info(
            "Enqueued job %s (%s)", job.id, job.type,
            extra={"job_id": job.id, "job_type": job.type},
        )
        return job.id

    def enqueue_ingest(
        self,
        job_type: Any,
        input: Union[Dict[str, Any], BaseModel],
        meta: Dict[str, Any],
        source: str = "upload",
    ) -> Job:
        """Record an ingest file and queue its ingest_* job atomically.

        Either both rows are written or neither is. The new ingest file id
        is written into the job input.

        Raises:
            ValidationError: Not an ingest job type, or input not matching its schema
            StoreError: Store unavailable
        """
        parsed_type = parse_job_type(job_type)
        payload = parse_job_input(parsed_type, input)
        if not isinstance(payload, IngestFileInput):
            raise ValidationError(f"{parsed_type.value} is not an ingest job type")
        owner = payload.resolve_owner()
        job = self.store.insert_job(
            parsed_type.value,
            payload.model_dump(mode="json"),
            owner,
            ingest_file={
                "owner": owner,
                "source": source,
                "storage_path": payload.storage_path,
                "mime_type": payload.mime_type,
                "meta": meta,
            },
        )
        logger.info(
            "Enqueued job %s (%s) for ingest file %s",
            job.id, job.type, job.input["ingest_file_id"],
            extra={"job_id": job.id, "job_type": job.type},
        )
        return job

    def claim_next(self) -> Optional[Job]:
        job = self.store.claim_next()
        if job:
            logger.info("Claimed job %s (%s)", job.id, job.type, extra={"job_id": job.id})
        return job

    def _expect_transition(
        self,
        job_id: int,
        from_status: JobStatus,
        to_status: JobStatus,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Job:
        job = self.store.transition(job_id, from_status, to_status, output=output, error=error)
        if job is None:
            current = self.store.get_job(job_id)
            actual = current.status.value if current else None
            logger.error(
                "Invalid transition for job %s: expected %s, found %s",
                job_id, from_status.value, actual,
                extra={"job_id": job_id},
            )
            raise InvalidTransition(job_id, from_status.value, actual)
        return job

    def complete(self, job_id: int, output: Union[Dict[str, Any], BaseModel]) -> Job:
        """Move a processing job to done and record its output.

        Raises:
            InvalidTransition: Job is not processing
        """
        if isinstance(output, BaseModel):
            output = output.model_dump(mode="json")
        job = self._expect_transition(
            job_id, JobStatus.PROCESSING, JobStatus.DONE, output=output or {}
        )
        logger.info("Job %s done", job_id, extra={"job_id": job_id})
        return job

    def fail(self, job_id: int, reason: str) -> Job:
        """Move a processing job to failed and record the reason.

        Raises:
            InvalidTransition: Job is not processing
        """
        job = self._expect_transition(
            job_id, JobStatus.PROCESSING, JobStatus.FAILED, error=reason or "unknown error"
        )
        logger.warning("Job %s failed: %s", job_id, reason, extra={"job_id": job_id})
        return job

    def find_stuck(self, threshold_minutes: Optional[int] = None) -> List[Job]:
        """Processing jobs whose updated_at is older than the detection threshold."""
        minutes = self.config.stuck_detect_minutes if threshold_minutes is None else threshold_minutes
        cutoff = self.clock() - timedelta(minutes=minutes)
        return self.store.list_jobs(status=JobStatus.PROCESSING, updated_before=cutoff)

    def reclaim_stuck(self, threshold_minutes: Optional[int] = None) -> List[int]:
        """Fail processing jobs older than the force-fail threshold.

        Idempotent: a second call with no new stale jobs returns [].
        """
        minutes = self.config.stuck_fail_minutes if threshold_minutes is None else threshold_minutes
        cutoff = self.clock() - timedelta(minutes=minutes)
        reclaimed = self.store.fail_stale(cutoff, STUCK_JOB_REASON)
        if reclaimed:
            logger.warning("Reclaimed %d stuck job(s): %s", len(reclaimed), reclaimed)
        return reclaimed

    def cleanup_old(self, older_than_days: Optional[int] = None) -> int:
        """Delete done/failed jobs created before the retention window."""
        days = self.config.retention_days if older_than_days is None else older_than_days
        cutoff = self.clock() - timedelta(days=days)
        deleted = self.store.delete_terminal(cutoff)
        logger.info("Deleted %d terminal job(s) older than %d days", deleted, days)
        return deleted

    def retry(self, job_id: int) -> Job:
        """Administrative reset of a failed job to queued.

        The job joins the back of the queue (created_at is refreshed).

        Raises:
            InvalidTransition: Job is not failed
        """
        job = self.store.requeue(job_id)
        if job is None:
            current = self.store.get_job(job_id)
            raise InvalidTransition(
                job_id, JobStatus.FAILED.value, current.status.value if current else None
            )
        logger.info("Job %s requeued by retry", job_id, extra={"job_id": job_id})
        return job

    def get(self, job_id: int) -> Optional[Job]:
        return self.store.get_job(job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        created_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        return self.store.list_jobs(
            status=status, job_type=job_type, created_by=created_by, limit=limit
        )

    def stats(self) -> Dict[str, Any]:
        """Counts per status, per type and per (status, type)."""
        by_status = {status.value: 0 for status in JobStatus}
        by_type: Dict[str, int] = {}
        breakdown: Dict[str, Dict[str, int]] = {}
        for status, job_type, count in self.store.count_by_status_and_type():
            by_status[status] = by_status.get(status, 0) + count
            by_type[job_type] = by_type.get(job_type, 0) + count
            breakdown.setdefault(status, {})[job_type] = count
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_type": by_type,
            "by_status_and_type": breakdown,
        }
