"""Pull-based worker: claims and executes at most one job per invocation.

This module provides the worker loop with:
- Exhaustive dispatch over JobType, failing unknown stored types
- Per-job error containment (processor exceptions become failed jobs)
- No in-process scheduling; the cron driver decides how often to call it
"""

import logging
from typing import Callable, Dict

from pydantic import BaseModel

from ..errors import InvalidTransition
from ..processors.base import ContentProcessor
from .engine import JobQueue
from .models import OUTPUT_MODELS, Job, JobOutcome, JobStatus, JobType, RunResult, parse_job_input

logger = logging.getLogger(__name__)


class Worker:
    def __init__(self, queue: JobQueue, processor: ContentProcessor):
        self.queue = queue
        self.processor = processor
        self._handlers: Dict[JobType, Callable[[Job, BaseModel], BaseModel]] = {
            JobType.INGEST_IMAGE: processor.ingest_image,
            JobType.INGEST_VIDEO: processor.ingest_video,
            JobType.INGEST_PDF: processor.ingest_pdf,
            JobType.AI_GENERATE_CARDS: processor.generate_cards,
        }
        missing = set(JobType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for job types: {sorted(t.value for t in missing)}")

    def _dispatch(self, job: Job) -> dict:
        job_type = job.job_type
        if job_type is None:
            raise ValueError(f"unknown job type: {job.type}")
        payload = parse_job_input(job_type, job.input)
        result = self._handlers[job_type](job, payload)
        model = OUTPUT_MODELS[job_type]
        if not isinstance(result, model):
            raise TypeError(
                f"{job_type.value} handler returned {type(result).__name__}, expected {model.__name__}"
            )
        return result.model_dump(mode="json")

    def _record_failure(self, job: Job, reason: str) -> JobOutcome:
        try:
            self.queue.fail(job.id, reason)
        except InvalidTransition as e:
            # Reclaimed by reclaim_stuck while we were running
            logger.warning("Could not record failure for job %s: %s", job.id, e.message)
        return JobOutcome(id=job.id, type=job.type, status=JobStatus.FAILED, error=reason)

    def run_once(self) -> RunResult:
        """Claim the oldest queued job and run it.

        Returns:
            RunResult with processed=0 and no jobs when the queue is empty,
            otherwise processed=1 and one outcome

        Raises:
            StoreError: If the store cannot be reached for the claim
        """
        job = self.queue.claim_next()
        if job is None:
            logger.info("No queued jobs found")
            return RunResult(processed=0, jobs=[])

        logger.info("Processing job %s (%s)", job.id, job.type, extra={"job_id": job.id})
        try:
            output = self._dispatch(job)
        except Exception as e:
            reason = getattr(e, "message", None) or str(e) or type(e).__name__
            logger.error(
                "Job %s (%s) failed: %s", job.id, job.type, reason, extra={"job_id": job.id}
            )
            return RunResult(processed=1, jobs=[self._record_failure(job, reason)])

        try:
            self.queue.complete(job.id, output)
        except InvalidTransition as e:
            return RunResult(
                processed=1,
                jobs=[JobOutcome(id=job.id, type=job.type, status=JobStatus.FAILED, error=e.message)],
            )

        logger.info("Job %s (%s) completed", job.id, job.type, extra={"job_id": job.id})
        return RunResult(
            processed=1,
            jobs=[JobOutcome(id=job.id, type=job.type, status=JobStatus.DONE, result=output)],
        )
