"""Cron scheduling driver.

Each tick invokes the worker a bounded number of times across a call
boundary, sleeping between iterations. A failing iteration is recorded and
the loop moves on.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .errors import IngestQueueError, ValidationError
from .models import SchedulerConfig
from .queue.models import RunResult
from .queue.worker import Worker

logger = logging.getLogger(__name__)


class WorkerInvoker(ABC):
    @abstractmethod
    def invoke(self) -> RunResult:
        """Run the worker once; raise on transport or worker failure."""


class InProcessWorkerInvoker(WorkerInvoker):
    def __init__(self, worker: Worker):
        self.worker = worker

    def invoke(self) -> RunResult:
        return self.worker.run_once()


class HttpWorkerInvoker(WorkerInvoker):
    """POSTs to the worker endpoint with the worker bearer secret."""

    def __init__(
        self,
        url: str,
        worker_secret: Optional[str],
        timeout_s: float = 60.0,
        client: Optional[httpx.Client] = None,
    ):
        if not worker_secret:
            raise ValidationError("JOB_WORKER_SECRET is required to call the worker over HTTP")
        self.url = url
        self.worker_secret = worker_secret
        self.client = client or httpx.Client(timeout=timeout_s)

    def invoke(self) -> RunResult:
        response = self.client.post(
            self.url,
            headers={"Authorization": f"Bearer {self.worker_secret}"},
        )
        if response.status_code >= 400:
            raise IngestQueueError(
                f"Worker pull failed: {response.status_code} {response.reason_phrase}"
            )
        return RunResult.model_validate(response.json())

    def close(self) -> None:
        self.client.close()


def parse_tick_params(
    iterations: Any, delay_ms: Any, config: Optional[SchedulerConfig] = None
) -> Tuple[int, int]:
    """Validate ?iterations and ?delay against the configured bounds.

    Raises:
        ValidationError: Non-integer or out-of-range values
    """
    config = config or SchedulerConfig()
    if iterations is None or iterations == "":
        iterations = config.default_iterations
    if delay_ms is None or delay_ms == "":
        delay_ms = config.default_delay_ms
    try:
        iterations = int(iterations)
        delay_ms = int(delay_ms)
    except (TypeError, ValueError):
        raise ValidationError(
            "iterations and delay must be integers",
            details={"iterations": str(iterations), "delay": str(delay_ms)},
        )
    if not 1 <= iterations <= config.max_iterations:
        raise ValidationError(f"iterations must be between 1 and {config.max_iterations}")
    if not 0 <= delay_ms <= config.max_delay_ms:
        raise ValidationError(f"delay must be between 0 and {config.max_delay_ms} ms")
    return iterations, delay_ms


def summarize(results: List[RunResult]) -> Dict[str, int]:
    return {
        "totalProcessed": sum(r.processed for r in results),
        "totalJobs": len(results),
    }


class CronDriver:
    def __init__(
        self,
        invoker: WorkerInvoker,
        config: Optional[SchedulerConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.invoker = invoker
        self.config = config or SchedulerConfig()
        self.sleep = sleep

    def tick(self, iterations: int = 1, delay_ms: int = 0) -> List[RunResult]:
        """Invoke the worker `iterations` times, `delay_ms` apart.

        No sleep after the last iteration. Never raises for an iteration
        failure; the failure is recorded as {processed: 0, jobs: [], error}.
        """
        if iterations < 1:
            raise ValidationError("iterations must be >= 1")
        if delay_ms < 0:
            raise ValidationError("delay must be >= 0")

        logger.info("Cron tick started (iterations=%d, delay=%dms)", iterations, delay_ms)
        results: List[RunResult] = []
        for i in range(iterations):
            try:
                logger.debug("Processing iteration %d/%d", i + 1, iterations)
                results.append(self.invoker.invoke())
            except Exception as e:
                message = getattr(e, "message", None) or str(e) or type(e).__name__
                logger.error("Iteration %d failed: %s", i + 1, message)
                results.append(RunResult(processed=0, jobs=[], error=message))
            if i < iterations - 1 and delay_ms > 0:
                self.sleep(delay_ms / 1000.0)

        logger.info("Cron tick finished: %s", summarize(results))
        return results


def build_invoker(config, worker: Optional[Worker] = None) -> WorkerInvoker:
    """HTTP invoker when scheduler.worker_url is set, otherwise in-process."""
    if config.scheduler.worker_url:
        return HttpWorkerInvoker(
            config.scheduler.worker_url,
            config.secrets.worker_secret,
            timeout_s=config.scheduler.worker_timeout_s,
        )
    if worker is None:
        raise ValidationError("An in-process worker is required when no worker_url is set")
    return InProcessWorkerInvoker(worker)
