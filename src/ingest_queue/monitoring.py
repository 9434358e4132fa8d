"""Health and monitoring probe.

Read-only aggregation over the job and record stores, plus the admin
cleanup operation. Response dictionaries use the camelCase keys of the
HTTP contract.
"""

import logging
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import IngestQueueError, ValidationError
from .models import IngestQueueConfig
from .queue.backends import RecordStore
from .queue.engine import JobQueue
from .queue.models import Job, JobStatus
from .queue.retry import retry_with_backoff
from .queue.sqlite_backend import utcnow
from .storage import LocalStorage

logger = logging.getLogger(__name__)

HEALTH_CHECK_TYPES = ("basic", "detailed", "queue", "storage")

_STARTED = time.monotonic()


def _uptime() -> str:
    return f"{int(time.monotonic() - _STARTED)}s"


def _count_by(items: Iterable[Any], key: Callable[[Any], Any]) -> Dict[str, int]:
    return dict(Counter(str(key(item)) for item in items))


def _owner(job: Job) -> str:
    return job.created_by or "unknown"


def processing_times(jobs: List[Job]) -> Dict[str, Any]:
    """Seconds from creation to completion for done jobs."""
    times = sorted(
        (job.updated_at - job.created_at).total_seconds()
        for job in jobs
        if job.status == JobStatus.DONE
    )
    if not times:
        return {"average": 0, "median": 0, "min": 0, "max": 0, "count": 0}
    return {
        "average": round(sum(times) / len(times)),
        "median": round(times[len(times) // 2]),
        "min": round(times[0]),
        "max": round(times[-1]),
        "count": len(times),
    }


def analyze_errors(jobs: List[Job]) -> Dict[str, Any]:
    failed = [job for job in jobs if job.status == JobStatus.FAILED]
    return {
        "total": len(failed),
        "byType": _count_by(failed, lambda j: j.type),
        "byError": _count_by(failed, lambda j: j.error),
    }


def health_score(by_status: Dict[str, int], recent_errors: int) -> int:
    score = 100
    queued = by_status.get(JobStatus.QUEUED.value, 0)
    if queued > 50:
        score -= 20
    elif queued > 20:
        score -= 10
    if by_status.get(JobStatus.PROCESSING.value, 0) > 10:
        score -= 15
    if recent_errors > 10:
        score -= 25
    elif recent_errors > 5:
        score -= 15
    return max(0, score)


class Monitor:
    def __init__(
        self,
        queue: JobQueue,
        records: RecordStore,
        storage: LocalStorage,
        config: Optional[IngestQueueConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.store = queue.store
        self.records = records
        self.storage = storage
        self.config = config or IngestQueueConfig()
        self.clock = clock

    def _ago(self, **delta: float) -> datetime:
        return self.clock() - timedelta(**delta)

    def _timestamp(self) -> str:
        return self.clock().isoformat()

    # --- Health ---

    def health(self, check_type: str = "basic") -> Dict[str, Any]:
        """Run one health check; the result always carries `healthy`.

        Raises:
            ValidationError: Unknown check type
        """
        checks = {
            "basic": self.basic_health,
            "detailed": self.detailed_health,
            "queue": self.queue_health_check,
            "storage": self.storage_health,
        }
        if check_type not in checks:
            raise ValidationError(
                "Invalid health check type", details={"allowed": list(HEALTH_CHECK_TYPES)}
            )
        return checks[check_type]()

    def basic_health(self) -> Dict[str, Any]:
        start = time.monotonic()
        try:
            self.store.ping()
        except IngestQueueError as e:
            return {
                "healthy": False,
                "timestamp": self._timestamp(),
                "error": e.message,
                "checks": {"database": {"status": "unhealthy", "error": e.message}},
            }
        elapsed_ms = round((time.monotonic() - start) * 1000)
        return {
            "healthy": True,
            "timestamp": self._timestamp(),
            "checks": {"database": {"status": "healthy", "responseTime": f"{elapsed_ms}ms"}},
            "uptime": _uptime(),
        }

    def _database_check(self) -> Dict[str, Any]:
        start = time.monotonic()
        try:
            retry_with_backoff(
                self.store.ping,
                max_retries=self.config.store.busy_retries - 1,
                base_delay_s=self.config.store.busy_base_delay_s,
                retry_on=(IngestQueueError,),
            )
        except IngestQueueError as e:
            return {"status": "unhealthy", "error": e.message}
        return {"status": "healthy", "responseTime": round((time.monotonic() - start) * 1000)}

    def _job_queue_check(self) -> Dict[str, Any]:
        try:
            return {
                "status": "healthy",
                "queued": self.store.count_jobs(status=JobStatus.QUEUED),
                "processing": self.store.count_jobs(status=JobStatus.PROCESSING),
                "failed": self.store.count_jobs(
                    status=JobStatus.FAILED, created_after=self._ago(hours=24)
                ),
            }
        except IngestQueueError as e:
            return {"status": "unhealthy", "error": e.message}

    def _storage_check(self) -> Dict[str, Any]:
        buckets = {
            bucket: {"status": "healthy"} if exists else {
                "status": "unhealthy",
                "error": f"Bucket root missing: {self.storage.bucket_path(bucket)}",
            }
            for bucket, exists in self.storage.bucket_status().items()
        }
        healthy = all(b["status"] == "healthy" for b in buckets.values())
        return {"status": "healthy" if healthy else "unhealthy", "buckets": buckets}

    def _environment_check(self) -> Dict[str, Any]:
        secrets = self.config.secrets
        required = {
            "FILE_PROCESSING_WEBHOOK_SECRET": secrets.webhook_secret,
            "JOB_WORKER_SECRET": secrets.worker_secret,
        }
        optional = {
            "CRON_SECRET": secrets.cron_secret,
            "OPENAI_API_KEY": self.config.ai.openai_api_key,
        }
        missing = [name for name, value in required.items() if not value]
        return {
            "status": "healthy" if not missing else "unhealthy",
            "required": {
                "present": len(required) - len(missing),
                "missing": len(missing),
                "missingVars": missing,
            },
            "optional": {
                "present": sum(1 for value in optional.values() if value),
                "total": len(optional),
            },
            "provider": self.config.ai.provider,
        }

    def detailed_health(self) -> Dict[str, Any]:
        start = time.monotonic()
        checks = {
            "database": self._database_check(),
            "job_queue": self._job_queue_check(),
            "storage": self._storage_check(),
            "environment": self._environment_check(),
        }
        healthy_count = sum(1 for c in checks.values() if c["status"] == "healthy")
        return {
            "healthy": healthy_count == len(checks),
            "timestamp": self._timestamp(),
            "checks": checks,
            "summary": {
                "totalChecks": len(checks),
                "healthyChecks": healthy_count,
                "responseTime": f"{round((time.monotonic() - start) * 1000)}ms",
            },
        }

    def queue_summary(self) -> Dict[str, Any]:
        stats = self.queue.stats()
        return {
            "total": stats["total"],
            "byStatus": stats["by_status"],
            "byType": stats["by_type"],
        }

    def queue_health(self) -> Dict[str, Any]:
        """Stuck, recently failed and queued counts with a healthy verdict."""
        stuck = self.queue.find_stuck()
        failed_last_hour = self.store.count_jobs(
            status=JobStatus.FAILED, created_after=self._ago(hours=1)
        )
        queued = self.store.list_jobs(status=JobStatus.QUEUED, limit=1)
        return {
            "healthy": not stuck and failed_last_hour < self.config.monitoring.failed_jobs_unhealthy,
            "stuckJobs": len(stuck),
            "failedJobs": failed_last_hour,
            "queuedJobs": self.store.count_jobs(status=JobStatus.QUEUED),
            "oldestQueued": queued[0].created_at.isoformat() if queued else None,
        }

    def queue_health_check(self) -> Dict[str, Any]:
        try:
            health = self.queue_health()
            return {
                "healthy": health["healthy"],
                "timestamp": self._timestamp(),
                "queue": {
                    "summary": self.queue_summary(),
                    "recentJobs": len(self.store.list_jobs(newest_first=True, limit=10)),
                    "stuckJobs": health["stuckJobs"],
                    "failedLastHour": health["failedJobs"],
                    "oldestQueued": health["oldestQueued"],
                },
            }
        except IngestQueueError as e:
            return {"healthy": False, "timestamp": self._timestamp(), "error": e.message}

    def storage_health(self) -> Dict[str, Any]:
        check = self._storage_check()
        return {
            "healthy": check["status"] == "healthy",
            "timestamp": self._timestamp(),
            "storage": check["buckets"],
        }

    # --- Metrics ---

    def metrics(self) -> Dict[str, Any]:
        since = self._ago(hours=24)
        jobs = self.store.list_jobs(created_after=since)
        media = self.records.list_records("media_assets", created_after=since)
        cards = self.records.list_records("cards", created_after=since)
        decks = self.records.list_records("decks", created_after=since)

        return {
            "timestamp": self._timestamp(),
            "period": "24h",
            "jobs": {
                "total": len(jobs),
                "byStatus": _count_by(jobs, lambda j: j.status.value),
                "byType": _count_by(jobs, lambda j: j.type),
                "processingTimes": processing_times(jobs),
                "errorAnalysis": analyze_errors(jobs),
            },
            "media": {"total": len(media), "byType": _count_by(media, lambda m: m["type"])},
            "cards": {
                "total": len(cards),
                "active": sum(1 for c in cards if c["is_active"]),
                "drafts": sum(1 for c in cards if not c["is_active"]),
                "byDeck": _count_by(cards, lambda c: c["deck_id"]),
            },
            "decks": {
                "total": len(decks),
                "byVisibility": _count_by(decks, lambda d: d["visibility"]),
            },
            "queue": {"status": self.queue_summary(), "health": self.queue_health()},
            "users": self._user_activity(jobs, media),
            "system": {"uptime": _uptime()},
        }

    @staticmethod
    def _user_activity(jobs: List[Job], media: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        job_counts = Counter(_owner(job) for job in jobs)
        media_counts = Counter(asset["owner"] for asset in media)
        users = [
            {
                "userId": user,
                "jobs": job_counts[user],
                "mediaAssets": media_counts[user],
                "totalActivity": job_counts[user] + media_counts[user],
            }
            for user in set(job_counts) | set(media_counts)
        ]
        users.sort(key=lambda u: (-u["totalActivity"], u["userId"]))
        return users[:10]

    # --- Alerts ---

    def alerts(self) -> Dict[str, Any]:
        monitoring = self.config.monitoring
        alerts: List[Dict[str, Any]] = []

        stuck = self.queue.find_stuck()
        if stuck:
            oldest = min(stuck, key=lambda j: j.updated_at)
            alerts.append({
                "type": "warning",
                "severity": "high",
                "message": f"{len(stuck)} jobs stuck in processing state",
                "details": {"jobIds": [j.id for j in stuck], "oldestStuck": oldest.to_dict()},
            })

        recent = self.store.list_jobs(created_after=self._ago(hours=1))
        if recent:
            failed = sum(1 for j in recent if j.status == JobStatus.FAILED)
            failure_rate = failed / len(recent)
            if failure_rate > monitoring.failure_rate_threshold:
                alerts.append({
                    "type": "error",
                    "severity": "high",
                    "message": f"High failure rate: {round(failure_rate * 100)}%",
                    "details": {
                        "totalJobs": len(recent),
                        "failedJobs": failed,
                        "failureRate": failure_rate,
                    },
                })

        queue_health = self.queue_health()
        if not queue_health["healthy"]:
            alerts.append({
                "type": "warning",
                "severity": "medium",
                "message": "Queue health issues detected",
                "details": queue_health,
            })

        old_queued = self.store.list_jobs(
            status=JobStatus.QUEUED,
            created_before=self._ago(minutes=monitoring.queued_age_minutes),
        )
        if old_queued:
            alerts.append({
                "type": "warning",
                "severity": "medium",
                "message": (
                    f"{len(old_queued)} jobs queued for over "
                    f"{monitoring.queued_age_minutes} minutes"
                ),
                "details": {"oldestQueued": old_queued[0].to_dict()},
            })

        missing = [bucket for bucket, ok in self.storage.bucket_status().items() if not ok]
        if missing:
            alerts.append({
                "type": "warning",
                "severity": "medium",
                "message": f"Storage buckets missing: {', '.join(missing)}",
                "details": {"buckets": missing},
            })

        severities = Counter(alert["severity"] for alert in alerts)
        return {
            "timestamp": self._timestamp(),
            "alerts": alerts,
            "summary": {
                "total": len(alerts),
                "bySeverity": {level: severities[level] for level in ("high", "medium", "low")},
            },
        }

    # --- Dashboard ---

    def hourly_activity(self) -> List[Dict[str, int]]:
        """Jobs created in the last 24h bucketed by UTC hour of day."""
        counts = Counter(
            job.created_at.hour for job in self.store.list_jobs(created_after=self._ago(hours=24))
        )
        return [{"hour": hour, "count": counts[hour]} for hour in range(24)]

    def top_users(self) -> List[Dict[str, Any]]:
        by_user: Dict[str, Counter] = {}
        for job in self.store.list_jobs(created_after=self._ago(days=7)):
            by_user.setdefault(_owner(job), Counter())[job.type] += 1
        users = [
            {"userId": user, "totalJobs": sum(counts.values()), "byType": dict(counts)}
            for user, counts in by_user.items()
        ]
        users.sort(key=lambda u: (-u["totalJobs"], u["userId"]))
        return users[:10]

    def health_summary(self) -> Dict[str, Any]:
        by_status = self.queue.stats()["by_status"]
        recent_errors = self.store.count_jobs(
            status=JobStatus.FAILED, created_after=self._ago(hours=1)
        )
        return {
            "queue": {status.value: by_status.get(status.value, 0) for status in JobStatus},
            "recentErrors": recent_errors,
            "healthScore": health_score(by_status, recent_errors),
        }

    def dashboard(self) -> Dict[str, Any]:
        return {
            "timestamp": self._timestamp(),
            "recentActivity": {
                "jobs": [j.to_dict() for j in self.store.list_jobs(newest_first=True, limit=20)],
                "media": self.records.list_records("media_assets", limit=10),
                "cards": self.records.list_records("cards", limit=10),
            },
            "hourlyActivity": self.hourly_activity(),
            "topUsers": self.top_users(),
            "health": self.health_summary(),
        }

    # --- Admin ---

    def cleanup(self) -> Dict[str, Any]:
        """Force-fail stuck jobs and delete old terminal jobs."""
        operations: List[Dict[str, Any]] = []

        reclaimed = self.queue.reclaim_stuck()
        operations.append({
            "operation": "cleanup_stuck_jobs",
            "count": len(reclaimed),
            "status": "completed",
            "jobIds": reclaimed,
        })

        deleted = self.queue.cleanup_old(self.config.queue.admin_cleanup_days)
        operations.append({
            "operation": "cleanup_old_jobs",
            "count": deleted,
            "status": "completed",
        })

        linked = {row["media_asset_id"] for row in self.records.list_records("card_media")}
        orphaned = [m["id"] for m in self.records.list_records("media_assets") if m["id"] not in linked]
        if orphaned:
            operations.append({
                "operation": "cleanup_orphaned_media",
                "count": len(orphaned),
                "status": "skipped",
                "note": "Orphaned media is reported, never deleted automatically",
            })

        logger.info("System cleanup completed: %s", operations)
        return {"timestamp": self._timestamp(), "operations": operations}
