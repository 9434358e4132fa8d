"""Pydantic models for configuration and validation."""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class StoreConfig(BaseModel):
    """Job store location and lock-contention handling."""

    db_path: str = Field(default="ingest_queue.db", description="SQLite database file")
    busy_retries: int = Field(
        default=3, ge=1, description="Attempts on 'database is locked' before giving up"
    )
    busy_base_delay_s: float = Field(
        default=0.1, gt=0.0, description="First backoff delay; doubles on each retry"
    )


class QueueConfig(BaseModel):
    """Stuck-job thresholds and retention.

    One authoritative pair of thresholds: a processing job older than
    stuck_detect_minutes is reported as stuck; older than stuck_fail_minutes
    it is force-failed by reclamation.
    """

    stuck_detect_minutes: int = Field(
        default=10, gt=0, description="Processing age at which a job counts as stuck"
    )
    stuck_fail_minutes: int = Field(
        default=30, gt=0, description="Processing age at which a stuck job is failed"
    )
    retention_days: int = Field(
        default=30, gt=0, description="Terminal jobs older than this are deleted by cleanup"
    )
    admin_cleanup_days: int = Field(
        default=7, gt=0, description="Retention used by the monitoring cleanup endpoint"
    )

    @model_validator(mode="after")
    def fail_after_detect(self) -> "QueueConfig":
        if self.stuck_fail_minutes < self.stuck_detect_minutes:
            raise ValueError(
                f"stuck_fail_minutes ({self.stuck_fail_minutes}) must be >= "
                f"stuck_detect_minutes ({self.stuck_detect_minutes})"
            )
        return self


class SchedulerConfig(BaseModel):
    """Cron driver defaults and bounds."""

    default_iterations: int = Field(default=1, ge=1)
    default_delay_ms: int = Field(default=1000, ge=0)
    max_iterations: int = Field(default=20, ge=1, description="Upper bound for ?iterations")
    max_delay_ms: int = Field(default=10000, ge=0, description="Upper bound for ?delay")
    worker_url: Optional[str] = Field(
        default=None,
        description="POST target for the worker; None = invoke the worker in-process",
    )
    worker_timeout_s: float = Field(default=60.0, gt=0.0)


class MonitoringConfig(BaseModel):
    """Alert thresholds."""

    failure_rate_threshold: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Alert when last-hour failure rate exceeds this"
    )
    queued_age_minutes: int = Field(
        default=10, gt=0, description="Alert when a job has been queued longer than this"
    )
    failed_jobs_unhealthy: int = Field(
        default=10, gt=0, description="Queue is unhealthy at this many failures in the last hour"
    )


class WebhookConfig(BaseModel):
    """Upload validation rules."""

    ingest_bucket: str = Field(default="ingest")
    max_file_size_bytes: int = Field(default=100 * 1024 * 1024, gt=0)
    allowed_mime_types: List[str] = Field(
        default_factory=lambda: [
            "image/jpeg",
            "image/png",
            "image/webp",
            "image/gif",
            "video/mp4",
            "video/webm",
            "application/pdf",
        ]
    )


class StorageConfig(BaseModel):
    """Local storage roots standing in for object-storage buckets."""

    root: str = Field(default="storage")
    buckets: List[str] = Field(default_factory=lambda: ["media", "derived", "ingest"])


class ProcessingConfig(BaseModel):
    """Placeholder media processing settings."""

    keyframe_interval_s: int = Field(default=10, gt=0)
    max_keyframes: int = Field(default=5, gt=0)
    max_pdf_pages: int = Field(default=5, gt=0)
    language_code: str = Field(default="en")


class AIConfig(BaseModel):
    """AI provider selection. Credentials come from the environment."""

    provider: Literal["placeholder", "openai"] = Field(default="placeholder")
    openai_model: str = Field(default="gpt-4o-mini")
    openai_api_key: Optional[str] = Field(default=None, repr=False)
    max_tokens: int = Field(default=1000, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)


class RateLimitRule(BaseModel):
    window_s: int = Field(default=60, gt=0)
    max_requests: int = Field(gt=0)


class SecretsConfig(BaseModel):
    """Shared secrets. Never logged."""

    worker_secret: Optional[str] = Field(default=None, repr=False)
    cron_secret: Optional[str] = Field(default=None, repr=False)
    webhook_secret: Optional[str] = Field(default=None, repr=False)


def _default_rate_limits() -> Dict[str, RateLimitRule]:
    return {
        "webhook": RateLimitRule(max_requests=100),
        "worker": RateLimitRule(max_requests=50),
        "cron": RateLimitRule(max_requests=10),
        "health": RateLimitRule(max_requests=200),
    }


class IngestQueueConfig(BaseModel):
    """Complete application configuration with validation."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    rate_limits: Dict[str, RateLimitRule] = Field(default_factory=_default_rate_limits)
    trust_forwarded_for: bool = Field(
        default=False,
        description="Key rate limits on x-forwarded-for; enable only behind a proxy that sets it",
    )
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    log_level: str = Field(default="INFO")

    @classmethod
    def from_dict(cls, data: dict) -> "IngestQueueConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "IngestQueueConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db"):
            config_dict["store"]["db_path"] = cli_args["db"]
        if cli_args.get("worker_url"):
            config_dict["scheduler"]["worker_url"] = cli_args["worker_url"]
        if cli_args.get("provider"):
            config_dict["ai"]["provider"] = cli_args["provider"]
        if cli_args.get("log_level"):
            config_dict["log_level"] = cli_args["log_level"]

        return IngestQueueConfig.from_dict(config_dict)
