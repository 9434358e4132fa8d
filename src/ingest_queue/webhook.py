"""Storage upload webhook: signature check, validation and enqueue.

A signed storage event for a new object in the ingest bucket becomes an
ingest_files record plus a queued ingest_* job owned by the first segment
of the object path.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import AuthError, IngestQueueError, ValidationError
from .models import WebhookConfig
from .queue.engine import JobQueue
from .queue.models import IngestFileInput, JobType

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"


class StorageObject(BaseModel):
    bucket_id: str
    name: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WebhookPayload(BaseModel):
    type: str
    table: Optional[str] = None
    record: Optional[Dict[str, Any]] = None


def sign(body: bytes, secret: str) -> str:
    """Header value for body: sha256=<hex hmac>."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> None:
    """Check an `x-webhook-signature` header in constant time.

    Raises:
        AuthError: Missing header, unsupported algorithm or digest mismatch
    """
    if not signature:
        raise AuthError("Missing signature")
    algorithm, _, received = signature.partition("=")
    if algorithm != "sha256" or not received:
        raise AuthError("Invalid signature")
    if not hmac.compare_digest(sign(body, secret), f"sha256={received}"):
        raise AuthError("Invalid signature")


def validate_file_upload(mime_type: str, file_size: int, config: WebhookConfig) -> None:
    if mime_type not in config.allowed_mime_types:
        raise ValidationError(f"Unsupported file type: {mime_type}")
    if file_size > config.max_file_size_bytes:
        raise ValidationError(
            f"File too large: {file_size} bytes (max: {config.max_file_size_bytes})"
        )


def job_type_for(mime_type: str) -> JobType:
    if mime_type.startswith("image/"):
        return JobType.INGEST_IMAGE
    if mime_type.startswith("video/"):
        return JobType.INGEST_VIDEO
    if mime_type == "application/pdf":
        return JobType.INGEST_PDF
    raise ValidationError(f"Unsupported file type: {mime_type}")


def owner_from_path(storage_path: str) -> str:
    parts = storage_path.split("/")
    if len(parts) < 2 or not parts[0]:
        raise ValidationError(f"Invalid storage path format: {storage_path}")
    return parts[0]


def _file_size(metadata: Dict[str, Any]) -> int:
    try:
        return int(metadata.get("size") or 0)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid file size: {metadata.get('size')!r}")


class IngestWebhook:
    def __init__(
        self,
        queue: JobQueue,
        config: Optional[WebhookConfig] = None,
        secret: Optional[str] = None,
    ):
        self.queue = queue
        self.config = config or WebhookConfig()
        self.secret = secret

    def handle(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify and process one raw webhook request.

        Raises:
            AuthError: Signature missing or invalid
            ValidationError: Malformed JSON/payload or unsupported upload
        """
        if not self.secret:
            raise IngestQueueError("FILE_PROCESSING_WEBHOOK_SECRET is not configured")
        verify_signature(body, signature, self.secret)

        try:
            payload = WebhookPayload.model_validate(json.loads(body))
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Invalid JSON payload")
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid webhook payload",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )

        logger.info("Processing webhook payload (type=%s, table=%s)", payload.type, payload.table)
        if payload.type == "INSERT" and payload.table == "objects":
            if payload.record is None:
                raise ValidationError("Storage event without a record")
            self.handle_storage_upload(payload.record)
        else:
            logger.info("Ignoring non-storage event (type=%s, table=%s)", payload.type, payload.table)
        return {"status": "accepted"}

    def handle_storage_upload(self, record: Dict[str, Any]) -> Optional[int]:
        """Enqueue an ingest job for a new object; None if the bucket is ignored."""
        try:
            obj = StorageObject.model_validate(record)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid storage record",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )

        if obj.bucket_id != self.config.ingest_bucket:
            logger.info("Ignoring upload to non-ingest bucket %s", obj.bucket_id)
            return None

        mime_type = obj.metadata.get("mimetype") or "application/octet-stream"
        file_size = _file_size(obj.metadata)
        validate_file_upload(mime_type, file_size, self.config)
        owner = owner_from_path(obj.name)

        result = self._enqueue(
            obj.name,
            mime_type,
            file_size,
            owner,
            obj.metadata,
            meta={"original_metadata": obj.metadata},
        )
        return result["jobId"]

    def handle_direct_upload(
        self,
        storage_path: str,
        mime_type: str,
        owner: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Enqueue an already stored file without a storage event."""
        metadata = metadata or {}
        file_size = _file_size(metadata)
        validate_file_upload(mime_type, file_size, self.config)
        return self._enqueue(storage_path, mime_type, file_size, owner, metadata, meta=dict(metadata))

    def _enqueue(
        self,
        storage_path: str,
        mime_type: str,
        file_size: int,
        owner: str,
        metadata: Dict[str, Any],
        meta: Dict[str, Any],
    ) -> Dict[str, Any]:
        job_type = job_type_for(mime_type)
        meta["uploaded_at"] = datetime.now(timezone.utc).isoformat()
        job = self.queue.enqueue_ingest(
            job_type,
            IngestFileInput(
                storage_path=storage_path,
                mime_type=mime_type,
                file_size=file_size,
                owner=owner,
                metadata=metadata,
            ),
            meta,
        )
        ingest_file_id = job.input["ingest_file_id"]
        logger.info(
            "Created %s job %s for %s (ingest file %s, owner %s)",
            job_type.value, job.id, storage_path, ingest_file_id, owner,
        )
        return {"jobId": job.id, "ingestFileId": ingest_file_id, "status": "queued"}
