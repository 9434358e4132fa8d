"""Abstract base classes for the job store and the extended record store.

The queue engine, worker and monitoring probe only talk to these interfaces.
SQLiteStore implements both; a Postgres implementation would express
claim_next() as `SELECT ... FOR UPDATE SKIP LOCKED` inside an UPDATE.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from .models import Job, JobStatus, StateTransition


class JobStore(ABC):
    """Durable table of job records.

    Implementations must provide:
    - An atomic claim: no two concurrent callers may receive the same job
    - Conditional (compare-and-swap) status updates
    - Raising StoreError for any storage failure
    """

    @abstractmethod
    def insert_job(
        self,
        job_type: str,
        input: Dict[str, Any],
        created_by: Optional[str],
        ingest_file: Optional[Dict[str, Any]] = None,
    ) -> "Job":
        """Insert a job with status=queued and return the stored row.

        When ingest_file is given (owner, storage_path, mime_type, meta,
        optional source) the ingest_files row is written in the same
        transaction and its id is stored as input["ingest_file_id"].
        """

    @abstractmethod
    def claim_next(self) -> Optional["Job"]:
        """Atomically move the oldest queued job to processing.

        Returns:
            The claimed job, or None if nothing is queued

        Implementation notes:
        - MUST be a single conditional update (e.g., UPDATE...RETURNING)
        - FIFO by created_at, ties broken by id
        - MUST refresh updated_at
        """

    @abstractmethod
    def transition(
        self,
        job_id: int,
        from_status: "JobStatus",
        to_status: "JobStatus",
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional["Job"]:
        """Conditionally move a job between states.

        Writes output/error as given (None clears them) and refreshes
        updated_at. Returns the updated job, or None if the job does not
        exist or its current status is not from_status.
        """

    @abstractmethod
    def requeue(self, job_id: int) -> Optional["Job"]:
        """Reset a failed job to queued, clearing output/error.

        created_at is refreshed so the job joins the back of the queue.
        Returns None if the job is not currently failed.
        """

    @abstractmethod
    def fail_stale(self, updated_before: datetime, reason: str) -> List[int]:
        """Fail every processing job with updated_at older than the cutoff.

        Returns:
            Ids of the jobs that were failed
        """

    @abstractmethod
    def delete_terminal(self, created_before: datetime) -> int:
        """Delete done/failed jobs created before the cutoff; return count."""

    @abstractmethod
    def get_job(self, job_id: int) -> Optional["Job"]:
        pass

    @abstractmethod
    def list_jobs(
        self,
        status: Optional["JobStatus"] = None,
        job_type: Optional[str] = None,
        created_by: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List["Job"]:
        """Filtered query ordered by created_at (oldest first by default)."""

    @abstractmethod
    def count_jobs(
        self,
        status: Optional["JobStatus"] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
    ) -> int:
        pass

    @abstractmethod
    def count_by_status_and_type(self) -> List[Tuple[str, str, int]]:
        """Return (status, type, count) groups."""

    @abstractmethod
    def get_transitions(self, job_id: int) -> List["StateTransition"]:
        pass

    @abstractmethod
    def ping(self) -> None:
        """Cheap round trip; raises StoreError if the store is unreachable."""


class RecordStore(ABC):
    """Extended schema written by the content processor.

    Ingest files, media assets, decks, cards and card↔media links. Only the
    minimal shape needed by ingestion is modelled.
    """

    @abstractmethod
    def create_media_asset(
        self, type: str, storage_path: str, mime_type: str, owner: str, **fields: Any
    ) -> int:
        pass

    @abstractmethod
    def get_media_assets(self, asset_ids: Sequence[int]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def create_deck(
        self, owner: str, title: str, description: str = "", visibility: str = "private"
    ) -> int:
        pass

    @abstractmethod
    def get_deck(self, deck_id: int) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_or_create_default_deck(self, owner: str) -> int:
        """Return the owner's auto-generated deck, creating it on first use."""

    @abstractmethod
    def create_card(
        self,
        deck_id: int,
        prompt_text: str,
        answer_text: str,
        is_active: bool,
        **fields: Any,
    ) -> int:
        pass

    @abstractmethod
    def link_card_media(self, card_id: int, media_asset_id: int, role: str = "primary") -> None:
        pass

    @abstractmethod
    def list_records(
        self,
        table: str,
        created_after: Optional[datetime] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Read rows of one extended table for monitoring."""
