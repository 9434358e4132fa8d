"""Unit tests for the job queue.

Tests cover:
- Enqueue validation against the typed payloads
- Atomic claiming under concurrency
- FIFO ordering
- State machine transitions and terminal exclusivity
- Stuck-job detection and reclamation
- Retention cleanup and administrative retry
"""

import threading

import pytest

from ingest_queue.errors import InvalidTransition, StoreError, ValidationError
from ingest_queue.queue import STUCK_JOB_REASON, JobQueue, JobStatus, SQLiteStore

IMAGE_INPUT = {"storage_path": "u1/abc.jpg", "mime_type": "image/jpeg"}


def enqueue_images(queue, count):
    return [
        queue.enqueue("ingest_image", {"storage_path": f"u1/{i}.jpg", "mime_type": "image/jpeg"})
        for i in range(count)
    ]


class TestEnqueue:
    def test_enqueue_creates_queued_job(self, queue):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT, created_by="u1")

        job = queue.get(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.type == "ingest_image"
        assert job.input["storage_path"] == "u1/abc.jpg"
        assert job.created_by == "u1"
        assert job.output is None
        assert job.error is None

    def test_enqueue_applies_input_defaults(self, queue):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        job = queue.get(job_id)
        assert job.input["file_size"] == 0
        assert job.input["metadata"] == {}

    def test_enqueue_rejects_unknown_type(self, queue):
        with pytest.raises(ValidationError) as exc:
            queue.enqueue("transcode_audio", IMAGE_INPUT)
        assert "transcode_audio" in exc.value.message
        assert queue.list_jobs() == []

    def test_enqueue_rejects_mismatched_input(self, queue):
        with pytest.raises(ValidationError) as exc:
            queue.enqueue("ingest_image", {"mime_type": "image/jpeg"})
        assert exc.value.details["errors"]

    def test_enqueue_generate_cards_requires_deck(self, queue):
        with pytest.raises(ValidationError):
            queue.enqueue("ai_generate_cards", {"media_asset_ids": [1]})

        job_id = queue.enqueue("ai_generate_cards", {"deck_id": 7})
        assert queue.get(job_id).input["strategy"] == "mcq"

    def test_enqueue_surfaces_store_errors(self, queue, store):
        store.db.conn.execute("DROP TABLE jobs")
        with pytest.raises(StoreError):
            queue.enqueue("ingest_image", IMAGE_INPUT)


class TestClaim:
    def test_claim_empty_queue_returns_none(self, queue):
        assert queue.claim_next() is None

    def test_claim_moves_job_to_processing(self, queue, clock):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        clock.advance(seconds=5)

        job = queue.claim_next()

        assert job.id == job_id
        assert job.status == JobStatus.PROCESSING
        assert job.updated_at == clock.now
        assert queue.claim_next() is None

    def test_fifo_ordering(self, queue, clock):
        ids = []
        for i in range(3):
            ids.append(queue.enqueue("ingest_image", IMAGE_INPUT))
            clock.advance(seconds=1)

        claimed = [queue.claim_next().id for _ in range(3)]
        assert claimed == ids

    def test_fifo_ties_broken_by_id(self, queue):
        ids = enqueue_images(queue, 4)
        assert [queue.claim_next().id for _ in range(4)] == ids

    def test_concurrent_claims_never_share_a_job(self, db_path, queue):
        """Separate connections race for jobs; each job is claimed once."""
        job_ids = enqueue_images(queue, 10)
        n_threads = 6
        claims_per_thread = 4
        stores = [SQLiteStore(db_path, busy_retries=10, busy_base_delay_s=0.01) for _ in range(n_threads)]
        barrier = threading.Barrier(n_threads)
        claimed = []
        errors = []
        lock = threading.Lock()

        def claimer(store):
            barrier.wait()
            for _ in range(claims_per_thread):
                try:
                    job = store.claim_next()
                except StoreError as e:
                    errors.append(e)
                    continue
                if job is not None:
                    with lock:
                        claimed.append(job.id)

        threads = [threading.Thread(target=claimer, args=(s,)) for s in stores]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        for s in stores:
            s.close()

        assert errors == []
        assert len(claimed) == len(set(claimed))
        assert sorted(claimed) == job_ids
        assert all(queue.get(i).status == JobStatus.PROCESSING for i in job_ids)


class TestTransitions:
    def test_complete_records_output(self, queue, clock):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        queue.claim_next()
        clock.advance(seconds=30)

        job = queue.complete(job_id, {"media_asset_id": 1})

        assert job.status == JobStatus.DONE
        assert job.output == {"media_asset_id": 1}
        assert job.error is None
        assert job.updated_at == clock.now

    def test_fail_records_error(self, queue):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        queue.claim_next()

        job = queue.fail(job_id, "boom")

        assert job.status == JobStatus.FAILED
        assert job.error == "boom"
        assert job.output is None

    def test_complete_requires_processing(self, queue):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        with pytest.raises(InvalidTransition) as exc:
            queue.complete(job_id, {"ok": True})
        assert exc.value.expected == "processing"
        assert exc.value.actual == "queued"
        assert queue.get(job_id).status == JobStatus.QUEUED

    def test_no_transition_out_of_terminal_state(self, queue):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        queue.claim_next()
        queue.complete(job_id, {"ok": True})

        with pytest.raises(InvalidTransition):
            queue.fail(job_id, "late failure")
        with pytest.raises(InvalidTransition):
            queue.complete(job_id, {"again": True})

        job = queue.get(job_id)
        assert job.status == JobStatus.DONE
        assert job.error is None

    def test_fail_missing_job(self, queue):
        with pytest.raises(InvalidTransition) as exc:
            queue.fail(999, "nope")
        assert exc.value.actual is None

    def test_transitions_are_audited(self, queue, store):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        queue.claim_next()
        queue.fail(job_id, "x" * 500)

        transitions = store.get_transitions(job_id)
        assert [(t.from_state, t.to_state) for t in transitions] == [
            (None, "queued"),
            ("queued", "processing"),
            ("processing", "failed"),
        ]
        assert len(transitions[-1].error_snippet) == 200


class TestStuckJobs:
    def test_reclaim_fails_stale_processing_job(self, queue, store, aged):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        aged(store, job_id, "processing", minutes=40)

        assert queue.reclaim_stuck() == [job_id]

        job = queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == STUCK_JOB_REASON
        assert job.output is None

    def test_reclaim_is_idempotent(self, queue, store, aged):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        aged(store, job_id, "processing", minutes=40)

        assert queue.reclaim_stuck() == [job_id]
        assert queue.reclaim_stuck() == []
        assert queue.get(job_id).status == JobStatus.FAILED

    def test_reclaim_ignores_recent_and_queued_jobs(self, queue, store, aged):
        fresh, detected_only, queued_old = enqueue_images(queue, 3)
        aged(store, fresh, "processing", minutes=1)
        aged(store, detected_only, "processing", minutes=15)
        aged(store, queued_old, "queued", minutes=120)

        assert queue.reclaim_stuck() == []
        assert [j.id for j in queue.find_stuck()] == [detected_only]

    def test_reclaim_respects_threshold_override(self, queue, store, aged):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        aged(store, job_id, "processing", minutes=15)
        assert queue.reclaim_stuck(threshold_minutes=10) == [job_id]

    def test_zero_threshold_is_not_the_default(self, queue, store, aged):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        aged(store, job_id, "processing", minutes=1)

        assert queue.find_stuck() == []
        assert [j.id for j in queue.find_stuck(threshold_minutes=0)] == [job_id]
        assert queue.reclaim_stuck(threshold_minutes=0) == [job_id]

    def test_late_worker_cannot_complete_reclaimed_job(self, queue, store, aged):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        queue.claim_next()
        aged(store, job_id, "processing", minutes=45)
        queue.reclaim_stuck()

        with pytest.raises(InvalidTransition):
            queue.complete(job_id, {"ok": True})
        assert queue.get(job_id).error == STUCK_JOB_REASON


class TestCleanupAndRetry:
    def test_cleanup_deletes_only_old_terminal_jobs(self, queue, store, clock):
        done_id, failed_id, queued_id = enqueue_images(queue, 3)
        queue.claim_next()
        queue.complete(done_id, {"ok": True})
        queue.claim_next()
        queue.fail(failed_id, "bad")

        clock.advance(days=31)
        recent_done = queue.enqueue("ingest_image", IMAGE_INPUT)
        queue.claim_next()  # claims queued_id (oldest)
        queue.claim_next()
        queue.complete(recent_done, {"ok": True})

        assert queue.cleanup_old() == 2
        assert queue.get(done_id) is None
        assert queue.get(failed_id) is None
        assert queue.get(queued_id).status == JobStatus.PROCESSING
        assert queue.get(recent_done).status == JobStatus.DONE
        assert store.get_transitions(done_id) == []

    def test_cleanup_custom_window(self, queue, clock):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        queue.claim_next()
        queue.complete(job_id, {"ok": True})
        clock.advance(days=8)

        assert queue.cleanup_old(older_than_days=30) == 0
        assert queue.cleanup_old(older_than_days=7) == 1

    def test_cleanup_zero_days_deletes_all_terminal_jobs(self, queue, clock):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        queue.claim_next()
        queue.complete(job_id, {"ok": True})
        clock.advance(days=1)

        assert queue.cleanup_old() == 0
        assert queue.cleanup_old(older_than_days=0) == 1

    def test_retry_requeues_failed_job_at_back_of_queue(self, queue, clock):
        failed_id, waiting_id = enqueue_images(queue, 2)
        queue.claim_next()
        queue.fail(failed_id, "transient")
        clock.advance(seconds=10)

        job = queue.retry(failed_id)

        assert job.status == JobStatus.QUEUED
        assert job.error is None
        assert job.output is None
        assert job.created_at == clock.now
        assert [queue.claim_next().id, queue.claim_next().id] == [waiting_id, failed_id]

    def test_retry_rejects_non_failed_job(self, queue):
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        with pytest.raises(InvalidTransition) as exc:
            queue.retry(job_id)
        assert exc.value.expected == "failed"


class TestQueries:
    def test_stats(self, queue):
        enqueue_images(queue, 2)
        queue.enqueue("ai_generate_cards", {"deck_id": 1})
        queue.claim_next()

        stats = queue.stats()

        assert stats["total"] == 3
        assert stats["by_status"] == {"queued": 2, "processing": 1, "done": 0, "failed": 0}
        assert stats["by_type"] == {"ingest_image": 2, "ai_generate_cards": 1}
        assert stats["by_status_and_type"]["queued"] == {"ingest_image": 1, "ai_generate_cards": 1}

    def test_list_jobs_filters(self, queue):
        queue.enqueue("ingest_image", IMAGE_INPUT, created_by="alice")
        queue.enqueue("ingest_image", IMAGE_INPUT, created_by="bob")
        queue.enqueue("ai_generate_cards", {"deck_id": 1}, created_by="alice")

        assert len(queue.list_jobs(created_by="alice")) == 2
        assert len(queue.list_jobs(job_type="ingest_image")) == 2
        assert len(queue.list_jobs(status=JobStatus.QUEUED, limit=1)) == 1

    def test_engine_uses_config_thresholds(self, store, clock, aged):
        from ingest_queue.models import QueueConfig

        queue = JobQueue(store, QueueConfig(stuck_detect_minutes=2, stuck_fail_minutes=5), clock)
        job_id = queue.enqueue("ingest_image", IMAGE_INPUT)
        aged(store, job_id, "processing", minutes=3)

        assert [j.id for j in queue.find_stuck()] == [job_id]
        assert queue.reclaim_stuck() == []
        clock.advance(minutes=3)
        assert queue.reclaim_stuck() == [job_id]
