import argparse
import json
import sys

from tqdm import tqdm

from .config import configure_logging, resolve_config
from .errors import IngestQueueError
from .monitoring import Monitor
from .processors import MediaContentProcessor, create_ai_client
from .queue import JobQueue, JobStatus, JobType, SQLiteStore, Worker
from .scheduler import CronDriver, build_invoker, parse_tick_params, summarize
from .storage import LocalStorage
from .webhook import IngestWebhook


def _add_common_args(parser):
    parser.add_argument("--db", type=str, help="Job store database path")
    parser.add_argument("--log-level", type=str, help="Logging level (DEBUG, INFO, ...)")


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


class Runtime:
    """Collaborators built from the resolved config for one CLI invocation."""

    def __init__(self, config):
        self.config = config
        self.store = SQLiteStore.from_config(config)
        self.queue = JobQueue(self.store, config.queue)
        self.storage = LocalStorage(config.storage)

    def worker(self):
        self.storage.ensure_buckets()
        processor = MediaContentProcessor(
            self.store, create_ai_client(self.config.ai), self.storage, self.config.processing
        )
        return Worker(self.queue, processor)

    def close(self):
        self.store.close()


def drain(worker, queue, max_jobs=None):
    """Run the worker until the queue is empty (or max_jobs is reached)."""
    pending = queue.stats()["by_status"][JobStatus.QUEUED.value]
    total = min(pending, max_jobs) if max_jobs else pending
    counts = {"done": 0, "failed": 0}
    with tqdm(total=total, desc="Processing jobs", unit="job") as progress:
        while max_jobs is None or sum(counts.values()) < max_jobs:
            result = worker.run_once()
            if result.processed == 0:
                break
            for job in result.jobs:
                counts[job.status] = counts.get(job.status, 0) + 1
            progress.update(result.processed)
    return counts


def build_parser():
    parser = argparse.ArgumentParser(
        prog="ingest-queue", description="Media ingestion job queue and worker"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    _add_common_args(serve_parser)
    serve_parser.add_argument("--host", type=str, default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--provider", choices=["placeholder", "openai"], help="AI provider")
    serve_parser.add_argument("--worker-url", type=str, help="Invoke the worker over HTTP")

    # WORKER (one pull)
    worker_parser = subparsers.add_parser("worker", help="Claim and run at most one job")
    _add_common_args(worker_parser)
    worker_parser.add_argument("--provider", choices=["placeholder", "openai"], help="AI provider")

    # TICK
    tick_parser = subparsers.add_parser("tick", help="Run the cron driver once")
    _add_common_args(tick_parser)
    tick_parser.add_argument("--iterations", type=int, help="Worker invocations")
    tick_parser.add_argument("--delay", type=int, help="Delay between invocations (ms)")
    tick_parser.add_argument("--worker-url", type=str, help="Invoke the worker over HTTP")
    tick_parser.add_argument("--provider", choices=["placeholder", "openai"], help="AI provider")

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a job")
    _add_common_args(enqueue_parser)
    enqueue_parser.add_argument(
        "--type", required=True, choices=[t.value for t in JobType], help="Job type"
    )
    enqueue_parser.add_argument("--input", required=True, help="Job input as JSON")
    enqueue_parser.add_argument("--created-by", type=str, help="Requesting principal")

    # UPLOAD (direct, without a storage event)
    upload_parser = subparsers.add_parser("upload", help="Enqueue a file already in the ingest bucket")
    _add_common_args(upload_parser)
    upload_parser.add_argument("--path", required=True, help="Object path inside the ingest bucket")
    upload_parser.add_argument("--mime-type", required=True)
    upload_parser.add_argument("--owner", required=True)
    upload_parser.add_argument("--size", type=int, default=0, help="File size in bytes")

    # HEALTH
    health_parser = subparsers.add_parser("health", help="Run a health check")
    _add_common_args(health_parser)
    health_parser.add_argument(
        "--type", default="basic", choices=["basic", "detailed", "queue", "storage"]
    )

    # QUEUE subcommands
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show queue status")
    _add_common_args(status_parser)

    reclaim_parser = queue_subparsers.add_parser("reclaim", help="Fail stuck processing jobs")
    _add_common_args(reclaim_parser)
    reclaim_parser.add_argument("--minutes", type=int, help="Staleness threshold")

    cleanup_parser = queue_subparsers.add_parser("cleanup", help="Delete old terminal jobs")
    _add_common_args(cleanup_parser)
    cleanup_parser.add_argument("--days", type=int, help="Retention window")

    retry_parser = queue_subparsers.add_parser("retry", help="Requeue failed jobs")
    _add_common_args(retry_parser)
    target = retry_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--id", type=int, help="Job id")
    target.add_argument("--all", action="store_true", help="Every failed job")

    drain_parser = queue_subparsers.add_parser("drain", help="Process until the queue is empty")
    _add_common_args(drain_parser)
    drain_parser.add_argument("--max-jobs", type=int, help="Maximum number of jobs to process")
    drain_parser.add_argument("--provider", choices=["placeholder", "openai"], help="AI provider")

    return parser, queue_parser


def run_command(args, queue_parser=None):
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict)
    configure_logging(config.log_level)

    if args.command == "serve":
        import uvicorn

        from .api.main import create_app

        uvicorn.run(create_app(config), host=args.host, port=args.port)
        return

    runtime = Runtime(config)
    try:
        if args.command == "worker":
            _print_json(runtime.worker().run_once().to_dict())

        elif args.command == "tick":
            iterations, delay_ms = parse_tick_params(args.iterations, args.delay, config.scheduler)
            worker = None if config.scheduler.worker_url else runtime.worker()
            driver = CronDriver(build_invoker(config, worker), config.scheduler)
            results = driver.tick(iterations, delay_ms)
            _print_json({
                "success": True,
                "iterations": iterations,
                "results": [r.to_dict() for r in results],
                "summary": summarize(results),
            })

        elif args.command == "enqueue":
            try:
                payload = json.loads(args.input)
            except json.JSONDecodeError as e:
                raise IngestQueueError(f"--input is not valid JSON: {e}")
            job_id = runtime.queue.enqueue(args.type, payload, created_by=args.created_by)
            print(f"Enqueued job {job_id}")

        elif args.command == "upload":
            webhook = IngestWebhook(runtime.queue, config.webhook)
            _print_json(
                webhook.handle_direct_upload(
                    args.path, args.mime_type, args.owner, {"size": args.size}
                )
            )

        elif args.command == "health":
            monitor = Monitor(runtime.queue, runtime.store, runtime.storage, config)
            data = monitor.health(args.type)
            _print_json(data)
            if not data["healthy"]:
                sys.exit(1)

        elif args.command == "queue":
            _run_queue_command(args, runtime, queue_parser)

    finally:
        runtime.close()


def _run_queue_command(args, runtime, queue_parser):
    queue = runtime.queue

    if args.queue_command == "status":
        stats = queue.stats()
        by_status = stats["by_status"]
        stuck = queue.find_stuck()
        print("\n" + "=" * 60)
        print("QUEUE STATUS")
        print("=" * 60)
        print(f"Queued:               {by_status['queued']}")
        print(f"Processing:           {by_status['processing']}")
        print(f"Done:                 {by_status['done']}")
        print(f"Failed:               {by_status['failed']}")
        print(f"Total:                {stats['total']}")
        print(f"Stuck:                {len(stuck)}")
        print("=" * 60)
        for job_type, count in sorted(stats["by_type"].items()):
            print(f"  {job_type:<20}{count}")

    elif args.queue_command == "reclaim":
        reclaimed = queue.reclaim_stuck(args.minutes)
        print(f"Reclaimed {len(reclaimed)} stuck job(s): {reclaimed}")

    elif args.queue_command == "cleanup":
        deleted = queue.cleanup_old(args.days)
        print(f"Deleted {deleted} terminal job(s)")

    elif args.queue_command == "retry":
        if args.all:
            ids = [job.id for job in queue.list_jobs(status=JobStatus.FAILED)]
        else:
            ids = [args.id]
        for job_id in ids:
            queue.retry(job_id)
        print(f"Requeued {len(ids)} job(s)")

    elif args.queue_command == "drain":
        counts = drain(runtime.worker(), queue, args.max_jobs)
        print("\n" + "=" * 60)
        print("PROCESSING SUMMARY")
        print("=" * 60)
        print(f"Done:                 {counts.get('done', 0)}")
        print(f"Failed:               {counts.get('failed', 0)}")
        print("=" * 60)

    elif queue_parser is not None:
        queue_parser.print_help()


def main(argv=None):
    parser, queue_parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    try:
        run_command(args, queue_parser)
    except IngestQueueError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
