from __future__ import annotations

import asyncio
import hmac
import logging
import re
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ingest_queue.config import configure_logging, resolve_config
from ingest_queue.errors import AuthError, IngestQueueError, RateLimitExceeded
from ingest_queue.models import IngestQueueConfig
from ingest_queue.monitoring import Monitor
from ingest_queue.processors import ContentProcessor, MediaContentProcessor, create_ai_client
from ingest_queue.queue import JobQueue, SQLiteStore, Worker
from ingest_queue.ratelimit import RateLimiter
from ingest_queue.scheduler import CronDriver, WorkerInvoker, build_invoker, parse_tick_params, summarize
from ingest_queue.storage import LocalStorage
from ingest_queue.webhook import SIGNATURE_HEADER, IngestWebhook

logger = logging.getLogger(__name__)

BEARER_RE = re.compile(r"^Bearer\s+(.*)$", re.IGNORECASE)


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if not header:
        return None
    match = BEARER_RE.match(header)
    return match.group(1).strip() if match else None


def _secret_matches(provided: Optional[str], expected: str) -> bool:
    return provided is not None and hmac.compare_digest(provided.encode(), expected.encode())


def _client_key(request: Request) -> str:
    if request.app.state.config.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limited(group: str):
    def dependency(request: Request) -> None:
        request.app.state.rate_limiter.enforce(group, _client_key(request))

    return Depends(dependency)


def require_worker_secret(request: Request) -> None:
    secret = request.app.state.config.secrets.worker_secret
    if not secret:
        raise IngestQueueError("JOB_WORKER_SECRET is not configured")
    if not _secret_matches(_bearer_token(request), secret):
        logger.error("Invalid worker authentication")
        raise AuthError("Unauthorized")


def require_cron_secret(request: Request) -> None:
    """Accept x-cron-secret or a Bearer token; open when no secret is configured."""
    secret = request.app.state.config.secrets.cron_secret
    if not secret:
        return
    provided = request.headers.get("x-cron-secret") or _bearer_token(request)
    if not _secret_matches(provided, secret):
        logger.error(
            "Invalid cron authentication (authorization header: %s, x-cron-secret header: %s)",
            "authorization" in request.headers, "x-cron-secret" in request.headers,
        )
        raise AuthError("Unauthorized")


def create_app(
    config: Optional[IngestQueueConfig] = None,
    store: Optional[SQLiteStore] = None,
    processor: Optional[ContentProcessor] = None,
    invoker: Optional[WorkerInvoker] = None,
) -> FastAPI:
    """Build the HTTP app with every collaborator wired onto app.state."""
    config = config or resolve_config()
    configure_logging(config.log_level)

    owns_store = store is None
    store = store or SQLiteStore.from_config(config)
    queue = JobQueue(store, config.queue)
    storage = LocalStorage(config.storage)
    storage.ensure_buckets()
    processor = processor or MediaContentProcessor(
        store, create_ai_client(config.ai), storage, config.processing
    )
    worker = Worker(queue, processor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not config.secrets.cron_secret:
            logger.warning("CRON_SECRET is not set; /cron-tick is open to any caller")
        yield
        if owns_store:
            store.close()

    app = FastAPI(title="ingest-queue", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.store = store
    app.state.queue = queue
    app.state.storage = storage
    app.state.worker = worker
    app.state.driver = CronDriver(invoker or build_invoker(config, worker), config.scheduler)
    app.state.monitor = Monitor(queue, store, storage, config)
    app.state.webhook = IngestWebhook(queue, config.webhook, secret=config.secrets.webhook_secret)
    app.state.rate_limiter = RateLimiter(config.rate_limits)

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _error_body(message: str, details=None) -> dict:
    body = {"error": message}
    if details:
        body["details"] = details
    return body


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(IngestQueueError)
    async def handle_pipeline_error(request: Request, exc: IngestQueueError):
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(exc.retry_after_s)}
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            _error_body(exc.message, exc.details), status_code=exc.status_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ]
        return JSONResponse(_error_body("Invalid request", {"errors": errors}), status_code=400)


def _register_routes(app: FastAPI) -> None:
    @app.post("/ingest-webhook", status_code=202, dependencies=[rate_limited("webhook")])
    async def ingest_webhook(request: Request):
        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        return await asyncio.to_thread(request.app.state.webhook.handle, body, signature)

    @app.post(
        "/worker-pull",
        dependencies=[rate_limited("worker"), Depends(require_worker_secret)],
    )
    async def worker_pull(request: Request):
        result = await asyncio.to_thread(request.app.state.worker.run_once)
        return result.to_dict()

    @app.api_route(
        "/cron-tick",
        methods=["GET", "POST"],
        dependencies=[rate_limited("cron"), Depends(require_cron_secret)],
    )
    async def cron_tick(
        request: Request, iterations: Optional[str] = None, delay: Optional[str] = None
    ):
        config = request.app.state.config
        iterations, delay_ms = parse_tick_params(iterations, delay, config.scheduler)
        results = await asyncio.to_thread(request.app.state.driver.tick, iterations, delay_ms)
        return {
            "success": True,
            "iterations": iterations,
            "results": [r.to_dict() for r in results],
            "summary": summarize(results),
        }

    @app.get("/health", dependencies=[rate_limited("health")])
    async def health(request: Request, type: str = "basic"):
        data = await asyncio.to_thread(request.app.state.monitor.health, type)
        return JSONResponse(data, status_code=200 if data["healthy"] else 503)

    @app.api_route(
        "/monitoring/{endpoint}",
        methods=["GET", "POST"],
        dependencies=[rate_limited("health")],
    )
    async def monitoring(request: Request, endpoint: str):
        monitor = request.app.state.monitor
        reads = {
            "metrics": monitor.metrics,
            "alerts": monitor.alerts,
            "dashboard": monitor.dashboard,
        }
        if endpoint == "cleanup":
            if request.method != "POST":
                return JSONResponse(_error_body("Method not allowed"), status_code=405)
            require_cron_secret(request)
            return await asyncio.to_thread(monitor.cleanup)
        if endpoint not in reads:
            return JSONResponse(_error_body("Invalid monitoring endpoint"), status_code=400)
        return await asyncio.to_thread(reads[endpoint])
