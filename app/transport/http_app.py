# app/transport/http_app.py
"""
HTTP API for the cleaning job marketplace.

Thin transport layer: parse request -> call JobLifecycleCoordinator ->
map JobError -> return JSON.  No business rules live in the routes.

Process roles (RUN_MODE):
- web:       API only
- scheduler: dispatch + reconciliation loops (API still answers /health)
- all:       both, for single-process deployments
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError as PydanticValidationError

from app.config import settings
from app.core.dispatch.scheduler import DispatchScheduler
from app.core.jobs.coordinator import JobLifecycleCoordinator
from app.core.jobs.domain import JobStatus, UserRole
from app.core.jobs.errors import JobError
from app.core.jobs.reconciliation import ReconciliationSweeper
from app.infra.escrow_mock import MockEscrowProvider
from app.infra.escrow_resilience import ResilientEscrowProvider
from app.infra.health_checks_async import AsyncHealthChecker, PeriodicTasksHealthCheck
from app.infra.logging_config import get_logger, setup_logging
from app.infra.metrics import get_metrics_collector
from app.infra.periodic import PeriodicTask
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from app.transport.schemas import CancelJobIn, ClaimJobIn, CreateJobIn, CreateJobOut, ProofIn
from app.transport.security import (
    Caller,
    require_caller,
    require_metrics_auth,
    require_role,
    sanitize_error_message,
)

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# SERVICE WIRING
# ============================================================================

@dataclass
class JobServices:
    coordinator: JobLifecycleCoordinator
    scheduler: DispatchScheduler
    sweeper: ReconciliationSweeper
    health: AsyncHealthChecker
    periodic_tasks: list[PeriodicTask] = field(default_factory=list)


def _current_fee_percent() -> float:
    return settings.platform_fee_percent


def build_job_services() -> JobServices:
    """Wire the Postgres adapters and escrow provider into the core services."""
    from app.infra.pg_job_repo_async import get_job_repo
    from app.infra.pg_notification_repo_async import get_notification_sink
    from app.infra.pg_profile_repo_async import get_profile_repo

    jobs = get_job_repo()
    profiles = get_profile_repo()
    notifications = get_notification_sink()
    escrow = ResilientEscrowProvider(
        MockEscrowProvider(),
        max_retries=settings.escrow_max_retries,
        initial_delay=settings.escrow_retry_base_delay,
    )

    coordinator = JobLifecycleCoordinator(
        jobs=jobs,
        profiles=profiles,
        escrow=escrow,
        notifications=notifications,
        fee_percent=_current_fee_percent,
        currency=settings.currency,
        min_price_amount=settings.min_price_amount,
        max_active_jobs=settings.max_active_jobs_per_customer,
        feed_radius_meters=settings.job_feed_radius_meters,
        feed_fallback_limit=settings.job_feed_fallback_limit,
    )
    scheduler = DispatchScheduler(
        jobs=jobs,
        notifications=notifications,
        radius_meters=settings.dispatch_radius_meters,
        min_rating=settings.dispatch_min_rating,
        stale_minutes=settings.dispatch_stale_minutes,
        renotify_cooldown_minutes=settings.dispatch_renotify_cooldown_minutes,
    )
    sweeper = ReconciliationSweeper(
        coordinator=coordinator,
        jobs=jobs,
        profiles=profiles,
        escrow=escrow,
        fee_percent=_current_fee_percent,
        grace_seconds=settings.reconciliation_grace_seconds,
        batch_size=settings.reconciliation_batch_size,
    )
    return JobServices(
        coordinator=coordinator,
        scheduler=scheduler,
        sweeper=sweeper,
        health=AsyncHealthChecker(),
    )


def _periodic_tasks_for(services: JobServices) -> list[PeriodicTask]:
    tasks = []
    if settings.dispatch_enabled:
        tasks.append(PeriodicTask(
            "dispatch",
            services.scheduler.run_dispatch_cycle,
            interval=settings.dispatch_interval_minutes * 60,
        ))
    else:
        logger.info("Dispatch scheduler skipped (dispatch_enabled=false)")

    if settings.reconciliation_enabled:
        tasks.append(PeriodicTask(
            "reconciliation",
            services.sweeper.run_reconciliation_sweep,
            interval=settings.reconciliation_interval_minutes * 60,
            run_immediately=True,
        ))
    else:
        logger.info("Reconciliation sweeper skipped (reconciliation_enabled=false)")
    return tasks


# ============================================================================
# LIFESPAN
# ============================================================================

def create_app(services: Optional[JobServices] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With ``services`` given (tests, embedding) the app uses them as-is: no
    database pool and no background loops are started.
    """

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        logger.info(
            f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}"
        )

        if services is not None:
            fastapi_app.state.services = services
            yield
            return

        from app.infra.db_async import close_pool, init_pool

        await init_pool()
        wired = build_job_services()
        fastapi_app.state.services = wired

        if settings.run_mode in ("all", "scheduler"):
            wired.periodic_tasks = _periodic_tasks_for(wired)
            for task in wired.periodic_tasks:
                await task.start()
            wired.health.add(PeriodicTasksHealthCheck(wired.periodic_tasks))
        else:
            logger.info(f"Periodic tasks skipped (run_mode={settings.run_mode})")

        logger.info("Application startup complete")

        yield

        logger.info("Shutting down application")
        for task in wired.periodic_tasks:
            await task.stop()
        await close_pool()
        logger.info("Application shutdown complete")

    fastapi_app = FastAPI(
        title="CleanOps",
        description="Cleaning job marketplace: job lifecycle, escrow and dispatch",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    if settings.is_production or settings.is_staging:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        )
    else:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    fastapi_app.add_middleware(SecurityHeadersMiddleware)
    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    fastapi_app.add_middleware(RequestIDMiddleware)

    _register_exception_handlers(fastapi_app)
    _register_routes(fastapi_app)
    return fastapi_app


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def _register_exception_handlers(fastapi_app: FastAPI) -> None:

    @fastapi_app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )

    @fastapi_app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": sanitize_error_message(exc, settings.is_production)},
        )


# ============================================================================
# ROUTES
# ============================================================================

def get_services(request: Request) -> JobServices:
    return request.app.state.services


def get_coordinator(request: Request) -> JobLifecycleCoordinator:
    return request.app.state.services.coordinator


def _parse(model: type[BaseModel], payload: dict) -> BaseModel:
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        field_path = ".".join(str(p) for p in first.get("loc", ()))
        raise HTTPException(
            status_code=400,
            detail=f"Invalid request: {field_path} {first.get('msg', '')}".strip(),
        )


def _http_error(exc: JobError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


def _register_routes(fastapi_app: FastAPI) -> None:

    @fastapi_app.get("/health")
    def health():
        """Liveness - PUBLIC, minimal information."""
        return {"status": "healthy"}

    @fastapi_app.get("/ready")
    async def readiness(services: JobServices = Depends(get_services)):
        """Readiness - PUBLIC, critical checks only."""
        result = await services.health.run_checks(include_non_critical=False)
        if result["status"] == "unhealthy":
            return JSONResponse(status_code=503, content={"status": "unhealthy"})
        return {"status": "healthy"}

    @fastapi_app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
    def metrics():
        return get_metrics_collector().get_metrics()

    # -- jobs ----------------------------------------------------------------

    @fastapi_app.post("/jobs", status_code=201)
    async def create_job(
        payload: dict,
        caller: Caller = Depends(require_role(UserRole.CUSTOMER)),
        coordinator: JobLifecycleCoordinator = Depends(get_coordinator),
    ):
        req = _parse(CreateJobIn, payload)
        try:
            created = await coordinator.create_job(
                caller.user_id,
                req.urgency,
                req.price_amount,
                req.location.model_dump(),
                [t.model_dump(exclude_none=True) for t in req.tasks],
            )
        except JobError as exc:
            raise _http_error(exc)
        return CreateJobOut(job=created.job.to_dict(), client_secret=created.client_token).model_dump()

    @fastapi_app.get("/jobs")
    async def list_jobs(
        status: Optional[str] = None,
        caller: Caller = Depends(require_caller),
        coordinator: JobLifecycleCoordinator = Depends(get_coordinator),
    ):
        status_filter = None
        if status:
            try:
                status_filter = JobStatus(status.upper())
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        try:
            jobs = await coordinator.list_jobs_for(caller.user_id, caller.role, status_filter)
        except JobError as exc:
            raise _http_error(exc)
        return {"jobs": [job.to_dict() for job in jobs]}

    @fastapi_app.get("/jobs/feed")
    async def job_feed(
        caller: Caller = Depends(require_role(UserRole.EMPLOYEE)),
        coordinator: JobLifecycleCoordinator = Depends(get_coordinator),
    ):
        try:
            jobs = await coordinator.job_feed(caller.user_id)
        except JobError as exc:
            raise _http_error(exc)
        return {"jobs": [job.to_dict() for job in jobs]}

    @fastapi_app.get("/jobs/{job_id}")
    async def get_job(
        job_id: str,
        caller: Caller = Depends(require_caller),
        coordinator: JobLifecycleCoordinator = Depends(get_coordinator),
    ):
        try:
            job = await coordinator.get_job(job_id)
        except JobError as exc:
            raise _http_error(exc)
        # Open jobs are visible to every employee; anything else only to its parties
        visible = (
            caller.user_id in (job.customer_id, job.worker_id)
            or (caller.role == UserRole.EMPLOYEE and job.status == JobStatus.OPEN)
        )
        if not visible:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"job": job.to_dict()}

    @fastapi_app.post("/jobs/claim")
    async def claim_job(
        payload: dict,
        caller: Caller = Depends(require_role(UserRole.EMPLOYEE)),
        coordinator: JobLifecycleCoordinator = Depends(get_coordinator),
    ):
        req = _parse(ClaimJobIn, payload)
        try:
            job = await coordinator.claim_job(req.job_id, caller.user_id)
        except JobError as exc:
            raise _http_error(exc)
        return {"job": job.to_dict()}

    @fastapi_app.post("/jobs/{job_id}/proof")
    async def submit_proof(
        job_id: str,
        payload: dict,
        caller: Caller = Depends(require_role(UserRole.EMPLOYEE)),
        coordinator: JobLifecycleCoordinator = Depends(get_coordinator),
    ):
        req = _parse(ProofIn, payload)
        try:
            job = await coordinator.submit_proof(job_id, caller.user_id, req.proof_urls)
        except JobError as exc:
            raise _http_error(exc)
        return {"job": job.to_dict()}

    @fastapi_app.post("/jobs/{job_id}/approve")
    async def approve_job(
        job_id: str,
        caller: Caller = Depends(require_role(UserRole.CUSTOMER)),
        coordinator: JobLifecycleCoordinator = Depends(get_coordinator),
    ):
        try:
            job = await coordinator.approve_job(job_id, caller.user_id)
        except JobError as exc:
            raise _http_error(exc)
        return {"job": job.to_dict()}

    @fastapi_app.post("/jobs/{job_id}/cancel")
    async def cancel_job(
        job_id: str,
        payload: Optional[dict] = None,
        caller: Caller = Depends(require_role(UserRole.CUSTOMER)),
        coordinator: JobLifecycleCoordinator = Depends(get_coordinator),
    ):
        req = _parse(CancelJobIn, payload or {})
        try:
            job = await coordinator.cancel_job(job_id, actor_id=caller.user_id, reason=req.reason)
        except JobError as exc:
            raise _http_error(exc)
        return {"job": job.to_dict()}


app = create_app()
