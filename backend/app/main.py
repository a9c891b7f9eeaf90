from __future__ import annotations

import json
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from loguru import logger
from pydantic import TypeAdapter, ValidationError

from ingestion.service import IngestionService
from pipelines.context import UnknownJobError, build_lifecycle

from . import schemas
from .core.config import Settings, get_settings, settings
from .db import get_db, init_db
from .repositories import FinalizationErrorRepository
from .services.ledger import HttpLedgerClient
from .services.webhook import SIGNATURE_HEADER, verify_signature

app = FastAPI(title="Market Ledger Sync", version="0.1.0", debug=settings.debug)

_notifications_adapter = TypeAdapter(list[schemas.LedgerNotificationIn])


@app.on_event("startup")
async def on_startup() -> None:
    """Create tables, wire the ledger client and start the periodic jobs if enabled."""

    init_db()
    current = get_settings()
    ledger = HttpLedgerClient(settings=current)
    app.state.ledger = ledger
    app.state.ingestion = IngestionService(settings=current)
    app.state.lifecycle = build_lifecycle(current, ledger=ledger)
    if current.scheduler_enabled:
        await app.state.lifecycle.monitor.validate()
        await app.state.lifecycle.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    lifecycle = getattr(app.state, "lifecycle", None)
    if lifecycle is not None:
        await lifecycle.stop()
    ledger = getattr(app.state, "ledger", None)
    if ledger is not None:
        await ledger.aclose()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _settings() -> Settings:
    return get_settings()


def _ingestion_service():
    service = getattr(app.state, "ingestion", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ingestion service not initialised")
    return service


def _lifecycle():
    lifecycle = getattr(app.state, "lifecycle", None)
    if lifecycle is None:
        raise HTTPException(status_code=503, detail="Lifecycle jobs not initialised")
    return lifecycle


def _finalization_errors(db=Depends(get_db)) -> FinalizationErrorRepository:
    return FinalizationErrorRepository(db)


def _parse_notifications(body: bytes) -> list[schemas.LedgerNotificationIn]:
    try:
        raw: Any = json.loads(body or b"null")
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="Body is not valid JSON") from exc
    if isinstance(raw, dict):
        raw = [raw]
    try:
        return _notifications_adapter.validate_python(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc


@app.post("/webhooks/ledger", response_model=schemas.WebhookAck, tags=["ingestion"])
async def receive_ledger_notification(
    request: Request,
    current: Settings = Depends(_settings),
    service=Depends(_ingestion_service),
) -> schemas.WebhookAck:
    """Decode pushed transaction notifications and apply them to the replica."""

    body = await request.body()
    if not current.webhook_dev_mode:
        if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), current.webhook_secret):
            logger.warning("Rejected webhook delivery with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    notifications = _parse_notifications(body)
    ack = schemas.WebhookAck()
    for notification in notifications:
        summary = await run_in_threadpool(service.ingest_notification, notification.to_payload())
        ack.received += summary.received
        ack.decoded += summary.decoded
        ack.applied += summary.applied
        ack.skipped += summary.skipped
        ack.failed += summary.failed
    logger.info(
        "Webhook processed {} notifications: applied={}, skipped={}, failed={}",
        len(notifications),
        ack.applied,
        ack.skipped,
        ack.failed,
    )
    return ack


@app.get("/ops/status", tags=["ops"])
def lifecycle_status(lifecycle=Depends(_lifecycle)) -> dict[str, Any]:
    """Running flag, thresholds and windows of every scheduled job."""

    return lifecycle.status()


@app.post("/ops/jobs/{job}/run", response_model=schemas.JobRunResponse, tags=["ops"])
async def run_job_now(job: str, lifecycle=Depends(_lifecycle)) -> schemas.JobRunResponse:
    """Trigger one pass of a job outside its schedule."""

    try:
        runner = lifecycle.runner(job)
    except UnknownJobError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown job {job}") from exc
    if runner.job.is_running:
        raise HTTPException(status_code=409, detail=f"{job} is already running")
    summary = await runner.run_now()
    return schemas.JobRunResponse(job=job, summary=summary)


@app.get(
    "/finalization-errors",
    response_model=schemas.FinalizationErrorList,
    tags=["ops"],
)
def list_finalization_errors(
    *,
    unresolved_only: Annotated[bool, Query(description="Hide errors already triaged")] = True,
    market_id: Annotated[str | None, Query(description="Restrict to one market")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    repo: FinalizationErrorRepository = Depends(_finalization_errors),
) -> schemas.FinalizationErrorList:
    """Read-only list of failed finalize writes awaiting manual triage."""

    items, total = repo.list_errors(
        unresolved_only=unresolved_only, market_id=market_id, limit=limit, offset=offset
    )
    return schemas.FinalizationErrorList(
        items=[schemas.FinalizationErrorOut.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )
