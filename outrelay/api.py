"""HTTP surface: dispatcher trigger, producer enqueue and operator endpoints."""

import secrets
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from outrelay.core.dispatcher import Dispatcher
from outrelay.core.errors import (
    EventNotFoundError,
    InvalidTransitionError,
    LedgerUnavailableError,
)
from outrelay.core.event import DEFAULT_MAX_ATTEMPTS, NewEvent, OutboxEvent
from outrelay.core.logging import get_logger
from outrelay.ledgers.base import EventLedger
from outrelay.monitor import OutboxMonitor

logger = get_logger("outrelay.api")

OPERATOR_BATCH_SIZE = 50
MAX_BATCH_SIZE = 500

router = APIRouter()


def _token_from(request: Request) -> str | None:
    token = request.headers.get("x-job-token")
    if token:
        return token
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return None


def _authorized(request: Request) -> bool:
    expected = request.app.state.job_token
    token = _token_from(request)
    if not expected or not token:
        return False
    return secrets.compare_digest(token, expected)


def _unauthorized() -> JSONResponse:
    return JSONResponse(
        {"ok": False, "error": "Unauthorized"}, status_code=status.HTTP_401_UNAUTHORIZED
    )


def _event_body(event: OutboxEvent) -> dict[str, Any]:
    return event.model_dump(mode="json")


async def _dispatch(
    request: Request, batch_size: int | None, kinds: list[str] | None = None
) -> JSONResponse:
    dispatcher: Dispatcher = request.app.state.dispatcher
    try:
        summary = await dispatcher.run_batch(batch_size, kinds=kinds)
    except LedgerUnavailableError as e:
        logger.error(f"Outbox job failed: {e}")
        return JSONResponse(
            {"ok": False, "error": str(e)},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    return JSONResponse(summary.to_dict())


@router.post("/jobs/outbox")
async def run_outbox_job(
    request: Request,
    batch_size: int | None = Query(default=None, ge=1, le=MAX_BATCH_SIZE),
    kind: list[str] | None = Query(default=None),
) -> JSONResponse:
    """Scheduler trigger: claim and process one batch.

    Repeat ``kind`` to restrict the claim to those event kinds.
    """
    if not _authorized(request):
        return _unauthorized()
    return await _dispatch(request, batch_size, kind or None)


@router.post("/outbox/run")
async def run_outbox_now(request: Request) -> JSONResponse:
    """Operator trigger: process a larger batch right away."""
    if not _authorized(request):
        return _unauthorized()
    return await _dispatch(request, OPERATOR_BATCH_SIZE)


@router.post("/outbox/events", status_code=status.HTTP_201_CREATED)
async def enqueue_event(request: Request) -> JSONResponse:
    if not _authorized(request):
        return _unauthorized()
    try:
        new_event = NewEvent.model_validate(await request.json())
    except (ValidationError, ValueError) as e:
        return JSONResponse(
            {"ok": False, "error": str(e)},
            status_code=422,
        )

    limit: int = request.app.state.max_attempts
    if new_event.max_attempts is not None and new_event.max_attempts > limit:
        return JSONResponse(
            {"ok": False, "error": f"max_attempts may not exceed {limit}"},
            status_code=422,
        )

    ledger: EventLedger = request.app.state.ledger
    event = await ledger.enqueue(
        new_event.kind,
        new_event.payload,
        new_event.tenant_id,
        idempotency_key=new_event.idempotency_key,
        max_attempts=new_event.max_attempts or limit,
    )
    return JSONResponse(_event_body(event), status_code=status.HTTP_201_CREATED)


@router.get("/outbox/events/{event_id}")
async def get_event(request: Request, event_id: str) -> JSONResponse:
    if not _authorized(request):
        return _unauthorized()
    ledger: EventLedger = request.app.state.ledger
    try:
        event = await ledger.get(event_id)
    except EventNotFoundError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=status.HTTP_404_NOT_FOUND)
    return JSONResponse(_event_body(event))


@router.post("/outbox/events/{event_id}/replay")
async def replay_event(request: Request, event_id: str) -> JSONResponse:
    if not _authorized(request):
        return _unauthorized()
    ledger: EventLedger = request.app.state.ledger
    try:
        event = await ledger.replay(event_id)
    except EventNotFoundError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=status.HTTP_404_NOT_FOUND)
    except InvalidTransitionError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=status.HTTP_409_CONFLICT)

    logger.info(f"Replayed dead event {event_id} as {event.id}", extra={"event_id": event.id})
    return JSONResponse(_event_body(event), status_code=status.HTTP_201_CREATED)


@router.get("/outbox/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    if not _authorized(request):
        return _unauthorized()
    monitor: OutboxMonitor = request.app.state.monitor
    metrics = await monitor.metrics()
    return JSONResponse(metrics.to_dict())


@router.post("/outbox/metrics/recompute")
async def recompute_metrics(request: Request) -> JSONResponse:
    if not _authorized(request):
        return _unauthorized()
    monitor: OutboxMonitor = request.app.state.monitor
    metrics = await monitor.refresh()
    return JSONResponse(metrics.to_dict())


def create_app(
    dispatcher: Dispatcher,
    ledger: EventLedger,
    monitor: OutboxMonitor,
    job_token: str | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> FastAPI:
    """Build the HTTP app around already-wired collaborators.

    Every endpoint requires ``job_token`` via ``X-Job-Token`` or
    ``Authorization: Bearer``. Without a configured token all requests
    are rejected. ``max_attempts`` is the default for enqueued events and
    the ceiling a producer may request.
    """
    app = FastAPI(title="outrelay")
    app.state.dispatcher = dispatcher
    app.state.ledger = ledger
    app.state.monitor = monitor
    app.state.job_token = job_token
    app.state.max_attempts = max_attempts
    app.include_router(router)
    return app
