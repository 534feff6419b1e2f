"""
Internal endpoints for scheduled/cron operations and operator actions.

Protected by X-Internal-Secret header.
Call from an external scheduler (Cloud Scheduler, GH Actions, cron).
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.deps import get_app_settings, get_db, verify_internal_secret
from replyready.db.enums import JobType
from replyready.db.models import Message
from replyready.services import connection_service, job_service, outbox_service
from replyready.services.history_sync_service import HistorySyncEngine
from replyready.services.pipeline.registry import STAGES, build_stage, run_pipeline
from replyready.services.send_dispatcher import SendDispatcher

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(verify_internal_secret)])
logger = logging.getLogger(__name__)


class StageRunResponse(BaseModel):
    processed: int
    results: list[dict]


class PipelineRunResponse(BaseModel):
    processed: int
    stages: dict[str, list[dict]]


class EnqueueResponse(BaseModel):
    connections: int
    jobs_created: int


class OutboxMessageRead(BaseModel):
    id: UUID
    status: str
    send_status: str
    send_locked_at: datetime | None
    send_error: str | None
    approval_required: bool


def _outbox_read(message: Message) -> OutboxMessageRead:
    return OutboxMessageRead(
        id=message.id,
        status=message.status,
        send_status=message.send_status,
        send_locked_at=message.send_locked_at,
        send_error=message.send_error,
        approval_required=message.approval_required,
    )


def _raise_for(exc: Exception) -> None:
    if isinstance(exc, LookupError):
        raise HTTPException(status_code=404, detail=str(exc))
    raise HTTPException(status_code=409, detail=str(exc))


# =============================================================================
# Scheduled
# =============================================================================


@router.post("/scheduled/stages/{stage}", response_model=StageRunResponse)
def run_scheduled_stage(
    stage: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """Run one batch of a single pipeline stage."""
    if stage not in STAGES:
        raise HTTPException(status_code=404, detail=f"Unknown stage: {stage}")
    results = build_stage(stage, settings).run(db)
    return StageRunResponse(processed=len(results), results=[item.as_dict() for item in results])


@router.post("/scheduled/pipeline", response_model=PipelineRunResponse)
def run_scheduled_pipeline(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """One batch of every stage, in pipeline order."""
    results = run_pipeline(db, settings)
    return PipelineRunResponse(
        processed=sum(len(items) for items in results.values()),
        stages={name: [item.as_dict() for item in items] for name, items in results.items()},
    )


@router.post("/scheduled/history-sync", response_model=EnqueueResponse)
def enqueue_history_sync(db: Session = Depends(get_db)):
    """
    Sweep: queue a history sync for every usable connection.

    Covers pushes that were lost or answered without processing.
    """
    connections = connection_service.list_usable(db)
    created = 0
    for connection in connections:
        if job_service.has_active_job(db, JobType.HISTORY_SYNC, connection_id=connection.id):
            continue
        job_service.schedule_job(
            db, JobType.HISTORY_SYNC, {"connection_id": str(connection.id)}, agent_id=connection.agent_id
        )
        created += 1
    return EnqueueResponse(connections=len(connections), jobs_created=created)


@router.post("/scheduled/renew-watches", response_model=EnqueueResponse)
def enqueue_watch_renewals(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """Queue a watch/subscription refresh for connections expiring within a day."""
    engine = HistorySyncEngine(settings)
    connections = connection_service.list_usable(db)
    now = datetime.now(timezone.utc)
    created = 0
    for connection in connections:
        if not engine.watch_is_due(connection, now=now):
            continue
        job = job_service.enqueue_once(
            db,
            JobType.WATCH_REFRESH,
            {"connection_id": str(connection.id)},
            agent_id=connection.agent_id,
            idempotency_key=f"watch_refresh:{connection.id}:{now:%Y-%m-%d}",
        )
        if job is not None:
            created += 1
    return EnqueueResponse(connections=len(connections), jobs_created=created)


# =============================================================================
# Operator actions
# =============================================================================


@router.get("/outbox/stuck", response_model=list[OutboxMessageRead])
def list_stuck_sends(
    older_than_minutes: int | None = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    minutes = older_than_minutes if older_than_minutes is not None else settings.STUCK_SEND_MINUTES
    return [_outbox_read(item) for item in outbox_service.list_stuck(db, older_than_minutes=minutes)]


@router.post("/outbox/{message_id}/unlock", response_model=OutboxMessageRead)
def unlock_send(message_id: UUID, db: Session = Depends(get_db)):
    """Clear a stuck send lock (send_status=failed, send_error=admin_unlock)."""
    try:
        message = outbox_service.unlock_send(db, message_id)
    except (LookupError, outbox_service.OutboxActionError) as exc:
        _raise_for(exc)
    logger.info(f"Operator unlocked send for message {message_id}")
    return _outbox_read(message)


@router.post("/outbox/{message_id}/retry", response_model=OutboxMessageRead)
def retry_send(message_id: UUID, db: Session = Depends(get_db)):
    try:
        message = outbox_service.retry_send(db, message_id)
    except (LookupError, outbox_service.OutboxActionError) as exc:
        _raise_for(exc)
    return _outbox_read(message)


@router.post("/outbox/{message_id}/approve")
def approve_draft(
    message_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """Approve a needs_approval draft and dispatch it right away."""
    try:
        outbox_service.approve(db, message_id)
    except (LookupError, outbox_service.OutboxActionError) as exc:
        _raise_for(exc)
    result = SendDispatcher(settings).dispatch(db, message_id)
    return {"message": _outbox_read(db.get(Message, message_id)).model_dump(mode="json"), "send": result.as_dict()}


@router.post("/pipeline/{message_id}/retry-draft", response_model=OutboxMessageRead)
def retry_draft(message_id: UUID, db: Session = Depends(get_db)):
    """failed_draft -> route_resolved."""
    try:
        message = outbox_service.retry_draft(db, message_id)
    except (LookupError, outbox_service.OutboxActionError) as exc:
        _raise_for(exc)
    return _outbox_read(message)
