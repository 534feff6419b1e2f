"""CLI tools for pipeline operators."""

import json
import logging
from uuid import UUID

import click

from replyready.core.config import get_settings
from replyready.db.session import SessionLocal
from replyready.services import connection_service, outbox_service
from replyready.services.history_sync_service import HistorySyncEngine
from replyready.services.pipeline.registry import PIPELINE_ORDER, STAGES, build_stage, run_pipeline
from replyready.services.send_dispatcher import SendDispatcher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _message_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise click.BadParameter(f"Not a message id: {value}")


@click.group()
def cli():
    """ReplyReady operator tools."""
    pass


@cli.command()
@click.argument("stage", type=click.Choice(sorted(STAGES) + ["all"]))
def run_stage(stage: str):
    """
    Run one batch of a pipeline stage ("all" runs every stage in order).

    Example:
        python -m replyready.cli run-stage qa
    """
    settings = get_settings()
    db = SessionLocal()
    try:
        if stage == "all":
            results = run_pipeline(db, settings)
            for name in dict.fromkeys(PIPELINE_ORDER):
                click.echo(f"{name}: {len(results.get(name, []))} processed")
            return
        results = build_stage(stage, settings).run(db)
        click.echo(f"✓ {stage}: {len(results)} processed")
        for item in results:
            click.echo(json.dumps(item.as_dict()))
    finally:
        db.close()


@cli.command()
@click.argument("message_id")
def unlock_send(message_id: str):
    """Clear a stuck send lock (send_status=failed, send_error=admin_unlock)."""
    db = SessionLocal()
    try:
        draft = outbox_service.unlock_send(db, _message_id(message_id))
        click.echo(f"✓ Unlocked {draft.id} (status={draft.status}, send_status={draft.send_status})")
    except (LookupError, outbox_service.OutboxActionError) as e:
        db.rollback()
        click.echo(f"❌ {e}")
    finally:
        db.close()


@cli.command()
@click.argument("message_id")
def retry_send(message_id: str):
    """Re-queue a failed send."""
    db = SessionLocal()
    try:
        draft = outbox_service.retry_send(db, _message_id(message_id))
        click.echo(f"✓ Re-queued {draft.id} as {draft.status}")
    except (LookupError, outbox_service.OutboxActionError) as e:
        db.rollback()
        click.echo(f"❌ {e}")
    finally:
        db.close()


@cli.command()
@click.argument("message_id")
def approve(message_id: str):
    """Approve a needs_approval draft and send it."""
    settings = get_settings()
    db = SessionLocal()
    try:
        draft = outbox_service.approve(db, _message_id(message_id))
        result = SendDispatcher(settings).dispatch(db, draft.id)
        click.echo(f"✓ Approved {draft.id}; send outcome: {result.outcome}")
        if result.detail:
            click.echo(f"  {result.detail}")
    except (LookupError, outbox_service.OutboxActionError) as e:
        db.rollback()
        click.echo(f"❌ {e}")
    finally:
        db.close()


@cli.command()
@click.argument("message_id")
def retry_draft(message_id: str):
    """Move a failed_draft message back to route_resolved."""
    db = SessionLocal()
    try:
        message = outbox_service.retry_draft(db, _message_id(message_id))
        click.echo(f"✓ {message.id} is {message.status}")
    except (LookupError, outbox_service.OutboxActionError) as e:
        db.rollback()
        click.echo(f"❌ {e}")
    finally:
        db.close()


@cli.command()
@click.option("--older-than", "older_than", type=int, default=None, help="Minutes (default: STUCK_SEND_MINUTES)")
def list_stuck(older_than: int | None):
    """List drafts stuck in send_status=sending."""
    settings = get_settings()
    minutes = older_than if older_than is not None else settings.STUCK_SEND_MINUTES
    db = SessionLocal()
    try:
        stuck = outbox_service.list_stuck(db, older_than_minutes=minutes)
        if not stuck:
            click.echo(f"No sends locked for more than {minutes} minutes")
            return
        for draft in stuck:
            click.echo(f"{draft.id}  locked_at={draft.send_locked_at.isoformat()}  status={draft.status}")
    finally:
        db.close()


@cli.command()
@click.option("--force", is_flag=True, help="Renew even when the watch is not due")
def renew_watches(force: bool):
    """Renew Gmail watches / Graph subscriptions that expire within a day."""
    engine = HistorySyncEngine(get_settings())
    db = SessionLocal()
    try:
        renewed = 0
        failed = 0
        for connection in connection_service.list_usable(db):
            try:
                if engine.refresh_watch(db, connection, force=force):
                    renewed += 1
            except Exception as e:
                db.rollback()
                failed += 1
                click.echo(f"❌ {connection.id}: {type(e).__name__}: {e}")
        click.echo(f"✓ Renewed {renewed} watch(es), {failed} failed")
    finally:
        db.close()


@cli.command()
@click.argument("connection_id")
def sync(connection_id: str):
    """Run a history sync for one connection now."""
    engine = HistorySyncEngine(get_settings())
    db = SessionLocal()
    try:
        connection = connection_service.get_connection_by_id(db, UUID(connection_id))
        report = engine.sync(db, connection)
        click.echo(json.dumps(report.as_dict()))
    finally:
        db.close()


if __name__ == "__main__":
    cli()
