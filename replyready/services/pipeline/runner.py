"""Shared batch-poller behaviour for the pipeline stage runners."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, ClassVar
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.core.structured_logging import build_log_context
from replyready.db.enums import MessageStatus, Sender
from replyready.db.models import Lead, Message, Property
from replyready.services.classifier_client import ClassifierClient

logger = logging.getLogger(__name__)

CONTEXT_MESSAGES = 10


def describe_property(prop: Property) -> str:
    lines = [f"- {prop.title or 'Listing'}"]
    if prop.street_address or prop.city:
        location = ", ".join(part for part in (prop.street_address, prop.neighbourhood, prop.city) if part)
        lines.append(f"  address: {location}")
    if prop.price is not None:
        lines.append(f"  price: {prop.price}")
    if prop.rooms is not None:
        lines.append(f"  rooms: {prop.rooms}")
    if prop.size_sqm is not None:
        lines.append(f"  size: {prop.size_sqm} sqm")
    if prop.available_from is not None:
        lines.append(f"  available from: {prop.available_from.isoformat()}")
    if prop.furnished is not None:
        lines.append(f"  furnished: {'yes' if prop.furnished else 'no'}")
    if prop.pets_allowed is not None:
        lines.append(f"  pets allowed: {'yes' if prop.pets_allowed else 'no'}")
    if prop.uri:
        lines.append(f"  link: {prop.uri}")
    if prop.description:
        lines.append(f"  notes: {prop.description[:600]}")
    return "\n".join(lines)


@dataclass
class StageResult:
    message_id: str
    outcome: str
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class StageRunner:
    """
    Stateless batch job: select up to K rows in `input_status`, oldest first,
    and process each independently. Per-row errors are logged and reported;
    the batch continues.

    Subclasses implement `process` following the same discipline:
    artifact exists -> skip; do the work; insert artifact and advance status
    in one transaction (a lost race rolls both back).
    """

    stage: ClassVar[str]
    input_status: ClassVar[MessageStatus]

    def __init__(self, settings: Settings, client: ClassifierClient | None = None):
        self.settings = settings
        self.client = client or ClassifierClient(settings)

    @property
    def batch_size(self) -> int:
        return self.settings.STAGE_BATCH_SIZE

    def select_batch(self, db: Session) -> list[Message]:
        return (
            db.query(Message)
            .filter(Message.status == self.input_status.value)
            .order_by(Message.timestamp.asc(), Message.created_at.asc())
            .limit(self.batch_size)
            .all()
        )

    def run(self, db: Session) -> list[StageResult]:
        results: list[StageResult] = []
        for message in self.select_batch(db):
            message_id = message.id
            context = build_log_context(
                agent_id=message.agent_id, message_id=message_id, stage=self.stage
            )
            try:
                result = self.process(db, message)
            except Exception as exc:
                db.rollback()
                logger.exception(f"{self.stage} stage failed: {type(exc).__name__}", extra=context)
                result = StageResult(str(message_id), "error", type(exc).__name__)
            results.append(result)
        if results:
            logger.info(
                f"{self.stage} stage processed {len(results)} message(s)",
                extra=build_log_context(stage=self.stage),
            )
        return results

    def process(self, db: Session, message: Message) -> StageResult:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def thread_context(db: Session, message: Message, *, limit: int = CONTEXT_MESSAGES) -> list[Message]:
        """Last `limit` inbound or sent messages of the lead up to this one, oldest first."""
        rows = (
            db.query(Message)
            .filter(
                Message.lead_id == message.lead_id,
                Message.id != message.id,
                Message.timestamp <= message.timestamp,
                or_(Message.sender == Sender.USER.value, Message.status == MessageStatus.SENT.value),
            )
            .order_by(Message.timestamp.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(rows))

    @staticmethod
    def format_thread(messages: list[Message], *, max_chars: int = 800) -> str:
        lines = []
        for item in messages:
            who = "Agent" if item.sender == "agent" else "Client"
            text = (item.text or item.snippet or "").strip().replace("\r", "")
            lines.append(f"[{item.timestamp:%Y-%m-%d %H:%M}] {who}: {text[:max_chars]}")
        return "\n".join(lines) or "(no earlier messages)"

    @staticmethod
    def property_context(db: Session, lead: Lead | None) -> tuple[str, str]:
        """(active property block, suggested properties block) for prompts."""
        if lead is None:
            return "(none)", "(none)"
        active = db.get(Property, lead.active_property_id) if lead.active_property_id else None
        suggested_ids = [pid for pid in (lead.suggested_property_ids or []) if pid]
        suggested: list[Property] = []
        if suggested_ids:
            suggested = (
                db.query(Property)
                .filter(Property.id.in_([UUID(str(pid)) for pid in suggested_ids]))
                .order_by(Property.price.asc())
                .all()
            )
            if active is not None:
                suggested = [item for item in suggested if item.id != active.id]
        active_block = describe_property(active) if active else "(none)"
        suggested_block = "\n\n".join(describe_property(item) for item in suggested) or "(none)"
        return active_block, suggested_block

    @staticmethod
    def commit_or_lost(db: Session) -> bool:
        """Commit the artifact + transition unit; False on a unique-key race."""
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return False
        return True
