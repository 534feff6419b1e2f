"""Route resolve stage: intent_done -> route_resolved (deterministic, no model call).

Maps the normalized intent to a route and resolves the property context:
- PROPERTY_SPECIFIC anchors on an explicit URL, then a street address, then
  the lead's active property; without an anchor it degrades to a search.
- PROPERTY_SEARCH filters the agent's listings (cheapest first, at most 5).
- A follow-up that refers to the previous property, adds no constraints and
  does not ask for alternatives stays anchored to the lead's active property.

The lead's property context (active + suggested) is written only here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from replyready.db.enums import Intent, MessageStatus, Route
from replyready.db.models import IntentArtifact, Lead, Message, Property, RouteArtifact
from replyready.services.ai_prompt_schemas import IntentEntities
from replyready.services.pipeline.intent_stage import normalize_intent
from replyready.services.pipeline.runner import StageResult, StageRunner
from replyready.services.pipeline.state_machine import advance_status

logger = logging.getLogger(__name__)

ROUTE_VERSION = "rules-1"
ROUTE_MODEL = "deterministic+intent"
MAX_SUGGESTIONS = 5

_NON_PROPERTY_ROUTES = {
    Intent.QNA_GENERAL: Route.QNA,
    Intent.APPLICATION_PROCESS: Route.QNA,
    Intent.VIEWING_REQUEST: Route.VIEWING_REQUEST,
    Intent.STATUS_FOLLOWUP: Route.FOLLOWUP_STATUS,
    Intent.OTHER: Route.OTHER,
}


@dataclass
class RouteDecision:
    route: Route
    reason: str
    active_property_id: UUID | None = None
    suggested_property_ids: list[UUID] = field(default_factory=list)
    update_lead: bool = False


def has_search_constraints(entities: IntentEntities) -> bool:
    return any(
        value is not None
        for value in (
            entities.property_url,
            entities.address,
            entities.city,
            entities.neighbourhood,
            entities.budget_max,
            entities.rooms_min,
            entities.size_min_sqm,
            entities.furnished,
            entities.pets,
        )
    )


def is_anchored_followup(intent: Intent, entities: IntentEntities, lead: Lead) -> bool:
    return (
        intent in {Intent.OTHER, Intent.QNA_GENERAL, Intent.PROPERTY_SEARCH}
        and lead.active_property_id is not None
        and entities.refers_to_previous_property
        and not entities.wants_alternatives
        and not has_search_constraints(entities)
    )


def find_anchor(db: Session, lead: Lead, entities: IntentEntities) -> Property | None:
    query = db.query(Property).filter(Property.agent_id == lead.agent_id)
    if entities.property_url:
        match = query.filter(Property.uri == entities.property_url.strip()).first()
        if match:
            return match
    if entities.address:
        match = query.filter(Property.street_address.ilike(f"%{entities.address.strip()}%")).first()
        if match:
            return match
    if lead.active_property_id:
        return db.get(Property, lead.active_property_id)
    return None


def search_properties(db: Session, agent_id: UUID, entities: IntentEntities) -> list[Property]:
    query = db.query(Property).filter(Property.agent_id == agent_id)
    if entities.city:
        query = query.filter(Property.city.ilike(f"%{entities.city.strip()}%"))
    if entities.neighbourhood:
        query = query.filter(Property.neighbourhood.ilike(f"%{entities.neighbourhood.strip()}%"))
    if entities.budget_max is not None:
        query = query.filter(Property.price <= entities.budget_max)
    if entities.rooms_min is not None:
        query = query.filter(Property.rooms >= entities.rooms_min)
    if entities.size_min_sqm is not None:
        query = query.filter(Property.size_sqm >= entities.size_min_sqm)
    if entities.furnished is not None:
        query = query.filter(Property.furnished.is_(entities.furnished))
    if entities.pets:
        query = query.filter(Property.pets_allowed.is_(True))
    return query.order_by(Property.price.asc()).limit(MAX_SUGGESTIONS).all()


class RouteStage(StageRunner):
    stage = "route"
    input_status = MessageStatus.INTENT_DONE

    def process(self, db: Session, message: Message) -> StageResult:
        if self._artifact_exists(db, message):
            advance_status(db, message.id, MessageStatus.INTENT_DONE, MessageStatus.ROUTE_RESOLVED)
            return StageResult(str(message.id), "skipped", "artifact_exists")

        intent_artifact = (
            db.query(IntentArtifact)
            .filter(IntentArtifact.message_id == message.id)
            .order_by(IntentArtifact.created_at.desc())
            .first()
        )
        intent = normalize_intent(intent_artifact.intent if intent_artifact else None)
        entities = IntentEntities.model_validate(intent_artifact.entities if intent_artifact else {})
        confidence = intent_artifact.confidence if intent_artifact else 0.0

        if intent == Intent.SPAM_OR_IRRELEVANT:
            advance_status(db, message.id, MessageStatus.INTENT_DONE, MessageStatus.IGNORED)
            return StageResult(str(message.id), "ignored", intent.value)

        lead = db.get(Lead, message.lead_id)
        decision = self.resolve(db, lead, intent, entities)

        if decision.update_lead:
            lead.active_property_id = decision.active_property_id
            lead.suggested_property_ids = [str(pid) for pid in decision.suggested_property_ids]
            lead.updated_at = datetime.now(timezone.utc)

        db.add(
            RouteArtifact(
                message_id=message.id,
                lead_id=lead.id,
                prompt_version=ROUTE_VERSION,
                route=decision.route.value,
                confidence=confidence,
                reason=decision.reason,
                model=ROUTE_MODEL,
                payload={
                    "intent": intent_artifact.intent if intent_artifact else None,
                    "intent_normalized": intent.value,
                    "intent_confidence": confidence,
                    "entities": entities.model_dump(),
                    "active_property_id": (
                        str(decision.active_property_id) if decision.active_property_id else None
                    ),
                    "suggested_property_ids": [str(pid) for pid in decision.suggested_property_ids],
                    "context_count": len(self.thread_context(db, message)),
                },
            )
        )
        db.flush()
        advanced = advance_status(
            db, message.id, MessageStatus.INTENT_DONE, MessageStatus.ROUTE_RESOLVED, commit=False
        )
        if not advanced:
            db.rollback()
            return StageResult(str(message.id), "lost_race")
        if not self.commit_or_lost(db):
            return StageResult(str(message.id), "lost_race")
        return StageResult(str(message.id), "route_resolved", decision.route.value)

    def resolve(self, db: Session, lead: Lead, intent: Intent, entities: IntentEntities) -> RouteDecision:
        if is_anchored_followup(intent, entities, lead):
            return RouteDecision(
                route=Route.PROPERTY_SPECIFIC,
                reason="followup_anchored",
                active_property_id=lead.active_property_id,
                suggested_property_ids=list(lead.suggested_property_ids or []),
            )

        if intent == Intent.PROPERTY_SPECIFIC:
            anchor = find_anchor(db, lead, entities)
            if anchor is not None:
                return RouteDecision(
                    route=Route.PROPERTY_SPECIFIC,
                    reason="anchored_property",
                    active_property_id=anchor.id,
                    update_lead=True,
                )
            intent = Intent.PROPERTY_SEARCH
            degraded = True
        else:
            degraded = False

        if intent == Intent.PROPERTY_SEARCH:
            matches = search_properties(db, lead.agent_id, entities)
            if degraded:
                reason = "no_anchor_degrade_to_search"
            else:
                reason = "matched_properties" if matches else "no_property_match"
            return RouteDecision(
                route=Route.PROPERTY_SEARCH,
                reason=reason,
                active_property_id=matches[0].id if len(matches) == 1 else lead.active_property_id,
                suggested_property_ids=[match.id for match in matches],
                update_lead=True,
            )

        return RouteDecision(
            route=_NON_PROPERTY_ROUTES.get(intent, Route.OTHER),
            reason="non_property_flow",
            active_property_id=lead.active_property_id,
            suggested_property_ids=list(lead.suggested_property_ids or []),
        )

    @staticmethod
    def _artifact_exists(db: Session, message: Message) -> bool:
        return (
            db.query(RouteArtifact.id)
            .filter(RouteArtifact.message_id == message.id, RouteArtifact.prompt_version == ROUTE_VERSION)
            .first()
            is not None
        )
