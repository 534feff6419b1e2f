"""Tests for the stage runners: intent, route, draft, qa, rewrite."""

from decimal import Decimal

import httpx
import pytest

from replyready.db.enums import Intent, MessageStatus, QaVerdict, Sender
from replyready.db.models import DraftLink, IntentArtifact, Lead, Message, QaArtifact, RewriteArtifact, RouteArtifact
from replyready.services import outbox_service
from replyready.services.ingestion_service import IngestionService
from replyready.services.mail_envelope import MailEnvelope
from replyready.services.pipeline.draft_stage import DraftStage, reply_subject
from replyready.services.pipeline.intent_stage import IntentStage, apply_confidence_floor, normalize_intent
from replyready.services.pipeline.qa_stage import QaStage, route_after_qa
from replyready.services.pipeline.registry import build_stage
from replyready.services.pipeline.rewrite_stage import RewriteStage
from replyready.services.pipeline.route_stage import RouteStage
from replyready.services.safety_classifier import SafetyClassifier


def _connect_error():
    return httpx.ConnectError("connection refused", request=httpx.Request("POST", "https://api.test"))


def _seed_intent(db, message, intent, confidence=0.9, **entities):
    db.add(
        IntentArtifact(
            message_id=message.id,
            prompt_version="builtin-1",
            intent=intent.value if isinstance(intent, Intent) else intent,
            confidence=confidence,
            entities=entities,
        )
    )
    message.status = MessageStatus.INTENT_DONE.value
    db.commit()


@pytest.fixture
def lead(agent, make_lead):
    return make_lead(agent, provider_thread_id="thread-1")


@pytest.fixture
def listings(agent, make_property):
    return [
        make_property(agent, title="Altbau", street_address="Musterstraße 5", price=Decimal("1450"), rooms=Decimal("3")),
        make_property(agent, title="Loft", street_address="Hafenweg 2", price=Decimal("990"), rooms=Decimal("2"),
                      uri="https://makler.example/expose/loft"),
        make_property(agent, title="Penthouse", street_address="Parkallee 1", price=Decimal("2900"), rooms=Decimal("4"),
                      city="Hamburg"),
    ]


# =============================================================================
# Intent
# =============================================================================


def test_normalize_intent_maps_legacy_labels():
    assert normalize_intent("property_match") == Intent.PROPERTY_SEARCH
    assert normalize_intent("FAQ") == Intent.QNA_GENERAL
    assert normalize_intent("VIEWING_REQUEST") == Intent.VIEWING_REQUEST
    assert normalize_intent("something new") == Intent.OTHER
    assert normalize_intent(None) == Intent.OTHER


def test_confidence_floors():
    assert apply_confidence_floor(Intent.PROPERTY_SEARCH, 0.59) == Intent.OTHER
    assert apply_confidence_floor(Intent.PROPERTY_SEARCH, 0.6) == Intent.PROPERTY_SEARCH
    assert apply_confidence_floor(Intent.SPAM_OR_IRRELEVANT, 0.97) == Intent.OTHER
    assert apply_confidence_floor(Intent.SPAM_OR_IRRELEVANT, 0.98) == Intent.SPAM_OR_IRRELEVANT


def test_intent_stage_records_artifact_and_advances(db, test_settings, fake_model, lead, make_message):
    message = make_message(lead)
    provider, client = fake_model(
        {"intent": "PROPERTY_SPECIFIC", "confidence": 0.93, "reason": "asks about a flat",
         "entities": {"address": "Musterstraße 5"}}
    )

    results = IntentStage(test_settings, client).run(db)

    assert [(r.outcome, r.detail) for r in results] == [("intent_done", "PROPERTY_SPECIFIC")]
    artifact = db.query(IntentArtifact).one()
    assert artifact.prompt_version == "builtin-1"
    assert artifact.entities["address"] == "Musterstraße 5"
    db.refresh(message)
    assert message.status == MessageStatus.INTENT_DONE.value
    assert "Guten Tag, ist die Wohnung noch frei?" in provider.calls[0][-1].content


def test_intent_failure_still_advances_as_other(db, test_settings, fake_model, lead, make_message):
    message = make_message(lead)
    _, client = fake_model(_connect_error())

    IntentStage(test_settings, client).run(db)

    artifact = db.query(IntentArtifact).one()
    assert artifact.intent == Intent.OTHER.value
    assert artifact.confidence == 0.0
    assert artifact.reason == "intent_unavailable:transport_error"
    db.refresh(message)
    assert message.status == MessageStatus.INTENT_DONE.value


def test_intent_string_confidence_is_schema_invalid(db, test_settings, fake_model, lead, make_message):
    make_message(lead)
    _, client = fake_model({"intent": "QNA_GENERAL", "confidence": "0.9"})

    IntentStage(test_settings, client).run(db)

    assert db.query(IntentArtifact).one().reason == "intent_unavailable:schema_invalid"


def test_intent_existing_artifact_skips_model(db, test_settings, fake_model, lead, make_message):
    message = make_message(lead)
    db.add(IntentArtifact(message_id=message.id, prompt_version="builtin-1", intent="OTHER", confidence=0.7))
    db.commit()
    provider, client = fake_model()

    results = IntentStage(test_settings, client).run(db)

    assert results[0].outcome == "skipped"
    assert provider.calls == []
    db.refresh(message)
    assert message.status == MessageStatus.INTENT_DONE.value


# =============================================================================
# Route
# =============================================================================


def _route(db):
    return db.query(RouteArtifact).order_by(RouteArtifact.created_at.desc()).first()


def test_route_anchors_on_property_url(db, test_settings, lead, make_message, listings):
    message = make_message(lead)
    _seed_intent(db, message, Intent.PROPERTY_SPECIFIC, property_url="https://makler.example/expose/loft")

    results = RouteStage(test_settings).run(db)

    assert results[0].detail == "PROPERTY_SPECIFIC"
    assert _route(db).reason == "anchored_property"
    db.refresh(lead)
    assert lead.active_property_id == listings[1].id


def test_route_anchors_on_address(db, test_settings, lead, make_message, listings):
    message = make_message(lead)
    _seed_intent(db, message, Intent.PROPERTY_SPECIFIC, address="musterstraße 5")

    RouteStage(test_settings).run(db)

    db.refresh(lead)
    assert lead.active_property_id == listings[0].id
    db.refresh(message)
    assert message.status == MessageStatus.ROUTE_RESOLVED.value


def test_route_falls_back_to_active_property(db, test_settings, agent, make_lead, make_message, listings):
    lead = make_lead(agent, active_property_id=listings[2].id)
    message = make_message(lead)
    _seed_intent(db, message, Intent.PROPERTY_SPECIFIC)

    RouteStage(test_settings).run(db)

    assert _route(db).payload["active_property_id"] == str(listings[2].id)


def test_route_without_anchor_degrades_to_search(db, test_settings, lead, make_message, listings):
    message = make_message(lead)
    _seed_intent(db, message, Intent.PROPERTY_SPECIFIC, address="Unbekannte Gasse 9")

    RouteStage(test_settings).run(db)

    route = _route(db)
    assert route.route == "PROPERTY_SEARCH"
    assert route.reason == "no_anchor_degrade_to_search"
    assert route.payload["suggested_property_ids"] == [str(listings[1].id), str(listings[0].id), str(listings[2].id)]


def test_route_search_filters_and_orders_by_price(db, test_settings, lead, make_message, listings):
    message = make_message(lead)
    _seed_intent(db, message, Intent.PROPERTY_SEARCH, city="Berlin", budget_max=1500)

    RouteStage(test_settings).run(db)

    route = _route(db)
    assert route.reason == "matched_properties"
    assert route.payload["suggested_property_ids"] == [str(listings[1].id), str(listings[0].id)]
    db.refresh(lead)
    assert lead.active_property_id is None
    assert lead.suggested_property_ids == [str(listings[1].id), str(listings[0].id)]


def test_route_single_match_becomes_active(db, test_settings, lead, make_message, listings):
    message = make_message(lead)
    _seed_intent(db, message, Intent.PROPERTY_SEARCH, rooms_min=4)

    RouteStage(test_settings).run(db)

    db.refresh(lead)
    assert lead.active_property_id == listings[2].id


def test_route_search_caps_suggestions(db, test_settings, agent, lead, make_message, make_property):
    for index in range(7):
        make_property(agent, price=Decimal(1000 + index))
    message = make_message(lead)
    _seed_intent(db, message, Intent.PROPERTY_SEARCH, city="Berlin")

    RouteStage(test_settings).run(db)

    assert len(_route(db).payload["suggested_property_ids"]) == 5


def test_followup_stays_anchored(db, test_settings, agent, make_lead, make_message, listings):
    lead = make_lead(agent, active_property_id=listings[0].id, suggested_property_ids=[str(listings[0].id)])
    message = make_message(lead, text="Ist die noch frei?")
    _seed_intent(db, message, Intent.QNA_GENERAL, refers_to_previous_property=True)

    RouteStage(test_settings).run(db)

    route = _route(db)
    assert route.route == "PROPERTY_SPECIFIC"
    assert route.reason == "followup_anchored"
    db.refresh(lead)
    assert lead.active_property_id == listings[0].id


def test_followup_asking_for_alternatives_searches(db, test_settings, agent, make_lead, make_message, listings):
    lead = make_lead(agent, active_property_id=listings[0].id)
    message = make_message(lead)
    _seed_intent(db, message, Intent.PROPERTY_SEARCH, refers_to_previous_property=True, wants_alternatives=True)

    RouteStage(test_settings).run(db)

    assert _route(db).route == "PROPERTY_SEARCH"


@pytest.mark.parametrize(
    "intent,route",
    [
        (Intent.QNA_GENERAL, "QNA"),
        (Intent.APPLICATION_PROCESS, "QNA"),
        (Intent.VIEWING_REQUEST, "VIEWING_REQUEST"),
        (Intent.STATUS_FOLLOWUP, "FOLLOWUP_STATUS"),
        (Intent.OTHER, "OTHER"),
    ],
)
def test_non_property_routes(db, test_settings, lead, make_message, intent, route):
    message = make_message(lead)
    _seed_intent(db, message, intent)

    RouteStage(test_settings).run(db)

    assert _route(db).route == route
    assert _route(db).reason == "non_property_flow"


def test_spam_intent_is_ignored_without_artifact(db, test_settings, lead, make_message):
    message = make_message(lead)
    _seed_intent(db, message, Intent.SPAM_OR_IRRELEVANT, confidence=0.99)

    results = RouteStage(test_settings).run(db)

    assert results[0].outcome == "ignored"
    assert db.query(RouteArtifact).count() == 0
    db.refresh(message)
    assert message.status == MessageStatus.IGNORED.value


# =============================================================================
# Draft
# =============================================================================


@pytest.fixture
def routed(db, lead, make_message):
    message = make_message(lead, status=MessageStatus.ROUTE_RESOLVED.value, subject="Anfrage Musterstraße 5")
    db.add(RouteArtifact(message_id=message.id, lead_id=lead.id, prompt_version="rules-1", route="QNA", confidence=0.9))
    db.commit()
    return message


def test_reply_subject():
    assert reply_subject("Anfrage") == "Re: Anfrage"
    assert reply_subject("AW: Anfrage") == "AW: Anfrage"
    assert reply_subject("re: Anfrage") == "re: Anfrage"
    assert reply_subject(None) == "Re:"


def test_draft_stage_creates_qa_pending_draft(db, test_settings, fake_model, lead, routed):
    provider, client = fake_model("Guten Tag Herr Mieter,\n\ndie Wohnung ist noch verfügbar.")
    routed.approval_required = True
    db.commit()

    results = DraftStage(test_settings, client).run(db)

    assert results[0].outcome == MessageStatus.DRAFT_CREATED.value
    draft = db.query(Message).filter(Message.sender == Sender.AGENT.value).one()
    assert draft.status == MessageStatus.QA_PENDING.value
    assert draft.subject == "Re: Anfrage Musterstraße 5"
    assert draft.to_address == lead.email
    assert draft.from_address == routed.to_address
    assert draft.reply_to_message_id == routed.id
    assert draft.approval_required is True
    link = db.query(DraftLink).one()
    assert link.outcome == "created"
    assert link.draft_message_id == draft.id
    assert "Makler Immobilien" in provider.calls[0][-1].content


@pytest.mark.parametrize("text", ["{escalate}", "Bitte {escalate} an einen Menschen"])
def test_draft_escalation_goes_to_needs_human(db, test_settings, fake_model, routed, text):
    _, client = fake_model(text)

    DraftStage(test_settings, client).run(db)

    db.refresh(routed)
    assert routed.status == MessageStatus.NEEDS_HUMAN.value
    assert db.query(Message).filter(Message.sender == Sender.AGENT.value).count() == 0
    assert db.query(DraftLink).one().outcome == "escalated"


def test_empty_writer_output_is_a_failed_draft(db, test_settings, fake_model, routed):
    _, client = fake_model("   ")

    DraftStage(test_settings, client).run(db)

    db.refresh(routed)
    assert routed.status == MessageStatus.FAILED_DRAFT.value


def test_draft_failure_can_be_retried(db, test_settings, fake_model, routed):
    provider, client = fake_model(_connect_error(), "Guten Tag, gerne.")
    stage = DraftStage(test_settings, client)

    stage.run(db)
    db.refresh(routed)
    assert routed.status == MessageStatus.FAILED_DRAFT.value
    assert db.query(DraftLink).one().outcome == "failed"

    outbox_service.retry_draft(db, routed.id)
    stage.run(db)

    db.refresh(routed)
    assert routed.status == MessageStatus.DRAFT_CREATED.value
    assert db.query(DraftLink).one().outcome == "created"
    assert len(provider.calls) == 2


def test_draft_claim_held_elsewhere_is_skipped(db, test_settings, fake_model, routed):
    db.add(DraftLink(message_id=routed.id, prompt_version="builtin-1"))
    db.commit()
    provider, client = fake_model()

    results = DraftStage(test_settings, client).run(db)

    assert results[0].outcome == "skipped"
    assert provider.calls == []


# =============================================================================
# QA
# =============================================================================


@pytest.mark.parametrize(
    "verdict,autosend,approval,revision,expected",
    [
        (QaVerdict.PASS, True, False, 0, MessageStatus.READY_TO_SEND),
        (QaVerdict.PASS, False, False, 0, MessageStatus.NEEDS_APPROVAL),
        (QaVerdict.PASS, True, True, 0, MessageStatus.NEEDS_APPROVAL),
        (QaVerdict.WARN, True, False, 0, MessageStatus.REWRITE_PENDING),
        (QaVerdict.WARN, True, False, 1, MessageStatus.NEEDS_HUMAN),
        (QaVerdict.FAIL, True, False, 0, MessageStatus.NEEDS_HUMAN),
    ],
)
def test_route_after_qa(verdict, autosend, approval, revision, expected):
    assert (
        route_after_qa(verdict, autosend_enabled=autosend, approval_required=approval, revision=revision, max_rewrites=1)
        == expected
    )


@pytest.fixture
def pending_draft(lead, make_message, routed):
    routed.status = MessageStatus.DRAFT_CREATED.value
    return make_message(lead, sender=Sender.AGENT.value, reply_to_message_id=routed.id, text="Guten Tag, gerne.")


@pytest.mark.parametrize(
    "review,expected",
    [
        ({"verdict": "approved", "reason": "fine", "score": 0.9}, MessageStatus.READY_TO_SEND),
        ({"verdict": "WARN", "reason": "tone"}, MessageStatus.REWRITE_PENDING),
        ({"verdict": "reject", "reason": "wrong price"}, MessageStatus.NEEDS_HUMAN),
        ({"verdict": "maybe"}, MessageStatus.REWRITE_PENDING),
        ("not json", MessageStatus.REWRITE_PENDING),
    ],
)
def test_qa_stage_routes_verdicts(db, test_settings, fake_model, pending_draft, review, expected):
    _, client = fake_model(review)

    QaStage(test_settings, client).run(db)

    db.refresh(pending_draft)
    assert pending_draft.status == expected.value
    assert db.query(QaArtifact).one().prompt_version == "builtin-1-r0"


def test_qa_unavailable_records_warn(db, test_settings, fake_model, pending_draft):
    _, client = fake_model(_connect_error())

    QaStage(test_settings, client).run(db)

    artifact = db.query(QaArtifact).one()
    assert artifact.verdict == "warn"
    assert artifact.reason == "qa_unavailable:transport_error"


def test_qa_respects_inbound_approval_flag(db, test_settings, fake_model, routed, pending_draft):
    routed.approval_required = True
    db.commit()
    _, client = fake_model({"verdict": "pass"})

    QaStage(test_settings, client).run(db)

    db.refresh(pending_draft)
    assert pending_draft.status == MessageStatus.NEEDS_APPROVAL.value


def test_qa_existing_artifact_reuses_verdict(db, test_settings, fake_model, pending_draft):
    db.add(QaArtifact(message_id=pending_draft.id, prompt_version="builtin-1-r0", verdict="pass"))
    db.commit()
    provider, client = fake_model()

    results = QaStage(test_settings, client).run(db)

    assert results[0].outcome == "skipped"
    assert provider.calls == []
    db.refresh(pending_draft)
    assert pending_draft.status == MessageStatus.READY_TO_SEND.value


# =============================================================================
# Rewrite
# =============================================================================


def test_rewrite_produces_next_revision(db, test_settings, fake_model, pending_draft):
    pending_draft.status = MessageStatus.REWRITE_PENDING.value
    db.add(QaArtifact(message_id=pending_draft.id, prompt_version="builtin-1-r0", verdict="warn", reason="too short"))
    db.commit()
    provider, client = fake_model("Guten Tag Herr Mieter, gerne zeigen wir Ihnen die Wohnung.")

    results = RewriteStage(test_settings, client).run(db)

    assert results[0].detail == "r1"
    db.refresh(pending_draft)
    assert pending_draft.status == MessageStatus.QA_PENDING.value
    assert pending_draft.draft_revision == 1
    assert pending_draft.text.startswith("Guten Tag Herr Mieter")
    artifact = db.query(RewriteArtifact).one()
    assert artifact.previous_text == "Guten Tag, gerne."
    assert artifact.prompt_version == "builtin-1-r1"
    assert "too short" in provider.calls[0][-1].content


def test_rewrite_budget_exhausted_goes_to_needs_human(db, test_settings, fake_model, pending_draft):
    pending_draft.status = MessageStatus.REWRITE_PENDING.value
    pending_draft.draft_revision = 1
    db.commit()
    provider, client = fake_model()

    results = RewriteStage(test_settings, client).run(db)

    assert results[0].detail == "max_rewrites_reached"
    assert provider.calls == []
    db.refresh(pending_draft)
    assert pending_draft.status == MessageStatus.NEEDS_HUMAN.value


def test_rewrite_failure_goes_to_needs_human(db, test_settings, fake_model, pending_draft):
    pending_draft.status = MessageStatus.REWRITE_PENDING.value
    db.commit()
    _, client = fake_model(_connect_error())

    results = RewriteStage(test_settings, client).run(db)

    assert results[0].detail == "rewrite_unavailable:transport_error"
    db.refresh(pending_draft)
    assert pending_draft.status == MessageStatus.NEEDS_HUMAN.value
    assert pending_draft.text == "Guten Tag, gerne."


# =============================================================================
# End to end
# =============================================================================


def test_inquiry_flows_to_ready_to_send(db, test_settings, fake_model, connection, agent, listings):
    provider, client = fake_model(
        {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.99, "reason": "inquiry"},
        {"intent": "PROPERTY_SPECIFIC", "confidence": 0.95, "entities": {"address": "Musterstraße 5"}},
        "Guten Tag Frau Neumann,\n\ndie Wohnung in der Musterstraße 5 ist noch frei.",
        {"verdict": "pass", "reason": "accurate", "score": 0.95},
    )
    envelope = MailEnvelope(
        provider="gmail",
        provider_message_id="gm-42",
        provider_thread_id="thread-42",
        headers={
            "from": "Lena Neumann <lena@example.net>",
            "to": "makler@example.com",
            "subject": "Wohnung Musterstraße 5",
            "message-id": "<gm-42@example.net>",
        },
        body_text="Hallo, ist die Wohnung in der Musterstraße 5 noch frei?",
    )

    ingested = IngestionService(test_settings, SafetyClassifier(test_settings, client)).ingest(db, connection, envelope)
    for name in ("intent", "route", "draft", "qa"):
        build_stage(name, test_settings, client).run(db)

    inbound = db.get(Message, ingested.message_id)
    db.refresh(inbound)
    lead = db.get(Lead, inbound.lead_id)
    draft = db.query(Message).filter(Message.reply_to_message_id == inbound.id).one()
    assert inbound.status == MessageStatus.DRAFT_CREATED.value
    assert lead.active_property_id == listings[0].id
    assert draft.status == MessageStatus.READY_TO_SEND.value
    assert draft.to_address == "lena@example.net"
    assert "Musterstraße 5" in draft.text
    assert len(provider.calls) == 4
