"""Stage registry and the one-pass pipeline run."""

from __future__ import annotations

from sqlalchemy.orm import Session

from replyready.core.config import Settings
from replyready.services.classifier_client import ClassifierClient
from replyready.services.pipeline.draft_stage import DraftStage
from replyready.services.pipeline.intent_stage import IntentStage
from replyready.services.pipeline.qa_stage import QaStage
from replyready.services.pipeline.rewrite_stage import RewriteStage
from replyready.services.pipeline.route_stage import RouteStage
from replyready.services.pipeline.runner import StageResult, StageRunner
from replyready.services.pipeline.send_stage import SendStage

STAGES: dict[str, type[StageRunner]] = {
    "intent": IntentStage,
    "route": RouteStage,
    "draft": DraftStage,
    "qa": QaStage,
    "rewrite": RewriteStage,
    "send": SendStage,
}

# QA runs again after rewrite so a rewritten draft is reviewed in the same pass
PIPELINE_ORDER = ("intent", "route", "draft", "qa", "rewrite", "qa", "send")


def build_stage(name: str, settings: Settings, client: ClassifierClient | None = None) -> StageRunner:
    try:
        stage_cls = STAGES[name]
    except KeyError:
        raise ValueError(f"Unknown stage: {name}") from None
    return stage_cls(settings, client)


def run_stage(db: Session, name: str, settings: Settings) -> list[StageResult]:
    return build_stage(name, settings).run(db)


def run_pipeline(
    db: Session, settings: Settings, client: ClassifierClient | None = None
) -> dict[str, list[StageResult]]:
    """One pass of every stage, in pipeline order."""
    client = client or ClassifierClient(settings)
    runners = {name: build_stage(name, settings, client) for name in STAGES}
    results: dict[str, list[StageResult]] = {}
    for name in PIPELINE_ORDER:
        results.setdefault(name, []).extend(runners[name].run(db))
    return results
