"""SQLAlchemy ORM models."""

from replyready.db.models.agents import Agent
from replyready.db.models.artifacts import (
    ClassificationArtifact,
    DraftLink,
    IntentArtifact,
    QaArtifact,
    RewriteArtifact,
    RouteArtifact,
)
from replyready.db.models.connections import Connection
from replyready.db.models.jobs import Job
from replyready.db.models.leads import Lead, Property
from replyready.db.models.messages import Message
from replyready.db.models.prompts import AiPrompt

__all__ = [
    "Agent",
    "AiPrompt",
    "ClassificationArtifact",
    "Connection",
    "DraftLink",
    "IntentArtifact",
    "Job",
    "Lead",
    "Message",
    "Property",
    "QaArtifact",
    "RewriteArtifact",
    "RouteArtifact",
]
