"""Active prompt lookup: ai_prompts table first, built-in registry second."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from replyready.db.models import AiPrompt
from replyready.services.ai_prompt_registry import PromptTemplate, get_prompt

logger = logging.getLogger(__name__)


def get_active_prompt(db: Session, key: str) -> PromptTemplate:
    """
    Prompt used by a stage. The highest active version in ai_prompts wins;
    its version tag (`v<n>`) becomes the artifact version.
    """
    fallback = get_prompt(key)
    row = (
        db.query(AiPrompt)
        .filter(AiPrompt.key == key, AiPrompt.is_active.is_(True))
        .order_by(AiPrompt.version.desc())
        .first()
    )
    if row is None:
        return fallback

    system = (row.system_prompt or "").strip()
    user = (row.user_prompt or "").strip()
    if not system or not user:
        logger.warning(f"Active prompt {key} v{row.version} is incomplete; using built-in")
        return fallback

    return PromptTemplate(
        key=key,
        version=f"v{row.version}",
        system=system,
        user=user,
        temperature=row.temperature if row.temperature is not None else fallback.temperature,
        max_tokens=row.max_tokens or fallback.max_tokens,
    )


def upsert_prompt(
    db: Session,
    *,
    key: str,
    system_prompt: str,
    user_prompt: str,
    temperature: float | None = None,
    max_tokens: int | None = None,
    activate: bool = True,
) -> AiPrompt:
    """Store a new prompt version; activating it deactivates older versions."""
    get_prompt(key)  # Unknown keys are rejected
    latest = db.query(AiPrompt).filter(AiPrompt.key == key).order_by(AiPrompt.version.desc()).first()
    version = (latest.version + 1) if latest else 1
    if activate:
        db.query(AiPrompt).filter(AiPrompt.key == key, AiPrompt.is_active.is_(True)).update(
            {AiPrompt.is_active: False}, synchronize_session=False
        )
    row = AiPrompt(
        key=key,
        version=version,
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        temperature=temperature,
        max_tokens=max_tokens,
        is_active=activate,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
