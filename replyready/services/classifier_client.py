"""One model contract, several call sites.

Every model call goes through `ClassifierClient`: request
`{system_prompt, user_prompt, temperature, max_tokens}` in, strict JSON (or
plain text for the writer) out. The safety gate and the QA reviewer differ
only in how the JSON is decoded (decision-based vs verdict-based).

Failures raise ClassifierError; callers choose their own fail-closed outcome.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

import httpx

from replyready.core.async_utils import run_async
from replyready.core.config import Settings
from replyready.core.exceptions import ClassifierError
from replyready.db.enums import Decision, EmailType, QaVerdict
from replyready.services.ai_prompt_schemas import QaReviewOutput, SafetyClassifierOutput
from replyready.services.ai_provider import AIProvider, ChatMessage, get_provider
from replyready.services.ai_response_validation import parse_json_object, validate_model

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}

_VERDICT_ALIASES = {
    "pass": QaVerdict.PASS,
    "ok": QaVerdict.PASS,
    "approved": QaVerdict.PASS,
    "warn": QaVerdict.WARN,
    "needs_review": QaVerdict.WARN,
    "fail": QaVerdict.FAIL,
    "reject": QaVerdict.FAIL,
    "block": QaVerdict.FAIL,
}


def clamp01(value: object) -> float:
    """Clamp to [0, 1]; values in (1, 100] are read as percentages."""
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    if 1.0 < number <= 100.0:
        number = number / 100.0
    return max(0.0, min(1.0, number))


@dataclass(frozen=True)
class ClassifierRequest:
    system_prompt: str
    user_prompt: str
    temperature: float = 0.0
    max_tokens: int = 400


@dataclass(frozen=True)
class SafetyVerdict:
    decision: Decision | None
    email_type: EmailType
    confidence: float
    reason: str
    model: str | None = None


@dataclass(frozen=True)
class QaReview:
    verdict: QaVerdict
    reason: str
    score: float | None
    model: str | None = None


@dataclass(frozen=True)
class Completion:
    content: str
    model: str | None


class ClassifierClient:
    """Bounded-retry model client with explicit per-call timeouts."""

    def __init__(
        self,
        settings: Settings,
        *,
        provider: AIProvider | None = None,
        retry_backoff: float = 0.5,
    ):
        self.settings = settings
        self._provider = provider
        self.retry_backoff = retry_backoff

    @property
    def provider(self) -> AIProvider | None:
        if self._provider is None:
            try:
                self._provider = get_provider(self.settings)
            except ValueError as exc:
                raise ClassifierError("not_configured", str(exc))
        return self._provider

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def complete(self, request: ClassifierRequest, *, timeout: float, json_mode: bool) -> Completion:
        provider = self.provider
        if provider is None:
            raise ClassifierError("not_configured")

        messages = [
            ChatMessage(role="system", content=request.system_prompt),
            ChatMessage(role="user", content=request.user_prompt),
        ]
        attempts = max(1, self.settings.CLASSIFIER_MAX_RETRIES + 1)
        attempt = 0

        while True:
            attempt += 1
            try:
                response = run_async(
                    provider.chat(
                        messages,
                        temperature=request.temperature,
                        max_tokens=request.max_tokens,
                        json_mode=json_mode,
                    ),
                    timeout=timeout,
                )
            except TimeoutError:
                last_error = ClassifierError("timeout")
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                last_error = ClassifierError(f"http_{status}")
                if status not in _RETRYABLE_STATUS:
                    raise last_error
            except httpx.HTTPError as exc:
                last_error = ClassifierError("transport_error", type(exc).__name__)
            except (KeyError, IndexError, ValueError) as exc:
                raise ClassifierError("invalid_response", type(exc).__name__)
            else:
                content = (response.content or "").strip()
                if not content:
                    raise ClassifierError("empty_output")
                return Completion(content=content, model=response.model)

            logger.warning(f"Model call failed (attempt {attempt}/{attempts}): {last_error.reason}")
            if attempt >= attempts:
                raise last_error
            if self.retry_backoff:
                time.sleep(self.retry_backoff * attempt)

    def complete_json(self, request: ClassifierRequest, *, timeout: float) -> tuple[dict, str | None]:
        completion = self.complete(request, timeout=timeout, json_mode=True)
        data = parse_json_object(completion.content)
        if data is None:
            raise ClassifierError("invalid_json")
        return data, completion.model

    # ------------------------------------------------------------------
    # Decoders
    # ------------------------------------------------------------------

    def classify_safety(self, request: ClassifierRequest) -> SafetyVerdict:
        """Decision-based decoding; the raw model decision (gate applied by caller)."""
        data, model = self.complete_json(request, timeout=self.settings.CLASSIFIER_TIMEOUT_SECONDS)
        output = validate_model(SafetyClassifierOutput, data)
        if output is None:
            raise ClassifierError("schema_invalid")
        return SafetyVerdict(
            decision=Decision(output.decision) if output.decision else None,
            email_type=EmailType(output.email_type),
            confidence=clamp01(output.confidence),
            reason=(output.reason or "n/a")[:120],
            model=model,
        )

    def review_qa(self, request: ClassifierRequest) -> QaReview:
        """Verdict-based decoding with alias normalisation."""
        data, model = self.complete_json(request, timeout=self.settings.QA_TIMEOUT_SECONDS)
        output = validate_model(QaReviewOutput, data)
        if output is None:
            raise ClassifierError("schema_invalid")
        verdict = _VERDICT_ALIASES.get(output.verdict.strip().lower())
        if verdict is None:
            raise ClassifierError("schema_invalid", f"unknown verdict {output.verdict[:20]!r}")
        return QaReview(
            verdict=verdict,
            reason=(output.reason or "")[:500],
            score=clamp01(output.score) if output.score is not None else None,
            model=model,
        )

    def write_text(self, request: ClassifierRequest) -> Completion:
        """Free-text completion for the draft writer and rewriter."""
        return self.complete(request, timeout=self.settings.WRITER_TIMEOUT_SECONDS, json_mode=False)
