"""
Diagnostic Completeness Detector — the deterministic gate.

Wraps a ConversationDataCollector and answers "is it worth generating a
report yet?" from structure alone.  Two independent rate limits keep a
tightly-polling caller from doing redundant work:

  - cooldown: at most one due check per 30 seconds
  - volume:   at least 3 new messages since the last due check

Decision ladder on a due check:
  1. minimum data AND high-quality data AND confidence >= 0.8 → trigger
  2. minimum data AND confidence >= 0.6                      → trigger
  3. completeness score >= 70                                 → almost there
  4. otherwise                                                → collect more
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable

from pydantic import BaseModel, Field

from consultpilot import settings
from consultpilot.pipeline.collector import (
    ConversationDataCollector,
    DataCompleteness,
    DiagnosticData,
)

logger = logging.getLogger("pipeline.completeness")

MISSING_SYMPTOMS = "symptoms description"
MISSING_DURATION_OR_SEVERITY = "duration or severity information"


class RecommendedAction(str, Enum):
    COLLECT_MORE = "collect_more"
    CONFIRM_GENERATION = "confirm_generation"
    GENERATE_NOW = "generate_now"


class DiagnosticTriggerResult(BaseModel):
    should_trigger: bool
    completeness: DataCompleteness
    summary: str = ""
    confidence: float = 0.0
    recommended_action: RecommendedAction = RecommendedAction.COLLECT_MORE
    missing_critical_fields: list[str] = Field(default_factory=list)
    reason: str = ""


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class DiagnosticCompletenessDetector:
    """Rate-limited completeness scoring over a collector's state."""

    HIGH_CONFIDENCE = 0.8
    MIN_CONFIDENCE = 0.6
    ALMOST_THERE_SCORE = 70
    MIN_SYMPTOM_TEXT_LENGTH = 10

    def __init__(
        self,
        collector: ConversationDataCollector,
        *,
        cooldown_seconds: float = settings.GATE_COOLDOWN_SECONDS,
        min_messages: int = settings.GATE_MIN_MESSAGES,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._collector = collector
        self._cooldown = cooldown_seconds
        self._min_messages = min_messages
        self._monotonic = monotonic
        self._last_check: float | None = None
        self._messages_since_check = 0

    @property
    def collector(self) -> ConversationDataCollector:
        return self._collector

    @property
    def messages_since_check(self) -> int:
        return self._messages_since_check

    def record_message(self) -> None:
        """Count one new conversation message towards the next due check."""
        self._messages_since_check += 1

    def reset(self) -> None:
        self._last_check = None
        self._messages_since_check = 0

    # ── Trigger decision ──

    def should_trigger_diagnostic(self) -> DiagnosticTriggerResult:
        now = self._monotonic()

        if self._last_check is not None and now - self._last_check < self._cooldown:
            return self._negative_result("Cooldown period active")

        if self._messages_since_check < self._min_messages:
            return self._negative_result("Insufficient conversation data")

        completeness = self._collector.check_completeness()
        data = self._collector.get_diagnostic_data()
        confidence = self.calculate_confidence(completeness, data)

        has_minimum = self._has_minimum_required_data(completeness)
        has_quality = self._has_high_quality_data(data)

        should_trigger = False
        action = RecommendedAction.COLLECT_MORE
        if has_minimum and has_quality and confidence >= self.HIGH_CONFIDENCE:
            should_trigger = True
            action = RecommendedAction.CONFIRM_GENERATION
        elif has_minimum and confidence >= self.MIN_CONFIDENCE:
            should_trigger = True
            action = RecommendedAction.CONFIRM_GENERATION
        elif completeness.completeness_score >= self.ALMOST_THERE_SCORE:
            action = RecommendedAction.CONFIRM_GENERATION

        self._last_check = now
        self._messages_since_check = 0

        logger.info(
            "Completeness check: score=%d confidence=%.2f trigger=%s action=%s",
            completeness.completeness_score, confidence, should_trigger, action.value,
        )

        return DiagnosticTriggerResult(
            should_trigger=should_trigger,
            completeness=completeness,
            summary=self._collector.get_summary(),
            confidence=confidence,
            recommended_action=action,
            missing_critical_fields=self._missing_critical_fields(completeness),
            reason="Completeness check performed",
        )

    @staticmethod
    def calculate_confidence(completeness: DataCompleteness, data: DiagnosticData) -> float:
        confidence = completeness.completeness_score * 0.6 / 100

        avg_symptom_length = sum(len(s) for s in data.symptoms) / max(len(data.symptoms), 1)
        if avg_symptom_length > 15:
            confidence += 0.2
        if avg_symptom_length > 30:
            confidence += 0.1

        if data.additional_info and len(data.additional_info) > 50:
            confidence += 0.1

        if data.duration:
            confidence += 0.05
        if data.severity:
            confidence += 0.05

        return min(confidence, 1.0)

    @staticmethod
    def _has_minimum_required_data(completeness: DataCompleteness) -> bool:
        if not completeness.has_symptoms:
            return False
        return completeness.has_duration or completeness.has_severity

    @staticmethod
    def _has_high_quality_data(data: DiagnosticData) -> bool:
        detailed_symptoms = any(len(s.split()) >= 2 for s in data.symptoms)
        has_context = bool(data.additional_info) and len(data.additional_info) > 20
        return detailed_symptoms or has_context

    @staticmethod
    def _missing_critical_fields(completeness: DataCompleteness) -> list[str]:
        missing = []
        if not completeness.has_symptoms:
            missing.append(MISSING_SYMPTOMS)
        if not completeness.has_duration and not completeness.has_severity:
            missing.append(MISSING_DURATION_OR_SEVERITY)
        return missing

    def _negative_result(self, reason: str) -> DiagnosticTriggerResult:
        completeness = self._collector.check_completeness()
        return DiagnosticTriggerResult(
            should_trigger=False,
            completeness=completeness,
            summary=self._collector.get_summary(),
            confidence=0.0,
            recommended_action=RecommendedAction.COLLECT_MORE,
            missing_critical_fields=self._missing_critical_fields(completeness),
            reason=reason,
        )

    # ── Guidance & validation ──

    @staticmethod
    def get_collection_guidance(result: DiagnosticTriggerResult) -> str:
        """User-facing prompt naming what is still missing."""
        missing = result.missing_critical_fields
        if not missing:
            return "We have enough information to generate your diagnostic report."

        needs = []
        if MISSING_SYMPTOMS in missing:
            needs.append("a detailed description of your symptoms")
        if MISSING_DURATION_OR_SEVERITY in missing:
            needs.append(
                "information about how long you've been experiencing these "
                "symptoms or how severe they are"
            )
        return (
            "To generate a comprehensive diagnostic report, I still need: "
            + ", ".join(needs)
            + "."
        )

    def validate_for_diagnostic_request(self) -> ValidationResult:
        """Final structural sanity gate before data goes downstream."""
        data = self._collector.get_diagnostic_data()
        errors = []

        if not data.symptoms:
            errors.append("Symptoms are required")
        if any(not s.strip() for s in data.symptoms):
            errors.append("Symptoms cannot be empty")
        if len(" ".join(data.symptoms)) < self.MIN_SYMPTOM_TEXT_LENGTH:
            errors.append("Symptom descriptions need more detail")

        return ValidationResult(is_valid=not errors, errors=errors)
