"""
Conversation Data Collector — incremental extraction of diagnostic signals.

One collector per consultation.  Each accepted patient message is run
through the extraction strategy and merged into ``DiagnosticData``:

  - symptoms are append-only phrases
  - duration / severity are first-match-wins and never overwritten
  - history / medications / allergies are deduplicated by exact text

Two timing guards sit in front of extraction:

  - 30-minute conversation window: once elapsed, the collector is inert
    for the rest of the consultation
  - 7-minute quick-response guard: a reply arriving sooner than that after
    the previous patient message is held back until the caller confirms it
    via ``process_confirmed_message``
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field

from consultpilot import settings
from consultpilot.pipeline.events import SenderRole, UploadedFile, as_utc, is_patient_role
from consultpilot.pipeline.keywords import (
    ExtractionStrategy,
    Fragments,
    KeywordExtractionStrategy,
)

logger = logging.getLogger("pipeline.collector")

WINDOW_EXPIRED = "window expired"
QUICK_RESPONSE = "quick response"

WINDOW_EXPIRED_DETAIL = (
    "Conversation has exceeded the 30-minute time limit. Diagnostic "
    "collection is disabled for older conversations."
)
QUICK_RESPONSE_DETAIL = (
    "Your response was very quick (under 7 minutes). Would you like to add "
    "this information to your diagnostic data?"
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class DiagnosticData(BaseModel):
    symptoms: list[str] = Field(default_factory=list)
    duration: Optional[str] = None
    severity: Optional[str] = None
    additional_info: Optional[str] = None
    medical_history: list[str] = Field(default_factory=list)
    current_medications: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    age: Optional[int] = None
    gender: Optional[str] = None


class TimingState(BaseModel):
    conversation_start_time: Optional[datetime] = None
    last_user_message_time: Optional[datetime] = None
    user_response_times: list[float] = Field(default_factory=list)  # milliseconds
    is_within_time_window: bool = True
    requires_confirmation: bool = False


class DataCompleteness(BaseModel):
    has_symptoms: bool = False
    has_duration: bool = False
    has_severity: bool = False
    has_additional_info: bool = False
    completeness_score: int = 0
    is_complete: bool = False
    missing_fields: list[str] = Field(default_factory=list)


class ProcessResult(BaseModel):
    """Outcome of offering one message to the collector."""

    should_confirm: bool = False
    reason: Optional[str] = None
    detail: Optional[str] = None


class FullDiagnosticRequest(BaseModel):
    """The shape handed to the diagnostic-generation collaborator."""

    symptoms: list[str] = Field(default_factory=list)
    duration: Optional[str] = None
    severity: Optional[str] = None
    additional_info: Optional[str] = None
    uploaded_files: list[UploadedFile] = Field(default_factory=list)


# Completeness weights (sum to 100)
SCORE_WEIGHTS: dict[str, int] = {
    "symptoms": 40,
    "duration": 25,
    "severity": 25,
    "additional_info": 10,
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Collector
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ConversationDataCollector:
    """
    Per-consultation extractor of structured diagnostic data.

    Usage:
        collector = ConversationDataCollector()
        collector.initialize(start_time)
        result = collector.process("I have a bad headache", "patient")
        if result.should_confirm:
            ...  # ask the patient, then
            collector.process_confirmed_message("I have a bad headache")
    """

    def __init__(
        self,
        strategy: ExtractionStrategy | None = None,
        *,
        window_seconds: int = settings.CONVERSATION_WINDOW_SECONDS,
        quick_response_seconds: int = settings.QUICK_RESPONSE_SECONDS,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._strategy = strategy or KeywordExtractionStrategy()
        self._window = timedelta(seconds=window_seconds)
        self._quick_response = timedelta(seconds=quick_response_seconds)
        self._clock = clock
        self._data = DiagnosticData()
        self._timing = TimingState()
        self._expired = False

    # ── Lifecycle ──

    def initialize(self, start_time: datetime | None = None) -> None:
        """Start a new consultation: fresh data, timing from ``start_time``."""
        self._data = DiagnosticData()
        self._timing = TimingState(
            conversation_start_time=as_utc(start_time or self._clock()),
        )
        self._expired = False

    def reset(self) -> None:
        """Clear all data and timing state."""
        self._data = DiagnosticData()
        self._timing = TimingState()
        self._expired = False

    def set_demographics(self, age: int | None = None, gender: str | None = None) -> None:
        if age is not None:
            self._data.age = age
        if gender:
            self._data.gender = gender

    # ── Processing ──

    def process(
        self,
        message: str,
        sender_role: str | SenderRole,
        message_time: datetime | None = None,
    ) -> ProcessResult:
        """Offer one message to the collector.  Non-patient messages are ignored."""
        if not is_patient_role(sender_role):
            return ProcessResult()

        now = as_utc(message_time or self._clock())
        if self._timing.conversation_start_time is None:
            self.initialize(now)

        if not self._check_window(now):
            return ProcessResult(
                should_confirm=False,
                reason=WINDOW_EXPIRED,
                detail=WINDOW_EXPIRED_DETAIL,
            )

        is_quick = self._record_response_time(now)
        self._timing.last_user_message_time = now

        if is_quick:
            self._timing.requires_confirmation = True
            logger.debug("Quick response held for confirmation: %r", message[:60])
            return ProcessResult(
                should_confirm=True,
                reason=QUICK_RESPONSE,
                detail=QUICK_RESPONSE_DETAIL,
            )

        self._extract(message)
        return ProcessResult(should_confirm=False)

    def process_confirmed_message(self, message: str, *, more_pending: bool = False) -> None:
        """
        Extract from a quick response the patient confirmed should count.
        ``more_pending`` keeps the flag raised while other held responses
        are still waiting.
        """
        self._extract(message)
        self._timing.requires_confirmation = more_pending

    def discard_pending_confirmation(self, *, more_pending: bool = False) -> None:
        """The patient declined; the quick response never reaches the data."""
        self._timing.requires_confirmation = more_pending

    def _check_window(self, now: datetime) -> bool:
        if self._expired:
            return False
        start = self._timing.conversation_start_time
        within = start is not None and now - start <= self._window
        self._timing.is_within_time_window = within
        if not within:
            self._expired = True
            logger.info("Conversation window elapsed — collector is now inert")
        return within

    def _record_response_time(self, now: datetime) -> bool:
        last = self._timing.last_user_message_time
        if last is None:
            return False
        latency = now - last
        self._timing.user_response_times.append(latency.total_seconds() * 1000)
        return latency < self._quick_response

    def _extract(self, message: str) -> None:
        fragments = self._strategy.extract(message)
        if fragments.is_empty:
            return
        self._merge(fragments, message)

    def _merge(self, fragments: Fragments, message: str) -> None:
        data = self._data

        for mention in fragments.symptoms:
            if any(mention.keyword in s for s in data.symptoms):
                continue
            data.symptoms.append(mention.phrase)

        if data.duration is None and fragments.duration:
            data.duration = fragments.duration
        if data.severity is None and fragments.severity:
            data.severity = fragments.severity

        lower = message.lower()
        if fragments.mentions_history and lower not in data.medical_history:
            data.medical_history.append(lower)
        if fragments.mentions_medication and lower not in data.current_medications:
            data.current_medications.append(lower)
        if fragments.mentions_allergy and lower not in data.allergies:
            data.allergies.append(lower)

        if fragments.has_medical_context:
            if data.additional_info:
                data.additional_info += " " + message
            else:
                data.additional_info = message

    # ── Read accessors ──

    def check_completeness(self) -> DataCompleteness:
        data = self._data
        has_symptoms = len(data.symptoms) > 0
        has_duration = bool(data.duration)
        has_severity = bool(data.severity)
        has_additional_info = bool(data.additional_info)

        missing: list[str] = []
        if not has_symptoms:
            missing.append("symptoms")
        if not has_duration:
            missing.append("duration")
        if not has_severity:
            missing.append("severity")

        score = 0
        if has_symptoms:
            score += SCORE_WEIGHTS["symptoms"]
        if has_duration:
            score += SCORE_WEIGHTS["duration"]
        if has_severity:
            score += SCORE_WEIGHTS["severity"]
        if has_additional_info:
            score += SCORE_WEIGHTS["additional_info"]

        return DataCompleteness(
            has_symptoms=has_symptoms,
            has_duration=has_duration,
            has_severity=has_severity,
            has_additional_info=has_additional_info,
            completeness_score=score,
            is_complete=has_symptoms and (has_duration or has_severity),
            missing_fields=missing,
        )

    def get_diagnostic_data(self) -> DiagnosticData:
        return self._data.model_copy(deep=True)

    def get_timing_data(self) -> TimingState:
        return self._timing.model_copy(deep=True)

    def to_full_diagnostic_request(self) -> FullDiagnosticRequest:
        return FullDiagnosticRequest(
            symptoms=list(self._data.symptoms),
            duration=self._data.duration,
            severity=self._data.severity,
            additional_info=self._data.additional_info,
        )

    def is_within_time_window(self) -> bool:
        start = self._timing.conversation_start_time
        if self._expired or start is None:
            return False
        return as_utc(self._clock()) - start <= self._window

    def requires_confirmation(self) -> bool:
        return self._timing.requires_confirmation

    def get_summary(self) -> str:
        """Short human-readable digest for confirmation prompts."""
        data = self._data
        lines = []
        if data.symptoms:
            lines.append(f"Symptoms: {', '.join(data.symptoms)}")
        if data.duration:
            lines.append(f"Duration: {data.duration}")
        if data.severity:
            lines.append(f"Severity: {data.severity}")
        if data.additional_info:
            lines.append(f"Additional Information: {data.additional_info}")
        if not lines:
            return "No diagnostic information collected yet."
        return "\n".join(lines) + "\n"
