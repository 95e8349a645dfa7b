"""
Completion Analyzer — the agentic decision layer.

Judges whether a consultation has reached a natural, information-complete
conclusion.  Two tiers:

  1. Semantic: an LLM reads the recent conversation plus the completeness
     breakdown and returns a JSON verdict.
  2. Deterministic fallback: if the LLM call fails or returns nothing
     parseable, a conservative rule decides (>= 6 messages, >= 5 minutes,
     symptoms present).

A report is only triggered when the LLM verdict AND the completeness
gate's structural validation agree.  Keyword heuristics alone fire on the
first symptom mention; the model alone can call thin data "complete".
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from consultpilot import settings
from consultpilot.pipeline.agents.llm_utils import (
    create_default_client,
    extract_json_object,
    llm_generate,
)
from consultpilot.pipeline.collector import (
    ConversationDataCollector,
    DataCompleteness,
    DiagnosticData,
    FullDiagnosticRequest,
    ProcessResult,
)
from consultpilot.pipeline.completeness import DiagnosticCompletenessDetector
from consultpilot.pipeline.events import ConsultationContext, ConsultationMessage

logger = logging.getLogger("pipeline.agents.completion_analyzer")

# Provider-side marker asking the pipeline to wrap up the consultation
CONSULTATION_COMPLETE_MARKER = "[CONSULTATION_COMPLETE]"

EXPLICIT_COMPLETION_PHRASES = [
    "consultation is complete",
    "we have covered everything",
    "comprehensive assessment complete",
    "ready for diagnostic report",
    "sufficient information gathered",
    "consultation concluded",
]

RECENT_MESSAGE_COUNT = 10

# Rule fallback thresholds
FALLBACK_MIN_MESSAGES = 6
FALLBACK_MIN_DURATION_SECONDS = 5 * 60
FALLBACK_CONFIDENCE_COMPLETE = 0.6
FALLBACK_CONFIDENCE_INCOMPLETE = 0.3

GENERATING_REPORT_NOTIFICATION = (
    "Thank you for providing detailed information about your symptoms. "
    "Based on our conversation, I have gathered sufficient information to "
    "generate a comprehensive diagnostic report. Please wait while I analyze "
    "all the information you've shared and prepare your personalized health "
    "assessment. This may take a few moments..."
)

COMPLETION_ANALYSIS_PROMPT = """\
You are an expert medical consultation analyst. Analyze this telemedicine \
conversation to determine if it's complete and ready for diagnostic report \
generation.

CONSULTATION CONTEXT:
- Reason for visit: {reason_for_visit}
- AI Provider specialty: {specialty}
- Patient age: {age}
- Patient gender: {gender}
- Conversation duration: {duration_minutes} minutes
- Total messages: {total_messages}

CONVERSATION HISTORY (Last {recent_count} messages):
{history}

DIAGNOSTIC DATA COMPLETENESS:
- Has symptoms: {has_symptoms}
- Has duration: {has_duration}
- Has severity: {has_severity}
- Has additional info: {has_additional_info}
- Completeness score: {score}%

ANALYSIS CRITERIA:
A consultation is considered COMPLETE when:
1. Patient has described their main symptoms clearly
2. AI provider has gathered sufficient medical history
3. Duration and severity of symptoms are established
4. Patient's questions have been adequately addressed
5. AI provider has provided initial assessment/guidance
6. No urgent follow-up questions are pending
7. Natural conversation conclusion indicators are present

COMPLETION INDICATORS TO LOOK FOR:
- Patient expressing satisfaction with information received
- AI provider summarizing findings/recommendations
- Patient saying "thank you" or indicating they're done
- AI provider asking if there are any other questions
- Natural conversation wind-down patterns
- Patient confirming understanding of next steps

Analyze this conversation and respond with ONLY this JSON format:
{{
  "isComplete": boolean,
  "confidence": number (0-1),
  "reasoning": "Brief explanation of why conversation is/isn't complete",
  "completionIndicators": ["list of indicators found"],
  "missingElements": ["list of missing elements if incomplete"],
  "recommendedAction": "continue_conversation|generate_report|ask_clarifying_questions"
}}

Be conservative - only mark as complete if you're confident the consultation \
has reached a natural conclusion with sufficient medical information gathered.\
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CompletionAction(str, Enum):
    CONTINUE_CONVERSATION = "continue_conversation"
    GENERATE_REPORT = "generate_report"
    ASK_CLARIFYING_QUESTIONS = "ask_clarifying_questions"


class DiagnosticReadiness(BaseModel):
    has_symptoms: bool = False
    has_duration: bool = False
    has_severity: bool = False
    has_context: bool = False
    completeness_score: int = 0

    @classmethod
    def from_completeness(cls, completeness: DataCompleteness) -> DiagnosticReadiness:
        return cls(
            has_symptoms=completeness.has_symptoms,
            has_duration=completeness.has_duration,
            has_severity=completeness.has_severity,
            has_context=completeness.has_additional_info,
            completeness_score=completeness.completeness_score,
        )


class ConversationCompletionAnalysis(BaseModel):
    is_complete: bool = False
    confidence: float = 0.0
    reasoning: str = ""
    completion_indicators: list[str] = Field(default_factory=list)
    missing_elements: list[str] = Field(default_factory=list)
    recommended_action: CompletionAction = CompletionAction.CONTINUE_CONVERSATION
    diagnostic_readiness: DiagnosticReadiness = Field(default_factory=DiagnosticReadiness)
    method: str = "llm_assessment"  # or "rule_fallback"
    explicit_completion_marker: bool = False


class AgenticDiagnosticTrigger(BaseModel):
    should_trigger: bool = False
    trigger_reason: str = ""
    user_notification: str = ""
    diagnostic_data: FullDiagnosticRequest = Field(default_factory=FullDiagnosticRequest)
    confidence: float = 0.0
    analysis: Optional[ConversationCompletionAnalysis] = None


class AgenticDiagnosticService:
    """
    Hybrid (LLM + rule) completion analyzer for one consultation.

    Owns the consultation's collector and completeness gate.  Messages are
    ingested exactly once each (tracked by message_id), so re-analysing the
    visible window is idempotent.
    """

    def __init__(
        self,
        collector: ConversationDataCollector | None = None,
        detector: DiagnosticCompletenessDetector | None = None,
        llm_client: Any = None,
        *,
        model: str = settings.COMPLETION_MODEL,
        max_retries: int = settings.LLM_MAX_RETRIES,
        analysis_interval_seconds: float = settings.ANALYSIS_INTERVAL_SECONDS,
        trigger_confidence: float = settings.TRIGGER_CONFIDENCE,
        clock: Callable[[], datetime] = _now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._collector = collector or ConversationDataCollector(clock=clock)
        self._detector = detector or DiagnosticCompletenessDetector(self._collector)
        self._client = llm_client
        self._model_name = model
        self._max_retries = max_retries
        self._interval = analysis_interval_seconds
        self._trigger_confidence = trigger_confidence
        self._clock = clock
        self._monotonic = monotonic
        self._last_analysis: float | None = None
        self._ingested: set[str] = set()

    @property
    def client(self):
        if self._client is None:
            self._client = create_default_client()
        return self._client

    @property
    def collector(self) -> ConversationDataCollector:
        return self._collector

    @property
    def detector(self) -> DiagnosticCompletenessDetector:
        return self._detector

    # ── Ingestion ──

    def ingest_message(self, message: ConsultationMessage) -> ProcessResult | None:
        """
        Feed one message to the collector and gate.

        Returns None if the message was already ingested.  Provider replies
        count towards the gate's message volume but are not extracted.
        """
        if message.message_id in self._ingested:
            return None
        self._ingested.add(message.message_id)
        self._detector.record_message()
        return self._collector.process(
            message.content, message.sender_role, message.timestamp
        )

    def ingest_messages(self, messages: list[ConsultationMessage]) -> None:
        for message in messages:
            self.ingest_message(message)

    # ── Analysis ──

    async def analyze_conversation_completion(
        self,
        messages: list[ConsultationMessage],
        context: ConsultationContext,
    ) -> ConversationCompletionAnalysis:
        """Judge completion with the LLM; fall back to rules on any failure."""
        try:
            self.ingest_messages(messages)
            self._collector.set_demographics(context.patient_age, context.patient_gender)
            completeness = self._collector.check_completeness()
            explicit = any(
                self.detect_explicit_completion(m.content)
                for m in messages if m.is_provider
            )

            if self.client is None:
                logger.info("No LLM client — using rule-based completion analysis")
                return self._fallback_analysis(messages, explicit)

            prompt = self._build_prompt(messages, context, completeness)

            t_start = time.monotonic()
            raw = await llm_generate(
                self.client, self._model_name, prompt, max_retries=self._max_retries,
            )
            logger.info("  [timing] Completion analysis: %.2fs", time.monotonic() - t_start)

            parsed = extract_json_object(raw)
            if parsed is None:
                logger.warning("Completion analysis unparseable — using rule fallback")
                return self._fallback_analysis(messages, explicit)

            return self._analysis_from_llm(parsed, completeness, explicit)

        except Exception as exc:
            logger.error("Completion analysis failed: %s — using rule fallback", exc)
            return self._fallback_analysis(messages, False)

    async def should_trigger_automatic_diagnostic(
        self,
        messages: list[ConsultationMessage],
        context: ConsultationContext,
    ) -> AgenticDiagnosticTrigger:
        """Rate-limited: both the LLM verdict and structural validation must agree."""
        now = self._monotonic()
        if self._last_analysis is not None and now - self._last_analysis < self._interval:
            return AgenticDiagnosticTrigger(
                should_trigger=False,
                trigger_reason="Analysis interval not met",
            )
        self._last_analysis = now

        analysis = await self.analyze_conversation_completion(messages, context)

        if (
            analysis.is_complete
            and analysis.recommended_action == CompletionAction.GENERATE_REPORT
            and analysis.confidence >= self._trigger_confidence
        ):
            validation = self._detector.validate_for_diagnostic_request()
            if validation.is_valid:
                logger.info(
                    "Automatic diagnostic triggered (confidence=%.2f, method=%s)",
                    analysis.confidence, analysis.method,
                )
                return AgenticDiagnosticTrigger(
                    should_trigger=True,
                    trigger_reason=analysis.reasoning,
                    user_notification=GENERATING_REPORT_NOTIFICATION,
                    diagnostic_data=self._collector.to_full_diagnostic_request(),
                    confidence=analysis.confidence,
                    analysis=analysis,
                )
            logger.info("Completion verdict positive but data invalid: %s", validation.errors)

        return AgenticDiagnosticTrigger(
            should_trigger=False,
            trigger_reason="Conversation not complete or data insufficient",
            confidence=analysis.confidence,
            analysis=analysis,
        )

    # ── Prompt & parsing ──

    def _build_prompt(
        self,
        messages: list[ConsultationMessage],
        context: ConsultationContext,
        completeness: DataCompleteness,
    ) -> str:
        history = "\n".join(
            f"{'AI Provider' if m.is_provider else 'Patient'}: {m.content}"
            for m in messages[-RECENT_MESSAGE_COUNT:]
        )
        return COMPLETION_ANALYSIS_PROMPT.format(
            reason_for_visit=context.reason_for_visit or "Not specified",
            specialty=context.provider_specialty or "Not specified",
            age=context.patient_age or "Not specified",
            gender=context.patient_gender or "Not specified",
            duration_minutes=round(self._elapsed_seconds(messages) / 60),
            total_messages=len(messages),
            recent_count=RECENT_MESSAGE_COUNT,
            history=history,
            has_symptoms=completeness.has_symptoms,
            has_duration=completeness.has_duration,
            has_severity=completeness.has_severity,
            has_additional_info=completeness.has_additional_info,
            score=completeness.completeness_score,
        )

    def _analysis_from_llm(
        self,
        parsed: dict[str, Any],
        completeness: DataCompleteness,
        explicit: bool,
    ) -> ConversationCompletionAnalysis:
        indicators = _as_str_list(parsed.get("completionIndicators"))
        if explicit:
            indicators.append("Explicit consultation-complete marker from provider")

        return ConversationCompletionAnalysis(
            is_complete=_as_bool(parsed.get("isComplete")),
            confidence=_as_confidence(parsed.get("confidence")),
            reasoning=str(parsed.get("reasoning") or "AI analysis completed"),
            completion_indicators=indicators,
            missing_elements=_as_str_list(parsed.get("missingElements")),
            recommended_action=_as_action(parsed.get("recommendedAction")),
            diagnostic_readiness=DiagnosticReadiness.from_completeness(completeness),
            method="llm_assessment",
            explicit_completion_marker=explicit,
        )

    def _fallback_analysis(
        self, messages: list[ConsultationMessage], explicit: bool
    ) -> ConversationCompletionAnalysis:
        completeness = self._collector.check_completeness()

        has_minimum_messages = len(messages) >= FALLBACK_MIN_MESSAGES
        has_minimum_duration = self._elapsed_seconds(messages) >= FALLBACK_MIN_DURATION_SECONDS
        is_complete = has_minimum_messages and has_minimum_duration and completeness.has_symptoms

        indicators = ["Minimum message count", "Basic symptoms described"] if is_complete else []
        if explicit:
            indicators.append("Explicit consultation-complete marker from provider")

        return ConversationCompletionAnalysis(
            is_complete=is_complete,
            confidence=(
                FALLBACK_CONFIDENCE_COMPLETE if is_complete else FALLBACK_CONFIDENCE_INCOMPLETE
            ),
            reasoning=(
                "Basic consultation criteria met through rule-based analysis"
                if is_complete
                else "Insufficient conversation data for completion"
            ),
            completion_indicators=indicators,
            missing_elements=[] if is_complete else ["More conversation needed"],
            recommended_action=(
                CompletionAction.GENERATE_REPORT
                if is_complete
                else CompletionAction.CONTINUE_CONVERSATION
            ),
            diagnostic_readiness=DiagnosticReadiness.from_completeness(completeness),
            method="rule_fallback",
            explicit_completion_marker=explicit,
        )

    def _elapsed_seconds(self, messages: list[ConsultationMessage]) -> float:
        start = self._collector.get_timing_data().conversation_start_time
        if start is None and messages:
            start = messages[0].timestamp
        if start is None:
            return 0.0
        return max((self._clock() - start).total_seconds(), 0.0)

    @staticmethod
    def detect_explicit_completion(text: str) -> bool:
        """True if a provider reply carries the completion marker or phrase."""
        if not text:
            return False
        if CONSULTATION_COMPLETE_MARKER in text:
            return True
        lower = text.lower()
        return any(phrase in lower for phrase in EXPLICIT_COMPLETION_PHRASES)

    # ── Accessors ──

    def get_diagnostic_data(self) -> DiagnosticData:
        return self._collector.get_diagnostic_data()

    def get_conversation_summary(self) -> str:
        return self._collector.get_summary()

    def reset(self) -> None:
        """Clear collector, gate and analyzer timers for a new consultation."""
        self._collector.reset()
        self._detector.reset()
        self._last_analysis = None
        self._ingested.clear()


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _as_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(confidence, 0.0), 1.0)


def _as_action(value: Any) -> CompletionAction:
    try:
        return CompletionAction(str(value))
    except ValueError:
        return CompletionAction.CONTINUE_CONVERSATION


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]
