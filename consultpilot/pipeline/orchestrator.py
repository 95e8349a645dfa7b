"""
Automatic Diagnostic Report Service — the report orchestrator.

Per consultation, at most one generation runs at a time:

  1. take the generation lock (held elsewhere → "already in progress")
  2. ask the completion analyzer whether to trigger
  3. enrich the collected data with consultation context, a conversation
     summary and provider insights
  4. generate the diagnostic, file the report, update the consultation
  5. release the lock, whatever happened

No exception escapes check_and_trigger_automatic_report(): failures come
back as an AutomaticDiagnosticResult carrying a patient-safe notification.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Optional

from pydantic import BaseModel

from consultpilot.pipeline.agents.completion_analyzer import (
    AgenticDiagnosticService,
    AgenticDiagnosticTrigger,
)
from consultpilot.pipeline.agents.report_generator import (
    DiagnosticReportGenerator,
    FullDiagnosticResponse,
    UrgencyLevel,
)
from consultpilot.pipeline.collector import FullDiagnosticRequest
from consultpilot.pipeline.events import ConsultationMessage, ReportGenerationContext
from consultpilot.pipeline.locks import GenerationLock
from consultpilot.pipeline.state import ConsultationStateRegistry
from consultpilot.pipeline.stores import (
    ConsultationStore,
    GeneratedReport,
    ProviderInfo,
    ReportAnalysis,
    ReportPersistenceError,
    ReportStore,
)

logger = logging.getLogger("pipeline.orchestrator")

ALREADY_IN_PROGRESS_ERROR = "Report generation already in progress"
ALREADY_IN_PROGRESS_NOTIFICATION = (
    "A diagnostic report is already being generated for this consultation."
)
GENERATION_FAILED_NOTIFICATION = (
    "I apologize, but there was an error generating your diagnostic report. "
    "Please try again."
)

URGENCY_SCORES = {
    UrgencyLevel.LOW: 1,
    UrgencyLevel.MEDIUM: 2,
    UrgencyLevel.HIGH: 3,
    UrgencyLevel.EMERGENCY: 4,
}

SUMMARY_SEVERITY_WORDS = ["mild", "moderate", "severe", "intense", "unbearable"]
SUMMARY_DURATION_PATTERN = re.compile(r"(\d+)\s*(day|week|month|year)s?", re.IGNORECASE)

DEFAULT_CONVERSATION_SUMMARY = (
    "Patient provided detailed symptom information during consultation"
)
DEFAULT_PROVIDER_INSIGHTS = "AI provider conducted comprehensive consultation"


class AutomaticDiagnosticResult(BaseModel):
    success: bool
    report_id: Optional[str] = None
    diagnostic_response: Optional[FullDiagnosticResponse] = None
    error: Optional[str] = None
    user_notification: str = ""
    processing_time: int = 0  # milliseconds


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Enrichment
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def extract_conversation_summary(messages: list[ConsultationMessage]) -> str:
    """Key points pattern-matched from the patient's side of the chat."""
    patient_text = " ".join(m.content for m in messages if m.is_patient)
    lower = patient_text.lower()

    key_points = []
    if "pain" in lower:
        key_points.append("Patient reported pain symptoms")

    duration = SUMMARY_DURATION_PATTERN.search(patient_text)
    if duration:
        key_points.append(f"Symptoms duration: {duration.group(0)}")

    severity = next((w for w in SUMMARY_SEVERITY_WORDS if w in lower), None)
    if severity:
        key_points.append(f"Severity described as: {severity}")

    return "; ".join(key_points) if key_points else DEFAULT_CONVERSATION_SUMMARY


def extract_provider_insights(messages: list[ConsultationMessage]) -> str:
    """What the provider did, pattern-matched from its replies."""
    lower = " ".join(m.content for m in messages if m.is_provider).lower()

    insights = []
    if "assess" in lower:
        insights.append("AI provider conducted symptom assessment")
    if "recommend" in lower:
        insights.append("AI provider provided recommendations")
    if "follow" in lower:
        insights.append("AI provider suggested follow-up care")

    return "; ".join(insights) if insights else DEFAULT_PROVIDER_INSIGHTS


def enhance_diagnostic_request(
    request: FullDiagnosticRequest,
    context: ReportGenerationContext,
) -> FullDiagnosticRequest:
    sections = [
        request.additional_info or "",
        "\n\nCONSULTATION CONTEXT:",
        f"- Consultation with {context.provider_name} ({context.provider_specialty})",
        f"- Reason for visit: {context.reason_for_visit}",
        f"- Patient age: {context.patient_age or 'Not specified'}",
        f"- Patient gender: {context.patient_gender or 'Not specified'}",
        "\nCONVERSATION SUMMARY:",
        extract_conversation_summary(context.messages),
        "\nAI PROVIDER INSIGHTS:",
        extract_provider_insights(context.messages),
    ]
    return request.model_copy(update={
        "additional_info": "\n".join(s for s in sections if s),
        "uploaded_files": list(context.uploaded_files) or list(request.uploaded_files),
    })


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Orchestrator
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AutomaticDiagnosticReportService:
    """
    Usage:
        service = AutomaticDiagnosticReportService(
            registry, DiagnosticReportGenerator(), report_store,
            consultation_store, InMemoryGenerationLock(),
        )
        result = await service.check_and_trigger_automatic_report(context)
    """

    def __init__(
        self,
        state_registry: ConsultationStateRegistry,
        report_generator: DiagnosticReportGenerator,
        report_store: ReportStore,
        consultation_store: ConsultationStore,
        lock: GenerationLock,
    ) -> None:
        self._registry = state_registry
        self._generator = report_generator
        self._report_store = report_store
        self._consultation_store = consultation_store
        self._lock = lock

    async def check_and_trigger_automatic_report(
        self, context: ReportGenerationContext
    ) -> AutomaticDiagnosticResult:
        t_start = time.monotonic()
        cid = context.consultation_id

        try:
            acquired = await self._lock.try_acquire(cid)
        except Exception as exc:
            logger.error("Could not take generation lock for %s: %s", cid, exc, exc_info=True)
            return self._failure(str(exc), GENERATION_FAILED_NOTIFICATION, t_start)

        if not acquired:
            logger.info("Report generation already in progress for %s", cid)
            return self._failure(
                ALREADY_IN_PROGRESS_ERROR, ALREADY_IN_PROGRESS_NOTIFICATION, t_start
            )

        try:
            analyzer = self._registry.get_or_create(cid).analyzer
            trigger = await analyzer.should_trigger_automatic_diagnostic(
                context.messages, context.to_consultation_context(),
            )
            if not trigger.should_trigger:
                return self._failure(trigger.trigger_reason, "", t_start)

            logger.info("Generating automatic diagnostic report for %s", cid)
            report_id, response = await self._generate_report(context, analyzer, trigger)

            return AutomaticDiagnosticResult(
                success=True,
                report_id=report_id,
                diagnostic_response=response,
                user_notification=trigger.user_notification,
                processing_time=_elapsed_ms(t_start),
            )
        except Exception as exc:
            logger.error(
                "Automatic diagnostic report failed for %s: %s", cid, exc, exc_info=True,
            )
            return self._failure(str(exc), GENERATION_FAILED_NOTIFICATION, t_start)
        finally:
            await self._release(cid)

    async def _generate_report(
        self,
        context: ReportGenerationContext,
        analyzer: AgenticDiagnosticService,
        trigger: AgenticDiagnosticTrigger,
    ) -> tuple[str, FullDiagnosticResponse]:
        request = enhance_diagnostic_request(trigger.diagnostic_data, context)

        t_gen = time.monotonic()
        response = await self._generator.generate(request)
        logger.info("  [timing] Report generation for %s: %.2fs",
                    context.consultation_id, time.monotonic() - t_gen)

        report = self.build_report(context, response, trigger.confidence, analyzer)
        try:
            report_id = await self._report_store.save_report(report)
        except ReportPersistenceError:
            raise
        except Exception as exc:
            raise ReportPersistenceError("Failed to save diagnostic report") from exc

        await self._update_consultation(context.consultation_id, report_id, response)
        return report_id, response

    @staticmethod
    def build_report(
        context: ReportGenerationContext,
        response: FullDiagnosticResponse,
        confidence: float,
        analyzer: AgenticDiagnosticService,
    ) -> GeneratedReport:
        urgency = URGENCY_SCORES.get(response.urgency_level, 1)
        if urgency == 1:
            risk_level = "low"
        elif urgency == 2:
            risk_level = "medium"
        else:
            risk_level = "high"

        return GeneratedReport(
            user_id=context.user_id,
            consultation_id=context.consultation_id,
            title=f"Diagnostic Report - {context.reason_for_visit}",
            symptoms=analyzer.get_diagnostic_data().symptoms,
            ai_analysis=ReportAnalysis(
                analysis=response.analysis,
                possible_conditions=response.possible_conditions,
                recommendations=response.recommendations,
                confidence=confidence,
                ai_provider=ProviderInfo(
                    id=context.provider_id,
                    name=context.provider_name,
                    specialty=context.provider_specialty,
                ),
                conversation_summary=analyzer.get_conversation_summary(),
            ),
            risk_level=risk_level,
            urgency_level=urgency,
            confidence=confidence,
            recommendations=response.recommendations,
            red_flags=response.red_flags,
            follow_up_required=urgency >= 2,
            doctor_recommended=urgency >= 3,
        )

    async def _update_consultation(
        self, consultation_id: str, report_id: str, response: FullDiagnosticResponse,
    ) -> None:
        # The report is already filed; an update failure must not undo that
        try:
            await self._consultation_store.update_consultation(
                consultation_id,
                status="completed",
                ai_assessment=response.analysis,
                report_id=report_id,
            )
        except Exception as exc:
            logger.error(
                "Report %s filed but consultation %s update failed: %s",
                report_id, consultation_id, exc,
            )

    async def _release(self, consultation_id: str) -> None:
        try:
            await self._lock.release(consultation_id)
        except Exception as exc:
            logger.error("Failed to release generation lock for %s: %s", consultation_id, exc)

    @staticmethod
    def _failure(error: str, notification: str, t_start: float) -> AutomaticDiagnosticResult:
        return AutomaticDiagnosticResult(
            success=False,
            error=error,
            user_notification=notification,
            processing_time=_elapsed_ms(t_start),
        )


def _elapsed_ms(t_start: float) -> int:
    return int((time.monotonic() - t_start) * 1000)
