"""
Consultation Pipeline — the entry point for one chat message.

    patient message  → collector (window / quick-response / extraction)
                     → completeness gate → report orchestrator
    provider reply   → referral detector (metadata on the message)
                     → completeness gate → report orchestrator

Messages for one consultation must arrive in order; run process_message
behind a ConsultationQueueManager so they do.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from consultpilot.pipeline.agents.completion_analyzer import AgenticDiagnosticService
from consultpilot.pipeline.collector import WINDOW_EXPIRED, ProcessResult
from consultpilot.pipeline.completeness import (
    DiagnosticCompletenessDetector,
    DiagnosticTriggerResult,
)
from consultpilot.pipeline.events import ConsultationMessage, ReportGenerationContext
from consultpilot.pipeline.orchestrator import (
    AutomaticDiagnosticReportService,
    AutomaticDiagnosticResult,
)
from consultpilot.pipeline.referral import ReferralDetector, ReferralMetadata
from consultpilot.pipeline.state import ConsultationState, ConsultationStateRegistry
from consultpilot.pipeline.stores import ConsultationRecord, ConsultationStore

logger = logging.getLogger("pipeline")


class PipelineAction(str, Enum):
    IGNORED = "ignored"
    WINDOW_EXPIRED = "window_expired"
    CONFIRMATION_REQUIRED = "confirmation_required"
    CONFIRMATION_DECLINED = "confirmation_declined"
    COLLECTING = "collecting"
    REPORT_GENERATED = "report_generated"


class PipelineOutcome(BaseModel):
    consultation_id: str
    message_id: Optional[str] = None
    action: PipelineAction
    process_result: Optional[ProcessResult] = None
    gate: Optional[DiagnosticTriggerResult] = None
    report: Optional[AutomaticDiagnosticResult] = None
    referral: Optional[ReferralMetadata] = None
    guidance: str = ""
    user_notification: str = ""
    explicit_completion: bool = False


class ConsultationPipeline:
    def __init__(
        self,
        state_registry: ConsultationStateRegistry,
        orchestrator: AutomaticDiagnosticReportService,
        referral_detector: ReferralDetector,
        consultation_store: ConsultationStore,
    ) -> None:
        self._registry = state_registry
        self._orchestrator = orchestrator
        self._referrals = referral_detector
        self._consultations = consultation_store

    @property
    def registry(self) -> ConsultationStateRegistry:
        return self._registry

    # ── Lifecycle ──

    async def start_consultation(
        self,
        context: ReportGenerationContext,
        start_time: datetime | None = None,
    ) -> ConsultationState:
        """Register context and start the collection window."""
        state = self._registry.get_or_create(context.consultation_id)
        state.context = context.model_copy(
            update={"messages": list(state.context.messages) + list(context.messages)}
        )
        collector = state.analyzer.collector
        collector.initialize(start_time)
        collector.set_demographics(context.patient_age, context.patient_gender)

        await self._consultations.save_consultation(ConsultationRecord(
            consultation_id=context.consultation_id,
            user_id=context.user_id,
            provider_id=context.provider_id,
            provider_name=context.provider_name,
            provider_specialty=context.provider_specialty,
            reason_for_visit=context.reason_for_visit,
            patient_age=context.patient_age,
            patient_gender=context.patient_gender,
            total_messages=len(state.context.messages),
        ))
        logger.info(
            "Consultation %s started with %s (%s)",
            context.consultation_id, context.provider_name or "unknown provider",
            context.provider_specialty or "no specialty",
        )
        return state

    # ── Messages ──

    async def process_message(self, message: ConsultationMessage) -> PipelineOutcome:
        state = self._registry.get_or_create(message.consultation_id)
        state.context.messages.append(message)
        await self._count_message(message.consultation_id)

        if message.is_patient:
            outcome = await self._handle_patient(state, message)
        elif message.is_provider:
            outcome = await self._handle_provider(state, message)
        else:
            outcome = PipelineOutcome(
                consultation_id=message.consultation_id,
                message_id=message.message_id,
                action=PipelineAction.IGNORED,
            )

        state.record_outcome(outcome)
        return outcome

    async def confirm_message(
        self,
        consultation_id: str,
        accepted: bool = True,
        message_id: str | None = None,
    ) -> PipelineOutcome:
        """
        Resolve a held quick response: extract it, or drop it.  Without a
        ``message_id`` the oldest held response is resolved.
        """
        state = self._registry.get(consultation_id)
        pending = state.take_pending(message_id) if state else None
        if pending is None:
            return PipelineOutcome(
                consultation_id=consultation_id,
                message_id=message_id,
                action=PipelineAction.IGNORED,
            )

        collector = state.analyzer.collector
        more_pending = bool(state.pending_confirmations)
        if not accepted:
            collector.discard_pending_confirmation(more_pending=more_pending)
            logger.info("Quick response %s declined for %s", pending.message_id, consultation_id)
            outcome = PipelineOutcome(
                consultation_id=consultation_id,
                message_id=pending.message_id,
                action=PipelineAction.CONFIRMATION_DECLINED,
            )
        else:
            collector.process_confirmed_message(pending.content, more_pending=more_pending)
            logger.info("Quick response %s confirmed for %s", pending.message_id, consultation_id)
            outcome = await self._check_gate(state, pending)

        state.record_outcome(outcome)
        return outcome

    async def _handle_patient(
        self, state: ConsultationState, message: ConsultationMessage
    ) -> PipelineOutcome:
        result = state.analyzer.ingest_message(message)
        if result is None:
            logger.debug("Message %s already ingested", message.message_id)
            return PipelineOutcome(
                consultation_id=state.consultation_id,
                message_id=message.message_id,
                action=PipelineAction.IGNORED,
            )

        if result.reason == WINDOW_EXPIRED:
            return PipelineOutcome(
                consultation_id=state.consultation_id,
                message_id=message.message_id,
                action=PipelineAction.WINDOW_EXPIRED,
                process_result=result,
            )

        if result.should_confirm:
            state.pending_confirmations.append(message)
            return PipelineOutcome(
                consultation_id=state.consultation_id,
                message_id=message.message_id,
                action=PipelineAction.CONFIRMATION_REQUIRED,
                process_result=result,
            )

        outcome = await self._check_gate(state, message)
        outcome.process_result = result
        return outcome

    async def _handle_provider(
        self, state: ConsultationState, message: ConsultationMessage
    ) -> PipelineOutcome:
        state.analyzer.ingest_message(message)

        referral = await self._referrals.detect(
            message.content,
            self._last_patient_text(state, before=message),
            current_specialty=state.context.provider_specialty,
            original_provider_id=state.context.provider_id,
        )
        message.metadata.update(referral.to_message_metadata())

        explicit = AgenticDiagnosticService.detect_explicit_completion(message.content)
        if explicit:
            logger.info("Provider signalled completion for %s", state.consultation_id)

        outcome = await self._check_gate(state, message)
        outcome.referral = referral if referral.referral_needed else None
        outcome.explicit_completion = explicit
        return outcome

    async def _check_gate(
        self, state: ConsultationState, message: ConsultationMessage
    ) -> PipelineOutcome:
        gate = state.analyzer.detector.should_trigger_diagnostic()
        outcome = PipelineOutcome(
            consultation_id=state.consultation_id,
            message_id=message.message_id,
            action=PipelineAction.COLLECTING,
            gate=gate,
            guidance=DiagnosticCompletenessDetector.get_collection_guidance(gate),
        )
        if not gate.should_trigger:
            return outcome

        report = await self._orchestrator.check_and_trigger_automatic_report(state.context)
        outcome.report = report
        outcome.user_notification = report.user_notification
        if report.success:
            outcome.action = PipelineAction.REPORT_GENERATED
            logger.info(
                "Report %s generated for %s in %dms",
                report.report_id, state.consultation_id, report.processing_time,
            )
        return outcome

    @staticmethod
    def _last_patient_text(state: ConsultationState, before: ConsultationMessage) -> str:
        for candidate in reversed(state.context.messages):
            if candidate is before:
                continue
            if candidate.is_patient:
                return candidate.content
        return ""

    async def _count_message(self, consultation_id: str) -> None:
        try:
            await self._consultations.increment_message_count(consultation_id)
        except Exception as exc:
            logger.warning("Could not update message count for %s: %s", consultation_id, exc)
