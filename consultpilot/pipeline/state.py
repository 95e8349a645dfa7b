"""
Per-consultation state — one analyzer, context and outcome log per id.

Each consultation gets its own collector, completeness gate and completion
analyzer, built by a factory.  Nothing mutable is shared between
consultations.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from consultpilot.pipeline.agents.completion_analyzer import AgenticDiagnosticService
from consultpilot.pipeline.events import ConsultationMessage, ReportGenerationContext

logger = logging.getLogger("pipeline.state")

AnalyzerFactory = Callable[[str], AgenticDiagnosticService]

MAX_OUTCOMES = 200


class ConsultationState:
    def __init__(
        self,
        consultation_id: str,
        analyzer: AgenticDiagnosticService,
        context: ReportGenerationContext | None = None,
    ) -> None:
        self.consultation_id = consultation_id
        self.analyzer = analyzer
        self.context = context or ReportGenerationContext(
            consultation_id=consultation_id, user_id=""
        )
        self.outcomes: list[Any] = []
        # Quick responses awaiting the patient's confirmation, oldest first
        self.pending_confirmations: list[ConsultationMessage] = []
        self.created_at = datetime.now(timezone.utc)

    @property
    def pending_confirmation(self) -> ConsultationMessage | None:
        return self.pending_confirmations[0] if self.pending_confirmations else None

    def take_pending(self, message_id: str | None = None) -> ConsultationMessage | None:
        """Remove and return the named held message, or the oldest one."""
        for index, message in enumerate(self.pending_confirmations):
            if message_id is None or message.message_id == message_id:
                return self.pending_confirmations.pop(index)
        return None

    @property
    def started(self) -> bool:
        return self.analyzer.collector.get_timing_data().conversation_start_time is not None

    def record_outcome(self, outcome: Any) -> None:
        self.outcomes.append(outcome)
        if len(self.outcomes) > MAX_OUTCOMES:
            del self.outcomes[: len(self.outcomes) - MAX_OUTCOMES]


def _default_factory(consultation_id: str) -> AgenticDiagnosticService:
    return AgenticDiagnosticService()


class ConsultationStateRegistry:
    """
    Keyed store of ConsultationState.

    Usage:
        registry = ConsultationStateRegistry(factory=lambda cid: AgenticDiagnosticService(llm_client=client))
        state = registry.get_or_create("c-123")
    """

    def __init__(self, factory: AnalyzerFactory | None = None) -> None:
        self._factory = factory or _default_factory
        self._states: dict[str, ConsultationState] = {}

    def get_or_create(self, consultation_id: str) -> ConsultationState:
        state = self._states.get(consultation_id)
        if state is None:
            state = ConsultationState(consultation_id, self._factory(consultation_id))
            self._states[consultation_id] = state
            logger.debug("Created state for consultation %s", consultation_id)
        return state

    def get(self, consultation_id: str) -> ConsultationState | None:
        return self._states.get(consultation_id)

    def reset(self, consultation_id: str) -> bool:
        """Clear extracted data and timers, keeping the consultation context."""
        state = self._states.get(consultation_id)
        if state is None:
            return False
        state.analyzer.reset()
        state.context.messages.clear()
        state.outcomes.clear()
        state.pending_confirmations.clear()
        logger.info("Reset state for consultation %s", consultation_id)
        return True

    def remove(self, consultation_id: str) -> bool:
        return self._states.pop(consultation_id, None) is not None

    def active_ids(self) -> list[str]:
        return list(self._states.keys())

    def __contains__(self, consultation_id: str) -> bool:
        return consultation_id in self._states

    def __len__(self) -> int:
        return len(self._states)
