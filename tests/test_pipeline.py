"""
End-to-end tests for the consultation pipeline:
  - Headache conversation → gate fires → report filed
  - Quick-response confirmation (accept / decline)
  - Window expiry
  - Provider replies: referral metadata and completion marker
  - Message bookkeeping
"""

import json

import pytest

from conftest import (
    T0,
    FakeClock,
    FakeMonotonic,
    completion_verdict,
    make_llm_client,
    minutes,
)

from consultpilot.pipeline.agents.completion_analyzer import (
    CONSULTATION_COMPLETE_MARKER,
    GENERATING_REPORT_NOTIFICATION,
    AgenticDiagnosticService,
)
from consultpilot.pipeline.agents.report_generator import DiagnosticReportGenerator
from consultpilot.pipeline.collector import QUICK_RESPONSE, ConversationDataCollector
from consultpilot.pipeline.completeness import DiagnosticCompletenessDetector
from consultpilot.pipeline.events import (
    ConsultationMessage,
    ReportGenerationContext,
    SenderRole,
)
from consultpilot.pipeline.locks import InMemoryGenerationLock
from consultpilot.pipeline.orchestrator import AutomaticDiagnosticReportService
from consultpilot.pipeline.pipeline import ConsultationPipeline, PipelineAction
from consultpilot.pipeline.referral import ReferralDetector, format_referral_marker
from consultpilot.pipeline.state import ConsultationStateRegistry
from consultpilot.pipeline.stores import (
    InMemoryConsultationStore,
    InMemoryReportStore,
    InMemorySpecialistDirectory,
    SpecialistRecord,
)


# ── Test Helpers ──


DIAGNOSTIC_JSON = json.dumps({
    "urgencyLevel": "medium",
    "analysis": "Likely tension-type headache.",
    "possibleConditions": ["Tension headache", "Migraine"],
    "recommendations": ["Hydration", "Regular sleep"],
    "redFlags": "Sudden severe headache or vision loss",
})


def build_pipeline(verdict=None):
    clock = FakeClock(T0 + minutes(10))
    monotonic = FakeMonotonic()
    analyzer_client = make_llm_client(text=verdict or completion_verdict())

    def factory(consultation_id):
        collector = ConversationDataCollector(clock=clock)
        return AgenticDiagnosticService(
            collector,
            DiagnosticCompletenessDetector(collector, monotonic=monotonic),
            llm_client=analyzer_client,
            max_retries=0,
            clock=clock,
            monotonic=monotonic,
        )

    registry = ConsultationStateRegistry(factory=factory)
    report_store = InMemoryReportStore()
    consultation_store = InMemoryConsultationStore()
    directory = InMemorySpecialistDirectory([
        SpecialistRecord(id="ai-cardiology", name="Dr. Sarah Chen", specialty="Cardiology"),
        SpecialistRecord(id="ai-psychiatry", name="Dr. Robert Kim", specialty="Psychiatry"),
    ])
    orchestrator = AutomaticDiagnosticReportService(
        registry,
        DiagnosticReportGenerator(llm_client=make_llm_client(text=DIAGNOSTIC_JSON), max_retries=0),
        report_store,
        consultation_store,
        InMemoryGenerationLock(),
    )
    pipeline = ConsultationPipeline(
        registry, orchestrator, ReferralDetector(directory), consultation_store,
    )
    return pipeline, report_store, consultation_store


async def start(pipeline, consultation_id="c1", **overrides):
    fields = {
        "consultation_id": consultation_id,
        "user_id": "u1",
        "provider_id": "ai-general",
        "provider_name": "Dr. David Johnson",
        "provider_specialty": "Internal Medicine",
        "reason_for_visit": "Headache",
        "patient_age": 41,
        "patient_gender": "male",
    }
    fields.update(overrides)
    return await pipeline.start_consultation(ReportGenerationContext(**fields), start_time=T0)


def patient(text, at, cid="c1"):
    return ConsultationMessage.patient(cid, text, timestamp=at)


def provider(text, at, cid="c1"):
    return ConsultationMessage.provider(cid, text, timestamp=at)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Headache scenario
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestReportScenario:

    @pytest.mark.asyncio
    async def test_headache_conversation_files_report(self):
        pipeline, reports, consultations = build_pipeline()
        await start(pipeline)

        first = await pipeline.process_message(patient("I have a bad headache", T0))
        assert first.action == PipelineAction.COLLECTING
        assert first.gate.reason == "Insufficient conversation data"

        await pipeline.process_message(provider("How long has it lasted?", T0 + minutes(1)))
        outcome = await pipeline.process_message(patient("about a week", T0 + minutes(8)))

        assert outcome.gate.should_trigger is True
        assert outcome.action == PipelineAction.REPORT_GENERATED
        assert outcome.user_notification == GENERATING_REPORT_NOTIFICATION
        assert outcome.report.diagnostic_response.analysis == "Likely tension-type headache."

        report = await reports.get_report(outcome.report.report_id)
        assert report.symptoms == ["a bad headache"]
        assert report.urgency_level == 2
        assert report.follow_up_required is True
        assert report.doctor_recommended is False

        record = await consultations.get_consultation("c1")
        assert record.status == "completed"
        assert record.report_id == outcome.report.report_id
        assert record.total_messages == 3

    @pytest.mark.asyncio
    async def test_gate_fires_but_model_disagrees(self):
        pipeline, reports, _ = build_pipeline(
            completion_verdict(isComplete=False, confidence=0.4,
                               recommendedAction="ask_clarifying_questions")
        )
        await start(pipeline)
        await pipeline.process_message(patient("I have a bad headache", T0))
        await pipeline.process_message(provider("How long has it lasted?", T0 + minutes(1)))
        outcome = await pipeline.process_message(patient("about a week", T0 + minutes(8)))

        assert outcome.gate.should_trigger is True
        assert outcome.action == PipelineAction.COLLECTING
        assert outcome.report.success is False
        assert outcome.user_notification == ""
        assert reports.count == 0

    @pytest.mark.asyncio
    async def test_guidance_while_collecting(self):
        pipeline, _, _ = build_pipeline()
        await start(pipeline)
        await pipeline.process_message(patient("hello there", T0))
        await pipeline.process_message(provider("Hi! What brings you in?", T0 + minutes(1)))
        outcome = await pipeline.process_message(patient("just checking in", T0 + minutes(8)))

        assert outcome.action == PipelineAction.COLLECTING
        assert "description of your symptoms" in outcome.guidance


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Timing guards
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTiming:

    @pytest.mark.asyncio
    async def test_quick_response_needs_confirmation(self):
        pipeline, _, _ = build_pipeline()
        state = await start(pipeline)
        await pipeline.process_message(patient("I have a bad headache", T0))

        outcome = await pipeline.process_message(patient("also nausea", T0 + minutes(2)))

        assert outcome.action == PipelineAction.CONFIRMATION_REQUIRED
        assert outcome.process_result.reason == QUICK_RESPONSE
        assert state.pending_confirmation.content == "also nausea"
        assert state.analyzer.get_diagnostic_data().symptoms == ["a bad headache"]

    @pytest.mark.asyncio
    async def test_confirmed_quick_response_is_extracted(self):
        pipeline, _, _ = build_pipeline()
        state = await start(pipeline)
        await pipeline.process_message(patient("I have a bad headache", T0))
        await pipeline.process_message(patient("also nausea", T0 + minutes(2)))

        outcome = await pipeline.confirm_message("c1", accepted=True)

        assert outcome.action == PipelineAction.COLLECTING
        assert state.analyzer.get_diagnostic_data().symptoms == ["a bad headache", "also nausea"]
        assert state.analyzer.collector.requires_confirmation() is False
        assert state.pending_confirmation is None

    @pytest.mark.asyncio
    async def test_declined_quick_response_is_dropped(self):
        pipeline, _, _ = build_pipeline()
        state = await start(pipeline)
        await pipeline.process_message(patient("I have a bad headache", T0))
        await pipeline.process_message(patient("also nausea", T0 + minutes(2)))

        outcome = await pipeline.confirm_message("c1", accepted=False)

        assert outcome.action == PipelineAction.CONFIRMATION_DECLINED
        assert state.analyzer.get_diagnostic_data().symptoms == ["a bad headache"]
        assert state.analyzer.collector.requires_confirmation() is False

    @pytest.mark.asyncio
    async def test_consecutive_quick_responses_confirmed_in_order(self):
        pipeline, _, _ = build_pipeline()
        state = await start(pipeline)
        await pipeline.process_message(patient("hello there", T0))
        first = patient("it has lasted about a week", T0 + minutes(1))
        second = patient("I also feel dizzy", T0 + minutes(2))
        for message in (first, second):
            outcome = await pipeline.process_message(message)
            assert outcome.action == PipelineAction.CONFIRMATION_REQUIRED

        assert [m.message_id for m in state.pending_confirmations] == [
            first.message_id, second.message_id,
        ]

        confirmed_first = await pipeline.confirm_message("c1")
        assert confirmed_first.message_id == first.message_id
        assert state.analyzer.collector.requires_confirmation() is True

        confirmed_second = await pipeline.confirm_message("c1")
        assert confirmed_second.message_id == second.message_id
        assert state.analyzer.collector.requires_confirmation() is False

        data = state.analyzer.get_diagnostic_data()
        assert data.duration == "1-week"
        assert data.symptoms == ["also feel dizzy"]
        assert state.pending_confirmations == []

    @pytest.mark.asyncio
    async def test_confirm_names_the_held_message(self):
        pipeline, _, _ = build_pipeline()
        state = await start(pipeline)
        await pipeline.process_message(patient("hello there", T0))
        first = patient("it has lasted about a week", T0 + minutes(1))
        second = patient("I also feel dizzy", T0 + minutes(2))
        await pipeline.process_message(first)
        await pipeline.process_message(second)

        declined = await pipeline.confirm_message("c1", accepted=False, message_id=second.message_id)

        assert declined.action == PipelineAction.CONFIRMATION_DECLINED
        assert declined.message_id == second.message_id
        assert state.pending_confirmation is first
        assert state.analyzer.collector.requires_confirmation() is True

        unknown = await pipeline.confirm_message("c1", message_id="no-such-message")
        assert unknown.action == PipelineAction.IGNORED
        assert state.pending_confirmation is first

    @pytest.mark.asyncio
    async def test_confirm_without_pending(self):
        pipeline, _, _ = build_pipeline()
        await start(pipeline)
        outcome = await pipeline.confirm_message("c1")
        assert outcome.action == PipelineAction.IGNORED
        assert (await pipeline.confirm_message("unknown")).action == PipelineAction.IGNORED

    @pytest.mark.asyncio
    async def test_window_expired(self):
        pipeline, _, _ = build_pipeline()
        state = await start(pipeline)

        outcome = await pipeline.process_message(patient("I have a fever", T0 + minutes(31)))

        assert outcome.action == PipelineAction.WINDOW_EXPIRED
        assert state.analyzer.get_diagnostic_data().symptoms == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Provider replies
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestProviderReplies:

    @pytest.mark.asyncio
    async def test_referral_metadata_attached(self):
        pipeline, _, _ = build_pipeline()
        await start(pipeline)
        await pipeline.process_message(patient("my chest hurts when I climb stairs", T0))

        reply = provider(
            f"Chest symptoms need a heart specialist. {format_referral_marker('Cardiology')}",
            T0 + minutes(1),
        )
        outcome = await pipeline.process_message(reply)

        assert outcome.referral.recommended_specialty == "Cardiology"
        assert outcome.referral.suggested_provider == "ai-cardiology"
        assert outcome.referral.original_provider == "ai-general"
        assert reply.metadata["referral"]["suggested_provider_name"] == "Dr. Sarah Chen"

    @pytest.mark.asyncio
    async def test_mental_health_referral_from_patient_text(self):
        pipeline, _, _ = build_pipeline()
        await start(pipeline)
        await pipeline.process_message(patient("my anxiety keeps me awake", T0))

        outcome = await pipeline.process_message(
            provider("That sounds hard. Tell me more.", T0 + minutes(1))
        )

        assert outcome.referral.recommended_specialty == "Psychiatry"
        assert outcome.referral.suggested_provider == "ai-psychiatry"

    @pytest.mark.asyncio
    async def test_plain_reply_has_no_referral(self):
        pipeline, _, _ = build_pipeline()
        await start(pipeline)
        reply = provider("Please drink plenty of water.", T0 + minutes(1))
        outcome = await pipeline.process_message(reply)
        assert outcome.referral is None
        assert reply.metadata == {}

    @pytest.mark.asyncio
    async def test_completion_marker_reported(self):
        pipeline, _, _ = build_pipeline()
        await start(pipeline)
        outcome = await pipeline.process_message(
            provider(f"Thanks for sharing. {CONSULTATION_COMPLETE_MARKER}", T0 + minutes(1))
        )
        assert outcome.explicit_completion is True


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Bookkeeping
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBookkeeping:

    @pytest.mark.asyncio
    async def test_start_records_consultation(self):
        pipeline, _, consultations = build_pipeline()
        state = await start(pipeline)

        record = await consultations.get_consultation("c1")
        assert record.provider_name == "Dr. David Johnson"
        assert record.status == "active"
        assert state.started is True
        assert state.analyzer.get_diagnostic_data().age == 41

    @pytest.mark.asyncio
    async def test_duplicate_message_ignored(self):
        pipeline, _, _ = build_pipeline()
        await start(pipeline)
        message = patient("I have a bad headache", T0)

        await pipeline.process_message(message)
        again = await pipeline.process_message(message)

        assert again.action == PipelineAction.IGNORED

    @pytest.mark.asyncio
    async def test_system_message_ignored(self):
        pipeline, _, _ = build_pipeline()
        await start(pipeline)
        outcome = await pipeline.process_message(ConsultationMessage(
            consultation_id="c1", sender_role=SenderRole.SYSTEM, content="Provider joined",
        ))
        assert outcome.action == PipelineAction.IGNORED

    @pytest.mark.asyncio
    async def test_outcomes_recorded(self):
        pipeline, _, _ = build_pipeline()
        state = await start(pipeline)
        await pipeline.process_message(patient("I have a bad headache", T0))
        await pipeline.process_message(provider("How long?", T0 + minutes(1)))
        assert [o.action for o in state.outcomes] == [
            PipelineAction.COLLECTING, PipelineAction.COLLECTING,
        ]

    @pytest.mark.asyncio
    async def test_unstarted_consultation_auto_initialises(self):
        pipeline, _, _ = build_pipeline()
        outcome = await pipeline.process_message(patient("I have a bad headache", T0, cid="c9"))
        assert outcome.action == PipelineAction.COLLECTING
        state = pipeline.registry.get("c9")
        assert state.analyzer.collector.get_timing_data().conversation_start_time == T0
