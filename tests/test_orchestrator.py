"""
Tests for the automatic report orchestrator:
  - Happy path: report filed, consultation completed, lock released
  - At most one generation per consultation
  - Every failure becomes a result, never an exception
  - Report field mapping and request enrichment
"""

import asyncio

import pytest

from conftest import (
    T0,
    FakeClock,
    FakeMonotonic,
    completion_verdict,
    headache_conversation,
    make_llm_client,
    minutes,
)

from consultpilot.pipeline.agents.completion_analyzer import (
    GENERATING_REPORT_NOTIFICATION,
    AgenticDiagnosticService,
)
from consultpilot.pipeline.agents.report_generator import (
    FullDiagnosticResponse,
    ReportGenerationError,
    UrgencyLevel,
)
from consultpilot.pipeline.collector import FullDiagnosticRequest
from consultpilot.pipeline.events import (
    ConsultationMessage,
    ReportGenerationContext,
    UploadedFile,
)
from consultpilot.pipeline.locks import InMemoryGenerationLock
from consultpilot.pipeline.orchestrator import (
    ALREADY_IN_PROGRESS_ERROR,
    ALREADY_IN_PROGRESS_NOTIFICATION,
    DEFAULT_CONVERSATION_SUMMARY,
    DEFAULT_PROVIDER_INSIGHTS,
    GENERATION_FAILED_NOTIFICATION,
    AutomaticDiagnosticReportService,
    enhance_diagnostic_request,
    extract_conversation_summary,
    extract_provider_insights,
)
from consultpilot.pipeline.state import ConsultationStateRegistry
from consultpilot.pipeline.stores import (
    ConsultationRecord,
    InMemoryConsultationStore,
    InMemoryReportStore,
)


# ── Test Helpers ──


class FakeGenerator:
    """Diagnostic generator returning a canned response, optionally slowly."""

    def __init__(self, urgency=UrgencyLevel.HIGH, delay=0.0, error=None):
        self.urgency = urgency
        self.delay = delay
        self.error = error
        self.requests: list[FullDiagnosticRequest] = []

    async def generate(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return FullDiagnosticResponse(
            urgency_level=self.urgency,
            analysis="Presentation consistent with migraine.",
            possible_conditions=["Migraine"],
            recommendations=["Neurology review"],
            red_flags="Sudden worst-ever headache",
        )


class FailingReportStore(InMemoryReportStore):
    async def save_report(self, report):
        raise RuntimeError("bucket unavailable")


class ExplodingLock(InMemoryGenerationLock):
    async def try_acquire(self, consultation_id):
        raise ConnectionError("lock backend down")


class StickyLock(InMemoryGenerationLock):
    async def release(self, consultation_id):
        raise ConnectionError("release failed")


def make_context(**overrides) -> ReportGenerationContext:
    fields = {
        "consultation_id": "c1",
        "user_id": "u1",
        "provider_id": "p1",
        "provider_name": "Dr. Sarah Chen",
        "provider_specialty": "General Medicine",
        "reason_for_visit": "Headache",
        "patient_age": 34,
        "patient_gender": "female",
        "messages": headache_conversation(),
    }
    fields.update(overrides)
    return ReportGenerationContext(**fields)


def make_orchestrator(
    verdict=None,
    *,
    generator=None,
    report_store=None,
    consultation_store=None,
    lock=None,
):
    client = make_llm_client(text=verdict or completion_verdict())
    registry = ConsultationStateRegistry(
        factory=lambda cid: AgenticDiagnosticService(
            llm_client=client,
            max_retries=0,
            clock=FakeClock(T0 + minutes(18)),
            monotonic=FakeMonotonic(),
        )
    )
    parts = {
        "registry": registry,
        "generator": generator or FakeGenerator(),
        "report_store": report_store or InMemoryReportStore(),
        "consultation_store": consultation_store or InMemoryConsultationStore(),
        "lock": lock or InMemoryGenerationLock(),
    }
    service = AutomaticDiagnosticReportService(
        parts["registry"], parts["generator"], parts["report_store"],
        parts["consultation_store"], parts["lock"],
    )
    return service, parts


async def seeded_consultation_store() -> InMemoryConsultationStore:
    store = InMemoryConsultationStore()
    await store.save_consultation(ConsultationRecord(consultation_id="c1", user_id="u1"))
    return store


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Happy path
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestGenerateReport:

    @pytest.mark.asyncio
    async def test_files_report_and_completes_consultation(self):
        consultations = await seeded_consultation_store()
        service, parts = make_orchestrator(consultation_store=consultations)

        result = await service.check_and_trigger_automatic_report(make_context())

        assert result.success is True
        assert result.report_id
        assert result.user_notification == GENERATING_REPORT_NOTIFICATION
        assert result.diagnostic_response.analysis == "Presentation consistent with migraine."
        assert result.processing_time >= 0

        report = await parts["report_store"].get_report(result.report_id)
        assert report.title == "Diagnostic Report - Headache"
        assert report.symptoms == ["a bad headache"]
        assert report.confidence == 0.9
        assert report.ai_analysis.ai_provider.name == "Dr. Sarah Chen"
        assert report.ai_analysis.generated_by == "automatic_agentic_system"
        assert "Symptoms: a bad headache" in report.ai_analysis.conversation_summary

        record = await consultations.get_consultation("c1")
        assert record.status == "completed"
        assert record.report_id == result.report_id
        assert record.ai_assessment == "Presentation consistent with migraine."

        assert await parts["lock"].is_locked("c1") is False

    @pytest.mark.asyncio
    async def test_generator_receives_enriched_request(self):
        upload = UploadedFile(name="notes.txt", content="Seen by GP last month")
        service, parts = make_orchestrator()

        await service.check_and_trigger_automatic_report(make_context(uploaded_files=[upload]))

        request = parts["generator"].requests[0]
        assert request.symptoms == ["a bad headache"]
        assert "CONSULTATION CONTEXT:" in request.additional_info
        assert request.uploaded_files == [upload]

    @pytest.mark.asyncio
    async def test_consultation_update_failure_keeps_report(self):
        # Nothing seeded, so the consultation update raises
        service, parts = make_orchestrator()
        result = await service.check_and_trigger_automatic_report(make_context())
        assert result.success is True
        assert parts["report_store"].count == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Concurrency
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSingleGeneration:

    @pytest.mark.asyncio
    async def test_concurrent_calls_generate_once(self):
        service, parts = make_orchestrator(generator=FakeGenerator(delay=0.05))

        first, second = await asyncio.gather(
            service.check_and_trigger_automatic_report(make_context()),
            service.check_and_trigger_automatic_report(make_context()),
        )

        assert first.success is True
        assert second.success is False
        assert second.error == ALREADY_IN_PROGRESS_ERROR
        assert second.user_notification == ALREADY_IN_PROGRESS_NOTIFICATION
        assert len(parts["generator"].requests) == 1
        assert parts["report_store"].count == 1

    @pytest.mark.asyncio
    async def test_later_call_hits_analysis_interval(self):
        service, parts = make_orchestrator()
        await service.check_and_trigger_automatic_report(make_context())

        again = await service.check_and_trigger_automatic_report(make_context())

        assert again.success is False
        assert again.error == "Analysis interval not met"
        assert again.user_notification == ""
        assert await parts["lock"].is_locked("c1") is False

    @pytest.mark.asyncio
    async def test_other_consultations_not_blocked(self):
        service, parts = make_orchestrator(generator=FakeGenerator(delay=0.05))

        results = await asyncio.gather(
            service.check_and_trigger_automatic_report(make_context()),
            service.check_and_trigger_automatic_report(
                make_context(consultation_id="c2", messages=headache_conversation("c2"))
            ),
        )

        assert all(r.success for r in results)
        assert parts["report_store"].count == 2


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Failures
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFailures:

    @pytest.mark.asyncio
    async def test_not_triggered_is_quiet(self):
        service, parts = make_orchestrator(
            completion_verdict(isComplete=False, confidence=0.3,
                               recommendedAction="continue_conversation")
        )
        result = await service.check_and_trigger_automatic_report(make_context())

        assert result.success is False
        assert result.error == "Conversation not complete or data insufficient"
        assert result.user_notification == ""
        assert parts["generator"].requests == []

    @pytest.mark.asyncio
    async def test_generation_error_returns_apology(self):
        service, parts = make_orchestrator(
            generator=FakeGenerator(error=ReportGenerationError("model down"))
        )
        result = await service.check_and_trigger_automatic_report(make_context())

        assert result.success is False
        assert result.error == "model down"
        assert result.user_notification == GENERATION_FAILED_NOTIFICATION
        assert await parts["lock"].is_locked("c1") is False

    @pytest.mark.asyncio
    async def test_persistence_failure_skips_consultation_update(self):
        consultations = await seeded_consultation_store()
        service, _ = make_orchestrator(
            report_store=FailingReportStore(), consultation_store=consultations,
        )
        result = await service.check_and_trigger_automatic_report(make_context())

        assert result.success is False
        assert result.error == "Failed to save diagnostic report"
        assert result.user_notification == GENERATION_FAILED_NOTIFICATION
        assert (await consultations.get_consultation("c1")).status == "active"

    @pytest.mark.asyncio
    async def test_lock_backend_failure(self):
        service, parts = make_orchestrator(lock=ExplodingLock())
        result = await service.check_and_trigger_automatic_report(make_context())

        assert result.success is False
        assert result.user_notification == GENERATION_FAILED_NOTIFICATION
        assert parts["generator"].requests == []

    @pytest.mark.asyncio
    async def test_release_failure_does_not_mask_result(self):
        service, _ = make_orchestrator(lock=StickyLock())
        result = await service.check_and_trigger_automatic_report(make_context())
        assert result.success is True


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Report mapping & enrichment
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBuildReport:

    @pytest.mark.parametrize("urgency,score,risk,follow_up,doctor", [
        (UrgencyLevel.LOW, 1, "low", False, False),
        (UrgencyLevel.MEDIUM, 2, "medium", True, False),
        (UrgencyLevel.HIGH, 3, "high", True, True),
        (UrgencyLevel.EMERGENCY, 4, "high", True, True),
    ])
    def test_urgency_mapping(self, urgency, score, risk, follow_up, doctor):
        analyzer = AgenticDiagnosticService(llm_client=make_llm_client())
        report = AutomaticDiagnosticReportService.build_report(
            make_context(), FullDiagnosticResponse(urgency_level=urgency), 0.8, analyzer,
        )
        assert report.urgency_level == score
        assert report.risk_level == risk
        assert report.follow_up_required is follow_up
        assert report.doctor_recommended is doctor
        assert report.ai_analysis.confidence == 0.8


class TestEnrichment:

    def test_conversation_summary(self):
        messages = [
            ConsultationMessage.patient("c1", "I have chest pain for 3 days"),
            ConsultationMessage.provider("c1", "Is it severe?"),
            ConsultationMessage.patient("c1", "yes it is severe"),
        ]
        assert extract_conversation_summary(messages) == (
            "Patient reported pain symptoms; Symptoms duration: 3 days; "
            "Severity described as: severe"
        )

    def test_conversation_summary_default(self):
        messages = [ConsultationMessage.patient("c1", "hello")]
        assert extract_conversation_summary(messages) == DEFAULT_CONVERSATION_SUMMARY

    def test_provider_insights(self):
        messages = [
            ConsultationMessage.provider("c1", "Let me assess your symptoms."),
            ConsultationMessage.provider("c1", "I recommend rest and a follow-up visit."),
        ]
        assert extract_provider_insights(messages) == (
            "AI provider conducted symptom assessment; "
            "AI provider provided recommendations; "
            "AI provider suggested follow-up care"
        )
        assert extract_provider_insights([]) == DEFAULT_PROVIDER_INSIGHTS

    def test_enhance_request(self):
        request = FullDiagnosticRequest(symptoms=["a bad headache"], additional_info="Light hurts")
        enhanced = enhance_diagnostic_request(
            request, make_context(patient_age=None, messages=[]),
        )
        info = enhanced.additional_info
        assert info.startswith("Light hurts")
        assert "- Consultation with Dr. Sarah Chen (General Medicine)" in info
        assert "- Reason for visit: Headache" in info
        assert "- Patient age: Not specified" in info
        assert DEFAULT_PROVIDER_INSIGHTS in info
        assert request.additional_info == "Light hurts"
