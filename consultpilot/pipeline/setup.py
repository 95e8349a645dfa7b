"""
Pipeline Setup — initializes and wires together all pipeline components.

Called once during app startup.  If anything fails, the pipeline is
disabled and the rest of the app keeps serving.
"""

from __future__ import annotations

import logging
from typing import Any

from consultpilot import settings
from consultpilot.pipeline.agents.completion_analyzer import AgenticDiagnosticService
from consultpilot.pipeline.agents.llm_utils import create_default_client
from consultpilot.pipeline.agents.report_generator import DiagnosticReportGenerator
from consultpilot.pipeline.locks import (
    GCSGenerationLock,
    GenerationLock,
    InMemoryGenerationLock,
)
from consultpilot.pipeline.orchestrator import AutomaticDiagnosticReportService
from consultpilot.pipeline.pipeline import ConsultationPipeline
from consultpilot.pipeline.queue import ConsultationQueueManager
from consultpilot.pipeline.referral import ReferralDetector
from consultpilot.pipeline.state import ConsultationStateRegistry
from consultpilot.pipeline.stores import (
    ConsultationStore,
    GCSReportStore,
    InMemoryConsultationStore,
    InMemoryReportStore,
    InMemorySpecialistDirectory,
    ReportStore,
    SpecialistDirectory,
    SpecialistRecord,
)

logger = logging.getLogger("pipeline.setup")

DEFAULT_SPECIALISTS = [
    SpecialistRecord(id="ai-cardiology", name="Dr. Sarah Chen", specialty="Cardiology"),
    SpecialistRecord(id="ai-neurology", name="Dr. Michael Rodriguez", specialty="Neurology"),
    SpecialistRecord(id="ai-dermatology", name="Dr. Emily Watson", specialty="Dermatology"),
    SpecialistRecord(id="ai-orthopedics", name="Dr. James Thompson", specialty="Orthopedics"),
    SpecialistRecord(id="ai-psychiatry", name="Dr. Robert Kim", specialty="Psychiatry"),
    SpecialistRecord(
        id="ai-internal-medicine", name="Dr. David Johnson", specialty="Internal Medicine"
    ),
]

# Module-level singletons (set during initialize)
_pipeline: ConsultationPipeline | None = None
_queue_manager: ConsultationQueueManager | None = None
_state_registry: ConsultationStateRegistry | None = None
_report_store: ReportStore | None = None
_consultation_store: ConsultationStore | None = None
_specialist_directory: SpecialistDirectory | None = None
_generation_lock: GenerationLock | None = None


async def initialize_pipeline(
    *,
    llm_client: Any = None,
    storage_backend: str = settings.STORAGE_BACKEND,
    specialists: list[SpecialistRecord] | None = None,
) -> ConsultationPipeline:
    """
    Wire together all pipeline components and start the queue manager.

    Returns the fully initialized ConsultationPipeline.
    """
    global _pipeline, _queue_manager, _state_registry
    global _report_store, _consultation_store, _specialist_directory, _generation_lock

    logger.info("Initializing consultation pipeline (storage=%s)...", storage_backend)

    # 1. One Gemini client shared by every consultation's analyzer
    client = llm_client if llm_client is not None else create_default_client()

    # 2. Persistence + generation lock
    if storage_backend == "gcs":
        from consultpilot.dependencies import get_gcs
        gcs = get_gcs()
        if gcs is None:
            raise RuntimeError("GCS storage requested but the bucket manager is unavailable")
        gcs._ensure_initialized()
        _report_store = GCSReportStore(gcs)
        _generation_lock = GCSGenerationLock(gcs)
    else:
        _report_store = InMemoryReportStore()
        _generation_lock = InMemoryGenerationLock()

    _consultation_store = InMemoryConsultationStore()
    _specialist_directory = InMemorySpecialistDirectory(
        DEFAULT_SPECIALISTS if specialists is None else specialists
    )

    # 3. Per-consultation state
    _state_registry = ConsultationStateRegistry(
        factory=lambda consultation_id: AgenticDiagnosticService(llm_client=client)
    )

    # 4. Orchestrator + pipeline
    orchestrator = AutomaticDiagnosticReportService(
        state_registry=_state_registry,
        report_generator=DiagnosticReportGenerator(llm_client=client),
        report_store=_report_store,
        consultation_store=_consultation_store,
        lock=_generation_lock,
    )
    _pipeline = ConsultationPipeline(
        state_registry=_state_registry,
        orchestrator=orchestrator,
        referral_detector=ReferralDetector(_specialist_directory),
        consultation_store=_consultation_store,
    )

    # 5. Queue manager (uses pipeline.process_message as the processor)
    _queue_manager = ConsultationQueueManager(processor=_pipeline.process_message)
    await _queue_manager.start()

    logger.info(
        "Pipeline initialized: llm=%s, report_store=%s, lock=%s",
        "gemini" if client is not None else "rule fallback only",
        type(_report_store).__name__,
        type(_generation_lock).__name__,
    )
    return _pipeline


async def shutdown_pipeline() -> None:
    """Gracefully stop background tasks."""
    global _queue_manager
    if _queue_manager:
        await _queue_manager.stop()
        logger.info("Pipeline shutdown complete")


def get_pipeline() -> ConsultationPipeline | None:
    return _pipeline


def get_queue_manager() -> ConsultationQueueManager | None:
    return _queue_manager


def get_state_registry() -> ConsultationStateRegistry | None:
    return _state_registry


def get_report_store() -> ReportStore | None:
    return _report_store


def get_consultation_store() -> ConsultationStore | None:
    return _consultation_store


def get_specialist_directory() -> SpecialistDirectory | None:
    return _specialist_directory


def get_generation_lock() -> GenerationLock | None:
    return _generation_lock
