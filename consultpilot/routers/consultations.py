"""
Consultations API — HTTP endpoints for the diagnostic pipeline.

Endpoints:
  POST   /api/consultations/{id}/start            Register consultation context
  POST   /api/consultations/{id}/messages         Submit a patient or provider message
  POST   /api/consultations/{id}/confirm          Confirm or decline a quick response
  GET    /api/consultations/{id}/diagnostic-data  Collected data, completeness, timing
  GET    /api/consultations/{id}/outcomes         Pipeline outcomes so far
  DELETE /api/consultations/{id}                  Reset pipeline state
  GET    /api/consultations/status                Active consultations and queues
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field, field_validator

from consultpilot.pipeline.events import (
    ConsultationMessage,
    ReportGenerationContext,
    SenderRole,
    UploadedFile,
    as_utc,
    is_patient_role,
    is_provider_role,
)

logger = logging.getLogger("pipeline.api")

router = APIRouter(prefix="/api/consultations", tags=["consultations"])


# ── Request / Response Models ──


class StartConsultationRequest(BaseModel):
    user_id: str
    provider_id: str = ""
    provider_name: str = ""
    provider_specialty: str = ""
    reason_for_visit: str = ""
    patient_age: Optional[int] = None
    patient_gender: Optional[str] = None
    uploaded_files: list[UploadedFile] = Field(default_factory=list)
    start_time: Optional[datetime] = None

    @field_validator("start_time")
    @classmethod
    def start_time_as_utc(cls, value):
        return as_utc(value)


class SubmitMessageRequest(BaseModel):
    sender_role: str = "patient"
    content: str
    message_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    wait: bool = True  # False → accept and process in the background

    @field_validator("timestamp")
    @classmethod
    def timestamp_as_utc(cls, value):
        return as_utc(value)


class SubmitMessageResponse(BaseModel):
    success: bool
    message_id: str
    outcome: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConfirmRequest(BaseModel):
    accepted: bool = True
    message_id: Optional[str] = None  # None → the oldest held response


class PipelineStatusResponse(BaseModel):
    status: str = "ok"
    active_consultations: list[str] = Field(default_factory=list)
    active_queues: int = 0
    reports_filed: Optional[int] = None


# ── Helpers ──


def _require_pipeline():
    from consultpilot.pipeline.setup import get_pipeline

    pipeline = get_pipeline()
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


def _require_state(consultation_id: str):
    state = _require_pipeline().registry.get(consultation_id)
    if state is None:
        raise HTTPException(
            status_code=404, detail=f"Unknown consultation: {consultation_id}"
        )
    return state


def _sender_role(raw: str) -> SenderRole:
    if is_patient_role(raw):
        return SenderRole.PATIENT
    if is_provider_role(raw):
        return SenderRole.PROVIDER
    raise HTTPException(status_code=400, detail=f"Invalid sender_role: {raw}")


# ── Endpoints ──


@router.post("/{consultation_id}/start")
async def start_consultation(consultation_id: str, request: StartConsultationRequest):
    pipeline = _require_pipeline()
    context = ReportGenerationContext(
        consultation_id=consultation_id,
        **request.model_dump(exclude={"start_time"}),
    )
    state = await pipeline.start_consultation(context, start_time=request.start_time)
    timing = state.analyzer.collector.get_timing_data()
    return {
        "success": True,
        "consultation_id": consultation_id,
        "conversation_start_time": timing.conversation_start_time,
    }


@router.post("/{consultation_id}/messages", response_model=SubmitMessageResponse)
async def submit_message(consultation_id: str, request: SubmitMessageRequest):
    """
    Route a message through the per-consultation queue so messages for one
    consultation are processed in arrival order.
    """
    from consultpilot.pipeline.setup import get_queue_manager

    pipeline = _require_pipeline()
    fields: dict[str, Any] = {
        "consultation_id": consultation_id,
        "sender_role": _sender_role(request.sender_role),
        "content": request.content,
    }
    if request.message_id:
        fields["message_id"] = request.message_id
    if request.timestamp:
        fields["timestamp"] = request.timestamp
    message = ConsultationMessage(**fields)

    queue_manager = get_queue_manager()
    if queue_manager is None:
        outcome = await pipeline.process_message(message)
    else:
        future = await queue_manager.enqueue(message)
        if not request.wait:
            return SubmitMessageResponse(success=True, message_id=message.message_id)
        try:
            outcome = await future
        except asyncio.CancelledError:
            raise HTTPException(status_code=503, detail="Consultation queue was reset")
        except Exception:
            raise HTTPException(status_code=500, detail="Message processing failed")

    return SubmitMessageResponse(
        success=True,
        message_id=message.message_id,
        outcome=outcome.model_dump(mode="json"),
        metadata=message.metadata,
    )


@router.post("/{consultation_id}/confirm")
async def confirm_quick_response(consultation_id: str, request: ConfirmRequest):
    """
    Resolve a held quick response.  Runs through the consultation's queue
    so it cannot overlap a message still being processed.
    """
    from consultpilot.pipeline.setup import get_queue_manager

    _require_state(consultation_id)
    pipeline = _require_pipeline()

    async def confirm():
        return await pipeline.confirm_message(
            consultation_id, accepted=request.accepted, message_id=request.message_id
        )

    queue_manager = get_queue_manager()
    if queue_manager is None:
        outcome = await confirm()
    else:
        future = await queue_manager.submit(consultation_id, confirm, label="confirmation")
        try:
            outcome = await future
        except asyncio.CancelledError:
            raise HTTPException(status_code=503, detail="Consultation queue was reset")
        except Exception:
            raise HTTPException(status_code=500, detail="Confirmation failed")
    return outcome.model_dump(mode="json")


@router.get("/{consultation_id}/diagnostic-data")
async def get_diagnostic_data(consultation_id: str):
    state = _require_state(consultation_id)
    collector = state.analyzer.collector
    return {
        "consultation_id": consultation_id,
        "data": collector.get_diagnostic_data().model_dump(mode="json"),
        "completeness": collector.check_completeness().model_dump(mode="json"),
        "timing": collector.get_timing_data().model_dump(mode="json"),
        "is_within_time_window": collector.is_within_time_window(),
        "requires_confirmation": collector.requires_confirmation(),
        "summary": collector.get_summary(),
    }


@router.get("/{consultation_id}/outcomes")
async def get_outcomes(consultation_id: str):
    state = _require_state(consultation_id)
    return {
        "consultation_id": consultation_id,
        "outcomes": [o.model_dump(mode="json") for o in state.outcomes],
    }


@router.delete("/{consultation_id}")
async def reset_consultation(consultation_id: str):
    from consultpilot.pipeline.setup import get_queue_manager

    pipeline = _require_pipeline()
    if not pipeline.registry.reset(consultation_id):
        raise HTTPException(
            status_code=404, detail=f"Unknown consultation: {consultation_id}"
        )
    queue_manager = get_queue_manager()
    if queue_manager is not None:
        await queue_manager.remove(consultation_id)
    logger.info("Consultation %s reset via API", consultation_id)
    return {"success": True, "consultation_id": consultation_id}


@router.get("/status", response_model=PipelineStatusResponse)
async def pipeline_status():
    from consultpilot.pipeline.setup import get_queue_manager, get_report_store

    pipeline = _require_pipeline()
    queue_manager = get_queue_manager()
    report_store = get_report_store()
    return PipelineStatusResponse(
        active_consultations=pipeline.registry.active_ids(),
        active_queues=queue_manager.active_count if queue_manager else 0,
        reports_filed=getattr(report_store, "count", None),
    )
