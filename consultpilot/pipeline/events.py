"""
Consultation Messages — the units that enter the pipeline.

Every chat turn (patient utterance or provider reply) is wrapped in a
ConsultationMessage.  The pipeline only reads ``sender_role``, ``content``
and ``timestamp``; transport-specific fields stay in ``metadata``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class SenderRole(str, Enum):
    """Who sent the message."""

    PATIENT = "patient"
    PROVIDER = "ai"
    SYSTEM = "system"


# Raw role strings accepted from upstream transports
PATIENT_ROLES = {"patient", "user"}
PROVIDER_ROLES = {"ai", "ai_provider", "provider", "assistant"}


def is_patient_role(role: str | SenderRole) -> bool:
    value = role.value if isinstance(role, SenderRole) else str(role)
    return value.lower() in PATIENT_ROLES


def is_provider_role(role: str | SenderRole) -> bool:
    value = role.value if isinstance(role, SenderRole) else str(role)
    return value.lower() in PROVIDER_ROLES


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Offset-less timestamps from clients are taken to be UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class ConsultationMessage(BaseModel):
    """One chat turn within a consultation."""

    message_id: str = Field(default_factory=_new_uuid)
    consultation_id: str
    sender_role: SenderRole
    content: str = ""
    timestamp: datetime = Field(default_factory=_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"use_enum_values": False}

    @field_validator("timestamp")
    @classmethod
    def timestamp_as_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def patient(
        cls,
        consultation_id: str,
        text: str,
        *,
        timestamp: datetime | None = None,
    ) -> ConsultationMessage:
        return cls(
            consultation_id=consultation_id,
            sender_role=SenderRole.PATIENT,
            content=text,
            timestamp=timestamp or _now(),
        )

    @classmethod
    def provider(
        cls,
        consultation_id: str,
        text: str,
        *,
        timestamp: datetime | None = None,
    ) -> ConsultationMessage:
        return cls(
            consultation_id=consultation_id,
            sender_role=SenderRole.PROVIDER,
            content=text,
            timestamp=timestamp or _now(),
        )

    @property
    def is_patient(self) -> bool:
        return self.sender_role == SenderRole.PATIENT

    @property
    def is_provider(self) -> bool:
        return self.sender_role == SenderRole.PROVIDER


class ConsultationContext(BaseModel):
    """What the analyzer needs to know about the consultation."""

    reason_for_visit: str = ""
    provider_specialty: str = ""
    patient_age: Optional[int] = None
    patient_gender: Optional[str] = None


class UploadedFile(BaseModel):
    """A document the patient attached to the consultation."""

    name: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    content: str = ""
    is_image: bool = False
    base64_data: Optional[str] = None


class ReportGenerationContext(BaseModel):
    """Everything the orchestrator needs to generate and file a report."""

    consultation_id: str
    user_id: str
    provider_id: str = ""
    provider_name: str = ""
    provider_specialty: str = ""
    reason_for_visit: str = ""
    patient_age: Optional[int] = None
    patient_gender: Optional[str] = None
    messages: list[ConsultationMessage] = Field(default_factory=list)
    uploaded_files: list[UploadedFile] = Field(default_factory=list)

    def to_consultation_context(self) -> ConsultationContext:
        return ConsultationContext(
            reason_for_visit=self.reason_for_visit,
            provider_specialty=self.provider_specialty,
            patient_age=self.patient_age,
            patient_gender=self.patient_gender,
        )
