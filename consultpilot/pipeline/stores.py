"""
Stores — persistence collaborators the pipeline writes through.

Three contracts, each with an in-memory implementation (tests and
single-process deployments):

  - ReportStore:          files a GeneratedReport, returns its id
  - ConsultationStore:    reads consultation context, writes status/assessment
  - SpecialistDirectory:  first active + available provider of a specialty

GCSReportStore persists reports as JSON blobs:
  gs://{bucket}/diagnostic_reports/{user_id}/{consultation_id}/{report_id}.json
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("pipeline.stores")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Records
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ProviderInfo(BaseModel):
    id: str = ""
    name: str = ""
    specialty: str = ""


class ReportAnalysis(BaseModel):
    analysis: str = ""
    possible_conditions: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    generated_by: str = "automatic_agentic_system"
    ai_provider: ProviderInfo = Field(default_factory=ProviderInfo)
    conversation_summary: str = ""
    generation_method: str = "automatic"
    diagnostic_type: str = "full"


class GeneratedReport(BaseModel):
    """Immutable once filed — downstream systems annotate, this pipeline never edits."""

    report_id: Optional[str] = None
    user_id: str
    consultation_id: str
    title: str = ""
    symptoms: list[str] = Field(default_factory=list)
    ai_analysis: ReportAnalysis = Field(default_factory=ReportAnalysis)
    risk_level: str = "low"
    urgency_level: int = 1
    confidence: float = 0.0
    recommendations: list[str] = Field(default_factory=list)
    red_flags: str = ""
    follow_up_required: bool = False
    doctor_recommended: bool = False
    created: datetime = Field(default_factory=_now)

    model_config = {"frozen": True}


class ConsultationRecord(BaseModel):
    consultation_id: str
    user_id: str = ""
    provider_id: str = ""
    provider_name: str = ""
    provider_specialty: str = ""
    reason_for_visit: str = ""
    patient_age: Optional[int] = None
    patient_gender: Optional[str] = None
    total_messages: int = 0
    status: str = "active"
    ai_assessment: Optional[str] = None
    report_id: Optional[str] = None
    updated: datetime = Field(default_factory=_now)


class SpecialistRecord(BaseModel):
    id: str
    name: str
    specialty: str
    is_active: bool = True
    is_available: bool = True


class ReportPersistenceError(Exception):
    """The report could not be filed."""


class ConsultationNotFoundError(Exception):
    pass


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Contracts
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ReportStore(ABC):
    @abstractmethod
    async def save_report(self, report: GeneratedReport) -> str:
        """Persist the report and return its id.  Raises ReportPersistenceError."""

    @abstractmethod
    async def get_report(self, report_id: str) -> GeneratedReport | None:
        """Return a filed report, or None."""


class ConsultationStore(ABC):
    @abstractmethod
    async def get_consultation(self, consultation_id: str) -> ConsultationRecord | None:
        """Return the consultation, or None."""

    @abstractmethod
    async def save_consultation(self, record: ConsultationRecord) -> None:
        """Create or replace a consultation record."""

    @abstractmethod
    async def update_consultation(
        self,
        consultation_id: str,
        *,
        status: str | None = None,
        ai_assessment: str | None = None,
        report_id: str | None = None,
    ) -> ConsultationRecord:
        """Apply a partial update.  Raises ConsultationNotFoundError."""

    async def increment_message_count(self, consultation_id: str) -> None:
        record = await self.get_consultation(consultation_id)
        if record is None:
            return
        record.total_messages += 1
        record.updated = _now()
        await self.save_consultation(record)


class SpecialistDirectory(ABC):
    @abstractmethod
    async def find_available_specialist(self, specialty: str) -> SpecialistRecord | None:
        """First active AND available specialist of ``specialty`` (no ranking)."""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  In-memory implementations
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class InMemoryReportStore(ReportStore):
    def __init__(self) -> None:
        self._reports: dict[str, GeneratedReport] = {}

    async def save_report(self, report: GeneratedReport) -> str:
        report_id = report.report_id or _new_id()
        self._reports[report_id] = report.model_copy(update={"report_id": report_id})
        logger.info(
            "Filed report %s for consultation %s", report_id, report.consultation_id
        )
        return report_id

    async def get_report(self, report_id: str) -> GeneratedReport | None:
        return self._reports.get(report_id)

    def reports_for(self, consultation_id: str) -> list[GeneratedReport]:
        return [r for r in self._reports.values() if r.consultation_id == consultation_id]

    @property
    def count(self) -> int:
        return len(self._reports)


class InMemoryConsultationStore(ConsultationStore):
    def __init__(self) -> None:
        self._records: dict[str, ConsultationRecord] = {}

    async def get_consultation(self, consultation_id: str) -> ConsultationRecord | None:
        record = self._records.get(consultation_id)
        return record.model_copy(deep=True) if record else None

    async def save_consultation(self, record: ConsultationRecord) -> None:
        self._records[record.consultation_id] = record.model_copy(deep=True)

    async def update_consultation(
        self,
        consultation_id: str,
        *,
        status: str | None = None,
        ai_assessment: str | None = None,
        report_id: str | None = None,
    ) -> ConsultationRecord:
        record = self._records.get(consultation_id)
        if record is None:
            raise ConsultationNotFoundError(f"No consultation {consultation_id}")
        if status is not None:
            record.status = status
        if ai_assessment is not None:
            record.ai_assessment = ai_assessment
        if report_id is not None:
            record.report_id = report_id
        record.updated = _now()
        return record.model_copy(deep=True)


class InMemorySpecialistDirectory(SpecialistDirectory):
    def __init__(self, specialists: list[SpecialistRecord] | None = None) -> None:
        self._specialists: list[SpecialistRecord] = list(specialists or [])

    def add(self, specialist: SpecialistRecord) -> None:
        self._specialists.append(specialist)

    async def find_available_specialist(self, specialty: str) -> SpecialistRecord | None:
        for specialist in self._specialists:
            if (
                specialist.specialty == specialty
                and specialist.is_active
                and specialist.is_available
            ):
                return specialist
        return None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  GCS implementation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class GCSReportStore(ReportStore):
    """
    Persists reports to GCS.  Blob calls are blocking, so they run in a
    worker thread to keep other consultations' pipelines moving.
    """

    REPORT_PREFIX = "diagnostic_reports"
    INDEX_PREFIX = "diagnostic_report_index"

    def __init__(self, gcs_bucket_manager: Any) -> None:
        self._gcs = gcs_bucket_manager

    def _blob_path(self, report: GeneratedReport, report_id: str) -> str:
        return (
            f"{self.REPORT_PREFIX}/{report.user_id}/"
            f"{report.consultation_id}/{report_id}.json"
        )

    def _index_path(self, report_id: str) -> str:
        return f"{self.INDEX_PREFIX}/{report_id}"

    async def save_report(self, report: GeneratedReport) -> str:
        report_id = report.report_id or _new_id()
        filed = report.model_copy(update={"report_id": report_id})
        path = self._blob_path(filed, report_id)
        try:
            await asyncio.to_thread(
                self._gcs.write_string, path, filed.model_dump_json(indent=2)
            )
            await asyncio.to_thread(
                self._gcs.write_string, self._index_path(report_id), path, "text/plain"
            )
        except Exception as exc:
            raise ReportPersistenceError(
                f"Failed to save report for consultation {report.consultation_id}"
            ) from exc
        logger.info("Filed report %s to gs://%s", report_id, path)
        return report_id

    async def get_report(self, report_id: str) -> GeneratedReport | None:
        path = await asyncio.to_thread(self._gcs.read_string, self._index_path(report_id))
        if not path:
            return None
        content = await asyncio.to_thread(self._gcs.read_string, path.strip())
        if not content:
            return None
        return GeneratedReport.model_validate_json(content)
