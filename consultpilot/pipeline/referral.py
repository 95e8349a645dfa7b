"""
Referral Detector — specialist hand-off from provider replies.

Provider personas are instructed to embed a referral marker when a
patient's condition falls outside their specialty.  Marker format v1:

    [REFERRAL_NEEDED: <Specialty>]

The specialty is matched verbatim against the specialist directory.
Build markers with format_referral_marker() rather than by hand, and bump
REFERRAL_MARKER_VERSION if the format ever changes.

Independently of the marker, mental-health language in either the patient
message or the reply suggests a Psychiatry referral, unless the current
provider already is a psychiatrist.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from pydantic import BaseModel

from consultpilot.pipeline.keywords import contains_mental_health_content
from consultpilot.pipeline.stores import SpecialistDirectory, SpecialistRecord

logger = logging.getLogger("pipeline.referral")

REFERRAL_MARKER_VERSION = "v1"
REFERRAL_MARKER_TEMPLATE = "[REFERRAL_NEEDED: {specialty}]"
REFERRAL_MARKER_PATTERN = re.compile(r"\[REFERRAL_NEEDED: ([^\]]+)\]")

PSYCHIATRY = "Psychiatry"
MARKER_REFERRAL_REASON = "Specialist expertise required"
MENTAL_HEALTH_REFERRAL_REASON = "Mental health concerns detected"


def format_referral_marker(specialty: str) -> str:
    """The exact token a provider reply must contain to request a referral."""
    specialty = specialty.strip()
    if not specialty or "]" in specialty:
        raise ValueError(f"Invalid specialty for referral marker: {specialty!r}")
    return REFERRAL_MARKER_TEMPLATE.format(specialty=specialty)


def parse_referral_marker(text: str) -> str | None:
    """Specialty named by the first referral marker in ``text``, if any."""
    match = REFERRAL_MARKER_PATTERN.search(text or "")
    if match is None:
        return None
    return match.group(1).strip() or None


class ReferralMetadata(BaseModel):
    referral_needed: bool = False
    recommended_specialty: Optional[str] = None
    original_provider: Optional[str] = None
    suggested_provider: Optional[str] = None
    suggested_provider_name: Optional[str] = None
    suggested_provider_specialty: Optional[str] = None
    referral_reason: Optional[str] = None
    marker_version: str = REFERRAL_MARKER_VERSION

    def to_message_metadata(self) -> dict:
        """Shape stored on the provider message; empty when no referral."""
        if not self.referral_needed:
            return {}
        return {"referral": self.model_dump(exclude_none=True)}


class ReferralDetector:
    def __init__(self, directory: SpecialistDirectory) -> None:
        self._directory = directory

    async def detect(
        self,
        reply: str,
        user_message: str,
        *,
        current_specialty: str | None = None,
        original_provider_id: str | None = None,
    ) -> ReferralMetadata:
        specialty = parse_referral_marker(reply)
        if specialty is not None:
            metadata = ReferralMetadata(
                referral_needed=True,
                recommended_specialty=specialty,
                original_provider=original_provider_id,
                referral_reason=MARKER_REFERRAL_REASON,
            )
            specialist = await self._find_specialist(specialty)
            if specialist is not None:
                self._apply_specialist(metadata, specialist)
            logger.info(
                "Referral marker for %s (suggested provider: %s)",
                specialty, metadata.suggested_provider or "none available",
            )
            return metadata

        if current_specialty != PSYCHIATRY and contains_mental_health_content(
            user_message, reply
        ):
            specialist = await self._find_specialist(PSYCHIATRY)
            if specialist is None:
                logger.info("Mental health content detected but no psychiatrist available")
                return ReferralMetadata()
            metadata = ReferralMetadata(
                referral_needed=True,
                recommended_specialty=PSYCHIATRY,
                original_provider=original_provider_id,
                referral_reason=MENTAL_HEALTH_REFERRAL_REASON,
            )
            self._apply_specialist(metadata, specialist)
            logger.info("Mental health referral suggested to %s", specialist.id)
            return metadata

        return ReferralMetadata()

    async def _find_specialist(self, specialty: str) -> SpecialistRecord | None:
        try:
            return await self._directory.find_available_specialist(specialty)
        except Exception as exc:
            logger.error("Specialist lookup for %s failed: %s", specialty, exc)
            return None

    @staticmethod
    def _apply_specialist(metadata: ReferralMetadata, specialist: SpecialistRecord) -> None:
        metadata.suggested_provider = specialist.id
        metadata.suggested_provider_name = specialist.name
        metadata.suggested_provider_specialty = specialist.specialty
