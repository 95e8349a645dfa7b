"""
Diagnostic Report Generator — full diagnostic analysis via Gemini.

Builds the diagnostic prompt from a FullDiagnosticRequest, attaches any
uploaded images as inline parts, and parses the JSON response.  If the
model answers but not in parseable JSON, the raw text becomes the analysis
of a conservative default response.  If the model cannot be reached at
all, ReportGenerationError is raised for the orchestrator to handle.
"""

from __future__ import annotations

import base64
import logging
import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from consultpilot import settings
from consultpilot.pipeline.agents.llm_utils import (
    create_default_client,
    extract_json_object,
    llm_generate,
)
from consultpilot.pipeline.collector import FullDiagnosticRequest
from consultpilot.pipeline.events import UploadedFile

logger = logging.getLogger("pipeline.agents.report_generator")


class ReportGenerationError(Exception):
    """The diagnostic model could not produce a response."""


class UrgencyLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


DEFAULT_ANALYSIS = "Comprehensive diagnostic analysis completed."
DEFAULT_CONDITIONS = ["Professional evaluation needed for accurate diagnosis"]
DEFAULT_RECOMMENDATIONS = ["Consult with healthcare professional for proper evaluation"]
DEFAULT_LIFESTYLE = ["Maintain healthy lifestyle habits"]
DEFAULT_FOLLOW_UP = ["Schedule follow-up with healthcare provider"]
DEFAULT_RED_FLAGS = "Seek immediate medical attention if symptoms worsen significantly."
DEFAULT_DOCUMENT_ANALYSIS = "No specific document analysis available."
DEFAULT_DISCLAIMER = (
    "This is a comprehensive AI analysis and should not replace professional "
    "medical advice."
)


class FullDiagnosticResponse(BaseModel):
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    analysis: str = DEFAULT_ANALYSIS
    possible_conditions: list[str] = Field(default_factory=lambda: list(DEFAULT_CONDITIONS))
    recommendations: list[str] = Field(default_factory=lambda: list(DEFAULT_RECOMMENDATIONS))
    lifestyle_recommendations: list[str] = Field(default_factory=lambda: list(DEFAULT_LIFESTYLE))
    follow_up_plan: list[str] = Field(default_factory=lambda: list(DEFAULT_FOLLOW_UP))
    red_flags: str = DEFAULT_RED_FLAGS
    document_analysis: str = DEFAULT_DOCUMENT_ANALYSIS
    negligence_assessment: Optional[str] = None
    disclaimer: str = DEFAULT_DISCLAIMER
    diagnostic_type: str = "full"


NEGLIGENCE_SECTION = """
CRITICAL MEDICAL NEGLIGENCE ASSESSMENT:
Since medical reports/documents have been uploaded, you MUST perform a thorough negligence analysis:
1. CARE STANDARD EVALUATION: missed diagnoses, delayed treatments, follow-up, diagnostic tests ordered.
2. RED FLAG ANALYSIS: symptoms that should have triggered action, medication errors, timing of referrals.
3. CONTINUITY OF CARE: gaps in treatment, communication between providers, dismissed concerns.
4. DOCUMENTATION REVIEW: missing information, inconsistencies, quality of notes, informed consent.
"""

FULL_DIAGNOSTIC_PROMPT = """\
You are an advanced medical AI assistant performing a comprehensive diagnostic analysis.
Analyze the following health information and provide detailed insights:

SYMPTOMS: {symptoms}
{duration}{severity}{additional_info}{file_context}{negligence}
Please provide your response in the following JSON format:
{{
  "urgencyLevel": "low|medium|high|emergency",
  "analysis": "Comprehensive analysis of symptoms and uploaded materials",
  "possibleConditions": ["condition1", "condition2", "condition3"],
  "recommendations": ["clinical recommendation1", "clinical recommendation2"],
  "lifestyleRecommendations": ["lifestyle1", "lifestyle2"],
  "followUpPlan": ["followup1", "followup2"],
  "redFlags": "Warning signs that require immediate attention",
  "documentAnalysis": "Analysis of uploaded documents and images",{negligence_field}
  "disclaimer": "Medical disclaimer about seeking professional care"
}}

Important guidelines for FULL DIAGNOSTIC:
- Provide comprehensive analysis considering all available information
- Include differential diagnosis with reasoning
- Provide specific clinical recommendations
- Include lifestyle and preventive recommendations
- Create a detailed follow-up plan
- Identify red flag symptoms
- Always emphasize the need for professional medical consultation
- Be thorough but conservative in assessments\
"""


class DiagnosticReportGenerator:
    """
    The diagnostic-generation collaborator, backed by Gemini.

    Usage:
        generator = DiagnosticReportGenerator()
        response = await generator.generate(request)
    """

    def __init__(
        self,
        llm_client: Any = None,
        *,
        model: str = settings.DIAGNOSTIC_MODEL,
        max_retries: int = settings.LLM_MAX_RETRIES,
    ) -> None:
        self._client = llm_client
        self._model_name = model
        self._max_retries = max_retries

    @property
    def client(self):
        if self._client is None:
            self._client = create_default_client()
        return self._client

    async def generate(self, request: FullDiagnosticRequest) -> FullDiagnosticResponse:
        if self.client is None:
            raise ReportGenerationError("No LLM client available")

        prompt = self.build_prompt(request)
        images = [f for f in request.uploaded_files if f.is_image and f.base64_data]
        contents: Any = prompt
        if images:
            contents = [prompt, *self._image_parts(images)]
            logger.info("Diagnostic request includes %d inline image(s)", len(images))

        t_start = time.monotonic()
        raw = await llm_generate(
            self.client, self._model_name, contents, max_retries=self._max_retries,
        )
        logger.info("  [timing] Full diagnostic generation: %.2fs", time.monotonic() - t_start)

        if raw is None:
            raise ReportGenerationError("Diagnostic model returned no response")
        return self.parse_response(raw)

    @staticmethod
    def build_prompt(request: FullDiagnosticRequest) -> str:
        file_context = ""
        has_reports = False
        if request.uploaded_files:
            lines = ["", "UPLOADED MEDICAL DOCUMENTS:"]
            for index, upload in enumerate(request.uploaded_files, start=1):
                lines.append(f"{index}. {upload.name} ({upload.mime_type})")
                if upload.is_image:
                    lines.append(
                        "[Medical Image - Please analyze the visual content in "
                        "relation to the symptoms]"
                    )
                    has_reports = True
                elif upload.content:
                    lines.append(f"Content: {upload.content}")
                    has_reports = True
            file_context = "\n".join(lines) + "\n"

        return FULL_DIAGNOSTIC_PROMPT.format(
            symptoms=", ".join(request.symptoms),
            duration=f"DURATION: {request.duration}\n" if request.duration else "",
            severity=f"SEVERITY: {request.severity}\n" if request.severity else "",
            additional_info=(
                f"ADDITIONAL INFO: {request.additional_info}\n"
                if request.additional_info else ""
            ),
            file_context=file_context,
            negligence=NEGLIGENCE_SECTION if has_reports else "",
            negligence_field=(
                '\n  "negligenceAssessment": "Analysis of potential negligence '
                'indicators based on uploaded reports",'
                if has_reports else ""
            ),
        )

    @staticmethod
    def parse_response(text: str) -> FullDiagnosticResponse:
        parsed = extract_json_object(text)
        if parsed is None:
            logger.warning("Diagnostic response was not JSON — using raw text as analysis")
            return FullDiagnosticResponse(
                analysis=text.strip() or DEFAULT_ANALYSIS,
                document_analysis="Document analysis not available.",
            )

        return FullDiagnosticResponse(
            urgency_level=_as_urgency(parsed.get("urgencyLevel")),
            analysis=str(parsed.get("analysis") or DEFAULT_ANALYSIS),
            possible_conditions=_str_list(parsed.get("possibleConditions"), DEFAULT_CONDITIONS),
            recommendations=_str_list(parsed.get("recommendations"), DEFAULT_RECOMMENDATIONS),
            lifestyle_recommendations=_str_list(
                parsed.get("lifestyleRecommendations"), DEFAULT_LIFESTYLE
            ),
            follow_up_plan=_str_list(parsed.get("followUpPlan"), DEFAULT_FOLLOW_UP),
            red_flags=str(parsed.get("redFlags") or DEFAULT_RED_FLAGS),
            document_analysis=str(parsed.get("documentAnalysis") or DEFAULT_DOCUMENT_ANALYSIS),
            negligence_assessment=(
                str(parsed["negligenceAssessment"])
                if parsed.get("negligenceAssessment") else None
            ),
            disclaimer=str(parsed.get("disclaimer") or DEFAULT_DISCLAIMER),
        )

    @staticmethod
    def _image_parts(images: list[UploadedFile]) -> list[Any]:
        from google.genai import types as genai_types

        parts = []
        for image in images:
            try:
                data = base64.b64decode(image.base64_data.split(",")[-1])
            except (ValueError, TypeError) as exc:
                logger.warning("Skipping undecodable image %s: %s", image.name, exc)
                continue
            parts.append(genai_types.Part.from_bytes(data=data, mime_type=image.mime_type))
        return parts


def _as_urgency(value: Any) -> UrgencyLevel:
    try:
        return UrgencyLevel(str(value).strip().lower())
    except ValueError:
        return UrgencyLevel.MEDIUM


def _str_list(value: Any, default: list[str]) -> list[str]:
    if isinstance(value, list) and value:
        return [str(v) for v in value if v]
    return list(default)
