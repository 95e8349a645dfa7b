"""
Shared fixtures for the ConsultPilot test suite.

The Gemini client is never contacted: tests inject a fake whose
``aio.models.generate_content`` is an AsyncMock, and run with
max_retries=0 so failures fall straight through to the fallbacks.
"""

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from consultpilot.pipeline.events import ConsultationMessage

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


class FakeClock:
    """Settable wall clock for the collector and analyzer."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Settable monotonic clock for rate limits."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def make_llm_client(text=None, side_effect=None):
    """A stand-in for google.genai.Client with a mocked async generate_content."""
    generate = AsyncMock(return_value=SimpleNamespace(text=text), side_effect=side_effect)
    return SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate)))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def llm_client_factory():
    return make_llm_client


def completion_verdict(**overrides) -> str:
    """A fenced JSON completion verdict, as Gemini tends to return it."""
    body = {
        "isComplete": True,
        "confidence": 0.9,
        "reasoning": "Symptoms, duration and severity covered; patient satisfied",
        "completionIndicators": ["Patient thanked provider"],
        "missingElements": [],
        "recommendedAction": "generate_report",
    }
    body.update(overrides)
    return "```json\n" + json.dumps(body) + "\n```"


def headache_conversation(
    consultation_id="c1",
    closing="Thank you, I think the consultation is complete.",
):
    """Six turns over 17 minutes: symptoms, duration and severity all covered."""
    return [
        ConsultationMessage.patient(consultation_id, "I have a bad headache", timestamp=T0),
        ConsultationMessage.provider(
            consultation_id, "How long has it lasted?", timestamp=T0 + minutes(1),
        ),
        ConsultationMessage.patient(consultation_id, "about a week", timestamp=T0 + minutes(8)),
        ConsultationMessage.provider(
            consultation_id, "How severe is it?", timestamp=T0 + minutes(9),
        ),
        ConsultationMessage.patient(
            consultation_id, "it is severe and I took ibuprofen", timestamp=T0 + minutes(16),
        ),
        ConsultationMessage.provider(consultation_id, closing, timestamp=T0 + minutes(17)),
    ]
