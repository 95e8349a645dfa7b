"""
Keyword Tables & Extraction Strategy.

The tables below are configuration data, not logic.  The collector never
looks at them directly — it asks an ``ExtractionStrategy`` for the
``Fragments`` found in one message and applies its own state rules
(first-match-wins, append-only, dedup) on top.

Swap in a different strategy (or a ``KeywordTables`` with extended lists)
without touching the collector's state machine.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

# ── Symptom keywords (substring match on the lower-cased message) ──
SYMPTOM_KEYWORDS: list[str] = [
    "pain", "ache", "hurt", "sore", "headache", "fever", "nausea", "vomit",
    "dizzy", "tired", "fatigue", "cough", "sneeze", "runny nose",
    "congestion", "rash", "itch", "swelling", "bruise", "cut", "burn",
    "bleed", "shortness of breath", "chest pain", "stomach ache",
    "back pain", "joint pain", "muscle pain", "anxiety", "depression",
    "stress", "insomnia", "sleep", "appetite",
]

# ── Duration buckets (checked in order, first bucket with a hit wins) ──
DURATION_KEYWORDS: dict[str, list[str]] = {
    "less-than-day": ["today", "this morning", "few hours", "since today", "started today"],
    "1-3-days": ["yesterday", "couple days", "few days", "2 days", "3 days", "since yesterday"],
    "1-week": ["week", "last week", "about a week", "for a week", "7 days"],
    "1-month": ["month", "last month", "about a month", "for a month", "30 days"],
    "more-than-month": ["months", "several months", "long time", "chronic", "ongoing"],
}

# ── Severity buckets (checked in order, first bucket with a hit wins) ──
SEVERITY_KEYWORDS: dict[str, list[str]] = {
    "mild": ["mild", "slight", "little", "barely", "minor", "light"],
    "moderate": ["moderate", "noticeable", "manageable", "medium", "okay"],
    "severe": ["severe", "bad", "terrible", "awful", "intense", "strong", "significant"],
    "extreme": ["extreme", "unbearable", "excruciating", "worst", "can't handle"],
}

HISTORY_KEYWORDS: list[str] = ["history", "diagnosed", "condition", "disease", "illness"]
MEDICATION_KEYWORDS: list[str] = ["taking", "medication", "medicine", "pill", "drug", "prescription"]
ALLERGY_KEYWORDS: list[str] = ["allergic", "allergy", "allergies", "reaction"]

# A message containing any of these is kept verbatim as additional context
MEDICAL_CONTEXT_KEYWORDS: list[str] = [
    "symptom", "feel", "pain", "hurt", "sick", "unwell", "doctor", "hospital",
    "treatment", "medicine", "health", "medical", "diagnosis", "condition",
]

# Mental-health signals used by the referral detector
MENTAL_HEALTH_KEYWORDS: list[str] = [
    "depression", "anxiety", "suicidal", "mental health", "emotional distress",
    "panic attack", "bipolar", "ptsd", "trauma", "self-harm", "suicide",
    "feeling hopeless", "want to die", "end it all", "psychological",
]

# Context words captured either side of a symptom keyword
SYMPTOM_CONTEXT_WORDS = 2


@dataclass
class KeywordTables:
    """Bundle of keyword lists a KeywordExtractionStrategy works from."""

    symptoms: list[str] = field(default_factory=lambda: list(SYMPTOM_KEYWORDS))
    durations: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DURATION_KEYWORDS.items()}
    )
    severities: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in SEVERITY_KEYWORDS.items()}
    )
    history: list[str] = field(default_factory=lambda: list(HISTORY_KEYWORDS))
    medications: list[str] = field(default_factory=lambda: list(MEDICATION_KEYWORDS))
    allergies: list[str] = field(default_factory=lambda: list(ALLERGY_KEYWORDS))
    medical_context: list[str] = field(default_factory=lambda: list(MEDICAL_CONTEXT_KEYWORDS))


@dataclass
class SymptomMention:
    keyword: str
    phrase: str


@dataclass
class Fragments:
    """Everything one message contributed, before state rules are applied."""

    symptoms: list[SymptomMention] = field(default_factory=list)
    duration: str | None = None
    severity: str | None = None
    mentions_history: bool = False
    mentions_medication: bool = False
    mentions_allergy: bool = False
    has_medical_context: bool = False

    @property
    def is_empty(self) -> bool:
        return not (
            self.symptoms
            or self.duration
            or self.severity
            or self.mentions_history
            or self.mentions_medication
            or self.mentions_allergy
            or self.has_medical_context
        )


class ExtractionStrategy(ABC):
    """Turns one message into diagnostic fragments."""

    @abstractmethod
    def extract(self, text: str) -> Fragments:
        """Return the fragments found in ``text``.  Must not raise."""


class KeywordExtractionStrategy(ExtractionStrategy):
    """Substring keyword matching over the lower-cased message."""

    def __init__(self, tables: KeywordTables | None = None) -> None:
        self.tables = tables or KeywordTables()

    def extract(self, text: str) -> Fragments:
        lower = (text or "").lower()
        if not lower.strip():
            return Fragments()

        return Fragments(
            symptoms=self._find_symptoms(lower),
            duration=self._first_bucket(lower, self.tables.durations),
            severity=self._first_bucket(lower, self.tables.severities),
            mentions_history=_contains_any(lower, self.tables.history),
            mentions_medication=_contains_any(lower, self.tables.medications),
            mentions_allergy=_contains_any(lower, self.tables.allergies),
            has_medical_context=_contains_any(lower, self.tables.medical_context),
        )

    def _find_symptoms(self, lower: str) -> list[SymptomMention]:
        words = lower.split()
        mentions: list[SymptomMention] = []
        for keyword in self.tables.symptoms:
            offset = lower.find(keyword)
            if offset == -1:
                continue
            # Word index of the keyword's first word, then ±2 words of context
            index = len(lower[:offset].split())
            if lower[:offset] and not lower[:offset][-1].isspace():
                index -= 1  # keyword starts mid-word, e.g. "ache" in "headache"
            index = max(index, 0)
            span = len(keyword.split())
            start = max(0, index - SYMPTOM_CONTEXT_WORDS)
            end = min(len(words), index + span + SYMPTOM_CONTEXT_WORDS)
            phrase = " ".join(words[start:end])
            if phrase:
                mentions.append(SymptomMention(keyword=keyword, phrase=phrase))
        return mentions

    @staticmethod
    def _first_bucket(lower: str, buckets: dict[str, list[str]]) -> str | None:
        for bucket, keywords in buckets.items():
            if _contains_any(lower, keywords):
                return bucket
        return None


def _contains_any(text: str, keywords: list[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def contains_mental_health_content(*texts: str) -> bool:
    """True if any of the texts mention a mental-health keyword."""
    return any(
        _contains_any((text or "").lower(), MENTAL_HEALTH_KEYWORDS) for text in texts
    )
