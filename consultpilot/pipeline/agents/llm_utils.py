"""
LLM utility functions — retry wrapper, lazy client and defensive JSON parsing.

Shared by the completion analyzer and the diagnostic report generator.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

logger = logging.getLogger("pipeline.agents.llm_utils")


def create_default_client() -> Any | None:
    """Build a Gemini client from GOOGLE_API_KEY, or None if unavailable."""
    try:
        from google import genai
        return genai.Client(api_key=os.getenv("GOOGLE_API_KEY"))
    except Exception as exc:
        logger.error("Failed to create Gemini client: %s", exc)
        return None


async def llm_generate(
    client: Any,
    model: str,
    contents: Any,
    max_retries: int = 2,
) -> str | None:
    """
    Call the LLM with retry and exponential backoff (0.5s, 1.0s, ...).

    ``contents`` is a prompt string or a list of parts (text + inline
    images).  Returns the response text, or None once retries are
    exhausted so callers use their deterministic fallback.
    """
    for attempt in range(max_retries + 1):
        try:
            response = await client.aio.models.generate_content(
                model=model,
                contents=contents,
            )
            text = response.text
            if isinstance(text, str) and text.strip():
                return text
            logger.warning("LLM returned empty response (attempt %d)", attempt + 1)
        except Exception as exc:
            logger.warning(
                "LLM call failed (attempt %d/%d): %s",
                attempt + 1, max_retries + 1, exc,
            )

        if attempt < max_retries:
            await asyncio.sleep(0.5 * (2 ** attempt))

    if max_retries > 0:
        logger.error(
            "LLM call exhausted all %d attempts — returning None",
            max_retries + 1,
        )
    return None


def find_json_object(text: str) -> str | None:
    """
    Return the first balanced ``{...}`` substring of ``text``.

    Braces inside JSON string literals are ignored, so markdown fences,
    preambles and trailing chatter around the object are all tolerated.
    """
    if not text:
        return None

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unbalanced from this brace, try the next one
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Parse the first balanced JSON object in ``text``; None if there is none."""
    if not text:
        return None

    candidate = find_json_object(text)
    if candidate is None:
        return None

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        logger.warning("Could not parse JSON from LLM response: %s", exc)
        return None

    if not isinstance(parsed, dict):
        return None
    return parsed
