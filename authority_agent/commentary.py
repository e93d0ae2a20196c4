"""
Platform commentary using Google Gemini.
Given an excerpt of page content and a target AI platform, Gemini returns a
0-100 suitability score plus short commentary. Any failure is reported as
ScoringCollaboratorError; callers treat that as "no commentary".
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from google import genai
from google.genai import types

from .config import Settings, get_settings
from .errors import ScoringCollaboratorError

logger = logging.getLogger(__name__)

PLATFORM_LABELS = {
    "chatgpt": "ChatGPT",
    "claude": "Claude",
    "perplexity": "Perplexity",
    "google_ai": "Google AI Overviews",
}

_ALLOWED_CONFIDENCE = {"high", "medium", "low"}


@dataclass(frozen=True)
class Commentary:
    score: int
    reasoning: str
    recommendations: tuple[str, ...]
    confidence: str


class CommentaryClient(Protocol):
    def __call__(self, content_excerpt: str, platform_label: str) -> Commentary: ...


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, int, float, bool)):
        s = str(value).strip()
        return [s] if s else []
    if isinstance(value, list):
        out: list[str] = []
        for item in value:
            if item is None:
                continue
            s = str(item).strip()
            if s:
                out.append(s)
        return out
    return [str(value)]


def normalize_commentary(raw: Any) -> Commentary:
    """Clamp and normalize model output, or raise when it is unusable.

    Gemini occasionally returns partial JSON or unexpected enums. A missing or
    non-numeric score is treated as malformed; everything else is defaulted.
    """
    if not isinstance(raw, dict):
        raise ScoringCollaboratorError("Commentary response is not a JSON object.")

    try:
        score = int(round(float(raw.get("score"))))
    except (TypeError, ValueError) as e:
        raise ScoringCollaboratorError("Commentary response has no numeric score.") from e
    score = max(0, min(100, score))

    confidence = str(raw.get("confidence") or "medium").strip().lower()
    if confidence in ("med", "mid"):
        confidence = "medium"
    if confidence not in _ALLOWED_CONFIDENCE:
        confidence = "medium"

    reasoning = str(raw.get("reasoning") or "").strip()
    recommendations = tuple(_as_str_list(raw.get("recommendations"))[:5])

    return Commentary(score=score, reasoning=reasoning, recommendations=recommendations, confidence=confidence)


def _build_prompt(content_excerpt: str, platform_label: str) -> str:
    return f"""You are an expert in how {platform_label} selects and cites web content.
Judge how likely the page below is to be surfaced or cited by {platform_label}.

Consider: clarity of answers, structure (headings, lists, FAQs), evidence and
citations, freshness, topical depth, and authorship signals.

## PAGE CONTENT (excerpt)
{content_excerpt[:3000]}

## RESPONSE FORMAT

Respond with ONLY valid JSON (no markdown, no code blocks):

{{
  "score": <0-100 integer>,
  "confidence": "<high|medium|low>",
  "reasoning": "<one sentence>",
  "recommendations": ["<up to 5 concrete improvements for {platform_label}>"]
}}"""


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


class GeminiCommentary:
    """Commentary collaborator backed by the google-genai SDK."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._client: genai.Client | None = None

    @property
    def available(self) -> bool:
        return bool(self.settings.gemini_api_key)

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(
                api_key=self.settings.gemini_api_key,
                http_options=types.HttpOptions(timeout=int(self.settings.commentary_timeout_s * 1000)),
            )
        return self._client

    def __call__(self, content_excerpt: str, platform_label: str) -> Commentary:
        if not self.available:
            raise ScoringCollaboratorError("GEMINI_API_KEY is not configured.")

        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            temperature=0.2,
            max_output_tokens=1024,
        )
        try:
            resp = self._get_client().models.generate_content(
                model=self.settings.gemini_model,
                contents=[
                    types.Content(
                        role="user",
                        parts=[types.Part.from_text(text=_build_prompt(content_excerpt, platform_label))],
                    )
                ],
                config=config,
            )
        except Exception as e:
            raise ScoringCollaboratorError(f"Gemini call failed: {e}") from e

        text = _strip_fences(getattr(resp, "text", None) or "")
        if not text:
            raise ScoringCollaboratorError("Gemini returned an empty response.")
        try:
            raw = json.loads(text)
        except ValueError as e:
            raise ScoringCollaboratorError("Gemini returned malformed JSON.") from e
        return normalize_commentary(raw)
