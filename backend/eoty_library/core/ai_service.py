import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import requests

from eoty_library.core.config import settings
from eoty_library.core.errors import UpstreamFailure, UpstreamTimeout
from eoty_library.models import SummaryType


logger = logging.getLogger(__name__)

SUMMARY_PROMPTS = {
    SummaryType.brief: (
        "You summarize Christian educational resources for a teaching library. "
        "Write a brief summary of at most 200 words, 3-5 key points and 1-3 "
        "spiritual insights. Rate how faithfully the summary reflects the source "
        "as relevance_score between 0 and 1. "
        'Return JSON only: {"summary":"...","key_points":["..."],'
        '"spiritual_insights":["..."],"relevance_score":0.0}.'
    ),
    SummaryType.detailed: (
        "You summarize Christian educational resources for a teaching library. "
        "Write a detailed, section by section summary, up to 10 key points and "
        "up to 5 spiritual insights. Rate how faithfully the summary reflects the "
        "source as relevance_score between 0 and 1. "
        'Return JSON only: {"summary":"...","key_points":["..."],'
        '"spiritual_insights":["..."],"relevance_score":0.0}.'
    ),
}


@dataclass
class GeneratedSummary:
    text: str
    key_points: list[str] = field(default_factory=list)
    spiritual_insights: list[str] = field(default_factory=list)
    relevance_score: float = 0.0


def is_enabled() -> bool:
    return bool(settings.OPENAI_API_KEY)


def _base_url(path: str) -> str:
    return f"{settings.OPENAI_BASE_URL.rstrip('/')}/{path.lstrip('/')}"


def _headers() -> dict[str, str]:
    if not settings.OPENAI_API_KEY:
        raise UpstreamFailure("OPENAI_API_KEY is not configured", retryable=False)
    return {
        "Authorization": f"Bearer {settings.OPENAI_API_KEY}",
        "Content-Type": "application/json",
    }


def _request_json(path: str, payload: dict[str, Any]) -> dict[str, Any]:
    try:
        response = requests.post(
            _base_url(path),
            headers=_headers(),
            json=payload,
            timeout=settings.AI_HTTP_TIMEOUT_SECONDS,
        )
    except requests.Timeout as error:
        raise UpstreamTimeout(f"AI request timed out: {error}") from error
    except requests.RequestException as error:
        raise UpstreamFailure(f"AI request failed: {error}") from error
    if response.status_code >= 400:
        try:
            data = response.json()
            error = data.get("error", {})
            message = error.get("message") or response.text
        except Exception:  # noqa: BLE001
            message = response.text
        raise UpstreamFailure(
            f"AI request failed: {response.status_code} {message}",
            retryable=response.status_code == 429 or response.status_code >= 500,
        )

    try:
        return response.json()
    except ValueError as error:
        raise UpstreamFailure("AI returned non-JSON response") from error


def _parse_json_text(text: str) -> dict[str, Any]:
    text = text.strip()
    if not text:
        return {}

    try:
        return json.loads(text)
    except ValueError:
        pass

    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        return {}

    try:
        return json.loads(match.group(0))
    except ValueError:
        return {}


def _string_list(raw: Any) -> list[str]:
    values: list[str] = []
    if isinstance(raw, list):
        for item in raw:
            value = str(item).strip()
            if value:
                values.append(value)
    return values


def _score(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return min(1.0, max(0.0, value))


class SummaryGenerator:
    """OpenAI-compatible chat completion client producing resource summaries."""

    def generate(self, text: str, summary_type: SummaryType) -> GeneratedSummary:
        source = text.strip()[: settings.AI_MAX_SOURCE_CHARS]
        if not source:
            raise UpstreamFailure("Resource has no text to summarize", retryable=False)

        data = _request_json(
            "/chat/completions",
            {
                "model": settings.AI_CHAT_MODEL,
                "temperature": 0.2,
                "messages": [
                    {"role": "system", "content": SUMMARY_PROMPTS[summary_type]},
                    {"role": "user", "content": source},
                ],
                "response_format": {"type": "json_object"},
            },
        )
        choices = data.get("choices") or []
        content = ""
        if choices:
            content = choices[0].get("message", {}).get("content", "")

        parsed = _parse_json_text(content)
        summary = str(parsed.get("summary") or "").strip()
        if not summary:
            raise UpstreamFailure("AI returned an empty summary")

        logger.info("summary generated: type=%s chars=%s", summary_type.value, len(summary))
        return GeneratedSummary(
            text=summary,
            key_points=_string_list(parsed.get("key_points")),
            spiritual_insights=_string_list(parsed.get("spiritual_insights")),
            relevance_score=_score(parsed.get("relevance_score")),
        )
