from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import ValidationError
from .models import TicketPriority
from .state import coerce_priority

logger = logging.getLogger(__name__)

_PRIORITIES = [priority.value for priority in TicketPriority]

TRIAGE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "priority": {
            "type": "STRING",
            "enum": _PRIORITIES,
            "description": "Estimated priority of the IT ticket from its urgency and impact.",
        },
        "category": {
            "type": "STRING",
            "description": "Short category for the problem, e.g. Hardware, Software, Network, Access.",
        },
        "summary": {"type": "STRING", "description": "One-sentence technical summary of the problem."},
    },
    "required": ["priority", "category", "summary"],
}

INSIGHTS_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "summary": {"type": "STRING", "description": "Concise summary of the problem in one or two sentences."},
        "sentimentScore": {
            "type": "NUMBER",
            "description": "Customer sentiment from 0 (very negative) to 100 (very positive).",
        },
        "urgency": {"type": "STRING", "enum": _PRIORITIES, "description": "Perceived urgency of the request."},
        "suggestedResponse": {
            "type": "STRING",
            "description": "Friendly first reply to the requester, asking for details when needed.",
        },
    },
    "required": ["summary", "sentimentScore", "urgency", "suggestedResponse"],
}


class InsightsError(RuntimeError):
    """Raised when the language model cannot produce a usable answer."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class TriageSuggestion:
    priority: TicketPriority
    category: str
    summary: str


@dataclass(slots=True)
class TicketInsights:
    summary: str
    sentiment_score: float
    urgency: TicketPriority
    suggested_response: str


@dataclass(slots=True)
class TicketInsightsClient:
    """Ask a Gemini-compatible ``generateContent`` endpoint about ticket text.

    Without an ``api_key`` the client is disabled and every call returns
    ``None``. Answers are requested as JSON matching a response schema.
    """

    api_key: str | None
    api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-flash"
    timeout: float = 20.0
    transport: httpx.AsyncBaseTransport | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def suggest_triage(self, title: str, description: str) -> TriageSuggestion | None:
        prompt = (
            "Analyse the following IT support request. Decide its priority "
            f"({', '.join(_PRIORITIES)}) and assign a short category.\n\n"
            f"Title: {title}\nDescription: {description}"
        )
        data = await self._generate(prompt, TRIAGE_SCHEMA)
        if data is None:
            return None
        try:
            return TriageSuggestion(
                priority=coerce_priority(data["priority"]),
                category=str(data["category"]).strip(),
                summary=str(data["summary"]).strip(),
            )
        except (KeyError, ValidationError) as exc:
            raise InsightsError(f"Malformed triage answer: {data!r}") from exc

    async def analyse(self, title: str, description: str) -> TicketInsights | None:
        prompt = (
            "Analyse the following IT support ticket and provide insights for the support team: "
            "a summary, a customer sentiment score, the urgency and a suggested first response.\n\n"
            f'Title: "{title}"\nDescription: "{description}"'
        )
        data = await self._generate(prompt, INSIGHTS_SCHEMA)
        if data is None:
            return None
        try:
            score = float(data["sentimentScore"])
            return TicketInsights(
                summary=str(data["summary"]).strip(),
                sentiment_score=min(100.0, max(0.0, score)),
                urgency=coerce_priority(data["urgency"]),
                suggested_response=str(data["suggestedResponse"]).strip(),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            raise InsightsError(f"Malformed insights answer: {data!r}") from exc

    async def _generate(self, prompt: str, schema: dict[str, Any]) -> dict[str, Any] | None:
        if not self.enabled:
            logger.debug("Ticket insights disabled; skipping model call")
            return None
        url = f"{self.api_url.rstrip('/')}/models/{self.model}:generateContent"
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"responseMimeType": "application/json", "responseSchema": schema},
        }
        headers = {"x-goog-api-key": str(self.api_key), "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise InsightsError(f"Model request failed: {exc}") from exc
        if response.status_code >= 400:
            raise InsightsError(
                f"Model endpoint returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return _answer(response.json())


def _answer(body: dict[str, Any]) -> dict[str, Any] | None:
    try:
        text = body["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InsightsError("Model answer is not valid JSON") from exc
    if not isinstance(data, dict):
        raise InsightsError("Model answer is not a JSON object")
    return data
