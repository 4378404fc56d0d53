"""AI insights comparing the client's scores with its competitors."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from api.models.base import utcnow
from worker.effectiveness.judge import complete_json

logger = structlog.get_logger(__name__)


@dataclass
class EntityScores:
    """Scores of one analyzed entity, as handed to the insights prompt."""

    label: str
    url: str
    overall_score: float | None
    criteria: dict[str, float]
    failed_checks: dict[str, list[str]]


class InsightsProvider(Protocol):
    async def generate(
        self,
        client: EntityScores,
        competitors: list[EntityScores],
    ) -> dict[str, Any]: ...


INSIGHTS_PROMPT = """Compare the client's website with its competitors.

Client:
{client}

Competitors:
{competitors}

Return JSON:
{{
  "summary": "two or three sentences on overall effectiveness",
  "strengths": ["criterion-level strengths of the client"],
  "weaknesses": ["criterion-level weaknesses of the client"],
  "recommendations": [
    {{"criterion": "<criterion>", "action": "specific change", "priority": "high|medium|low"}}
  ],
  "competitive_position": "leader|competitive|behind"
}}"""


def _describe(entity: EntityScores) -> str:
    return json.dumps(
        {
            "name": entity.label,
            "url": entity.url,
            "overall_score": entity.overall_score,
            "criteria": entity.criteria,
            "failed_checks": entity.failed_checks,
        },
        indent=2,
    )


def build_insights_prompt(client: EntityScores, competitors: list[EntityScores]) -> str:
    competitor_text = (
        "\n".join(_describe(c) for c in competitors) if competitors else "None analyzed."
    )
    return INSIGHTS_PROMPT.format(client=_describe(client), competitors=competitor_text)


class InsightsGenerator:
    """InsightsProvider backed by the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    async def generate(
        self,
        client: EntityScores,
        competitors: list[EntityScores],
    ) -> dict[str, Any]:
        result = await complete_json(
            api_key=self.api_key,
            model=self.model,
            base_url=self.base_url,
            prompt=build_insights_prompt(client, competitors),
            timeout=self.timeout,
            transport=self._transport,
        )
        result.setdefault("recommendations", [])
        result["generated_at"] = utcnow().isoformat()
        result["model"] = self.model
        result["competitors_compared"] = len(competitors)
        logger.info(
            "insights_generated",
            client=client.label,
            competitors=len(competitors),
            recommendations=len(result["recommendations"]),
        )
        return result
