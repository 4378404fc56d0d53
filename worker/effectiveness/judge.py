"""AI judgment calls for tier-2 criteria.

The engine depends only on the ``AiJudge`` protocol. ``OpenAIJudge``
implements it against the OpenAI chat completions API over httpx, with
optional vision input (the above-fold screenshot).
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import httpx
import structlog

from worker.effectiveness.errors import AiJudgeError, ErrorCategory, ParsingError
from worker.effectiveness.types import Criterion

logger = structlog.get_logger(__name__)


@dataclass
class AiJudgment:
    """Score and evidence returned by an AI judge."""

    score: float
    evidence: dict[str, Any] = field(default_factory=dict)
    checks: dict[str, bool] = field(default_factory=dict)


class AiJudge(Protocol):
    """Scores one criterion from text and, when available, an image."""

    async def classify(
        self,
        criterion: Criterion,
        text_context: str,
        image_context: str | None = None,
    ) -> AiJudgment: ...


SYSTEM_PROMPT = (
    "You are a website effectiveness analyst. Judge the page strictly from the "
    "content provided. Respond with a single JSON object only."
)

RESPONSE_FORMAT_HINT = (
    'Return JSON: {"score": number 0-10, "checks": {<check name>: boolean, ...}, '
    '"evidence": {<check name>: "exact supporting text or null", ...}, '
    '"reasoning": "one or two sentences", "confidence": number 0-1}'
)

CRITERION_PROMPTS: dict[Criterion, dict[str, Any]] = {
    Criterion.POSITIONING: {
        "question": "How clearly does the hero section position the business?",
        "checks": {
            "audience_named": "Is the target audience clearly identified?",
            "outcome_present": "Is a specific outcome or benefit stated?",
            "capability_clear": "Is what the company does clearly stated?",
            "brevity_check": "Is the main headline concise (under 22 words)?",
        },
    },
    Criterion.BRAND_STORY: {
        "question": "How compelling and credible is the brand story?",
        "checks": {
            "pov_present": "Is there a clear point of view or unique perspective?",
            "mechanism_named": "Is the specific method or approach named?",
            "outcomes_recent": "Are outcomes from the last 24 months mentioned?",
            "case_complete": "Is there a complete case study or success story?",
        },
    },
    Criterion.CTAS: {
        "question": "How effective are the calls to action?",
        "checks": {
            "primary_cta_visible": "Is there a primary call to action above the fold?",
            "cta_action_oriented": "Do CTA labels use specific action verbs?",
            "cta_consistent": "Do CTAs point to one consistent next step?",
            "cta_low_friction": "Is the next step low-commitment and clear?",
        },
    },
}


def build_prompt(criterion: Criterion, text_context: str, has_image: bool) -> str:
    """Build the user prompt for one criterion."""
    template = CRITERION_PROMPTS[criterion]
    check_lines = "\n".join(f"- {name}: {desc}" for name, desc in template["checks"].items())
    image_line = (
        "A screenshot of the above-fold area is attached; use it for visual hierarchy."
        if has_image
        else "No screenshot is available; judge from text only."
    )
    return (
        f"{template['question']}\n{image_line}\n\nChecks:\n{check_lines}\n\n"
        f"Page content:\n{text_context}\n\n{RESPONSE_FORMAT_HINT}"
    )


def parse_judgment(content: str) -> AiJudgment:
    """Parse the model's JSON answer into an AiJudgment."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ParsingError(f"AI response was not valid JSON: {e}") from e

    if not isinstance(data, dict) or "score" not in data:
        raise ParsingError("AI response missing 'score'")

    try:
        score = float(data["score"])
    except (TypeError, ValueError) as e:
        raise ParsingError(f"AI score is not numeric: {data['score']!r}") from e

    checks = {str(k): bool(v) for k, v in (data.get("checks") or {}).items()}
    evidence = {
        "details": data.get("evidence") or {},
        "reasoning": data.get("reasoning"),
        "confidence": data.get("confidence"),
    }
    return AiJudgment(score=min(10.0, max(0.0, score)), evidence=evidence, checks=checks)


class OpenAIJudge:
    """AiJudge backed by the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.1,
        timeout: float = 60.0,
        screenshot_dir: str = "screenshots",
        max_tokens: int = 600,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout
        self.screenshot_dir = screenshot_dir
        self.max_tokens = max_tokens
        self._transport = transport

    def _image_url(self, image_context: str) -> str | None:
        """Resolve a screenshot reference to something the API can read."""
        if image_context.startswith(("http://", "https://", "data:")):
            return image_context
        path = Path(self.screenshot_dir) / Path(image_context).name
        if not path.exists():
            logger.warning("judge_screenshot_missing", path=str(path))
            return None
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    async def classify(
        self,
        criterion: Criterion,
        text_context: str,
        image_context: str | None = None,
    ) -> AiJudgment:
        """
        Ask the model to score one criterion.

        Args:
            criterion: Tier-2 criterion to judge
            text_context: Extracted page text
            image_context: Screenshot reference, or None for text-only mode

        Returns:
            AiJudgment with score, checks and evidence

        Raises:
            AiJudgeError: API returned an error status
            ParsingError: the answer could not be parsed
        """
        image_url = self._image_url(image_context) if image_context else None
        prompt = build_prompt(criterion, text_context, has_image=image_url is not None)

        user_content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        if image_url:
            user_content.append({"type": "image_url", "image_url": {"url": image_url}})

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=payload,
            )

        if response.status_code == 429:
            raise AiJudgeError(
                f"OpenAI rate limited: {response.text[:200]}",
                category=ErrorCategory.RATE_LIMITED,
            )
        if response.status_code != 200:
            raise AiJudgeError(f"OpenAI HTTP {response.status_code}: {response.text[:200]}")

        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ParsingError("OpenAI response missing message content") from e

        judgment = parse_judgment(content)
        judgment.evidence["model"] = self.model
        usage = data.get("usage") or {}
        logger.debug(
            "ai_judgment_received",
            criterion=criterion.value,
            score=judgment.score,
            vision=image_url is not None,
            total_tokens=usage.get("total_tokens"),
        )
        return judgment


async def complete_json(
    *,
    api_key: str,
    model: str,
    base_url: str,
    prompt: str,
    temperature: float = 0.3,
    timeout: float = 60.0,
    max_tokens: int = 1200,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Single JSON-mode chat completion; used for insights."""
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.post(
            f"{base_url.rstrip('/')}/chat/completions",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_format": {"type": "json_object"},
            },
        )
    if response.status_code != 200:
        raise AiJudgeError(f"OpenAI HTTP {response.status_code}: {response.text[:200]}")
    try:
        content = response.json()["choices"][0]["message"]["content"]
        result = json.loads(content)
    except (KeyError, IndexError, TypeError, json.JSONDecodeError) as e:
        raise ParsingError(f"Unusable completion: {e}") from e
    if not isinstance(result, dict):
        raise ParsingError("Completion was not a JSON object")
    return result
