from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Sequence

import requests

from scaler_core.errors import CollaboratorError

if TYPE_CHECKING:
    from scaler_core.phases.catalog import PhaseDefinition
    from scaler_core.types import CandidateMarket, CriterionResult


class ChatCompletionsClient:
    """Minimal client for an OpenAI-compatible /chat/completions endpoint returning JSON objects."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        temperature: float = 0.5,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.session = session or requests.Session()

    def complete_json(self, prompt: str) -> dict[str, Any]:
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }
        try:
            res = self.session.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=body,
                timeout=self.timeout,
            )
            res.raise_for_status()
            content = res.json()["choices"][0]["message"]["content"]
            payload = json.loads(content)
        except (requests.RequestException, KeyError, IndexError, TypeError, ValueError) as exc:
            raise CollaboratorError("llm", f"bad completion: {exc}") from exc
        if not isinstance(payload, dict):
            raise CollaboratorError("llm", "completion is not a JSON object")
        return payload


class LlmMarketRanker:
    def __init__(self, client: ChatCompletionsClient, *, max_listed: int = 40) -> None:
        self.client = client
        self.max_listed = max_listed

    def build_prompt(self, pool: Sequence[CandidateMarket], n: int, phase: PhaseDefinition) -> str:
        listed = sorted(pool, key=lambda row: (-row.density, row.identifier))[: self.max_listed]
        lines = [
            f"- {row.identifier} (population {row.population:,}, businesses per 1k residents {row.density}, growth {row.growth}%)" for row in listed
        ]
        return (
            "You are selecting the best markets for small-business outreach expansion.\n\n"
            f"Phase: {phase.name}\n"
            f"Select exactly {n} markets from the list below. Use only identifiers exactly as written.\n\n"
            "Available markets:\n" + "\n".join(lines) + "\n\n"
            "Weigh business density, market size, geographic diversity and growth potential.\n"
            'Return JSON: {"markets": ["identifier", ...]} ordered best first.'
        )

    def rank(self, pool: Sequence[CandidateMarket], n: int, phase: PhaseDefinition) -> Sequence[Any]:
        payload = self.client.complete_json(self.build_prompt(pool, n, phase))
        markets = payload.get("markets", payload.get("cities"))
        if not isinstance(markets, list):
            raise CollaboratorError("llm", "ranking response has no 'markets' list")
        return markets


class LlmRecommendationSource:
    def __init__(self, client: ChatCompletionsClient) -> None:
        self.client = client

    def build_prompt(self, phase: PhaseDefinition, failed: Sequence[CriterionResult], limit: int) -> str:
        lines = []
        for row in failed:
            if row.actual is None:
                lines.append(f"- {row.metric}: no data (need {row.comparator.value} {row.threshold})")
            else:
                direction = "increase" if (row.delta or 0) > 0 else "decrease"
                lines.append(f"- {row.metric}: {row.actual} (need {row.comparator.value} {row.threshold}; {direction} by {abs(row.delta or 0):g})")
        return (
            "You are optimizing a small-business outreach operation that is not ready to scale yet.\n\n"
            f"Current phase: {phase.name}\n"
            "Failed criteria:\n" + "\n".join(lines) + "\n\n"
            f"Provide up to {limit} specific optimizations, most impactful first.\n"
            'Return JSON: {"optimizations": [{"action": "...", "targetMetric": "...", "expectedImpact": "...", "timeline": "..."}]}'
        )

    def recommend(self, phase: PhaseDefinition, failed: Sequence[CriterionResult], limit: int) -> Sequence[Any]:
        payload = self.client.complete_json(self.build_prompt(phase, failed, limit))
        items = payload.get("optimizations", payload.get("recommendations"))
        if not isinstance(items, list):
            raise CollaboratorError("llm", "recommendation response has no 'optimizations' list")
        return items
