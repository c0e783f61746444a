from __future__ import annotations

import logging
from typing import Any, Callable

from scaler_core.collaborators.ports import RecommendationSource
from scaler_core.errors import CollaboratorError
from scaler_core.persistence.state_store import AdvisoryLog
from scaler_core.phases.catalog import PhaseDefinition
from scaler_core.types import Advisory, CriteriaVerdict, Recommendation, utc_now_iso
from scaler_core.utils.logs import log_event
from scaler_core.utils.retry import RetryPolicy, call_with_retry


logger = logging.getLogger(__name__)

_FIELD_ALIASES = {
    "action": ("action",),
    "target_metric": ("target_metric", "targetMetric", "target"),
    "expected_impact": ("expected_impact", "expectedImpact", "impact"),
    "timeline": ("timeline",),
}


def parse_recommendation(item: Any) -> Recommendation | None:
    if not isinstance(item, dict):
        return None
    values: dict[str, str] = {}
    for field_name, aliases in _FIELD_ALIASES.items():
        raw = next((item[key] for key in aliases if key in item), None)
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            raw = str(raw)
        if not isinstance(raw, str) or not raw.strip():
            return None
        values[field_name] = raw.strip()
    return Recommendation(**values)


class OptimizerAdvisor:
    """Turns failed criteria into advisory recommendations. Never acts on them."""

    def __init__(
        self,
        *,
        source: RecommendationSource | None,
        log: AdvisoryLog,
        retry_policy: RetryPolicy | None = None,
        limit: int = 5,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.source = source
        self.log = log
        self.retry_policy = retry_policy or RetryPolicy()
        self.limit = max(1, int(limit))
        self._sleep = sleep

    def _recommendations(self, phase: PhaseDefinition, verdict: CriteriaVerdict) -> list[Recommendation]:
        if self.source is None:
            return []
        source = self.source
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        try:
            response = call_with_retry(
                "recommendation_source",
                lambda: source.recommend(phase, list(verdict.failed), self.limit),
                self.retry_policy,
                **kwargs,
            )
        except CollaboratorError as exc:
            log_event(logger, "recommendations_skipped", level=logging.WARNING, phase=phase.id, error=str(exc))
            return []
        if not isinstance(response, (list, tuple)):
            log_event(logger, "recommendations_invalid", level=logging.WARNING, phase=phase.id, kind=type(response).__name__)
            return []
        out: list[Recommendation] = []
        for item in response:
            rec = parse_recommendation(item)
            if rec is None:
                log_event(logger, "recommendation_discarded", level=logging.WARNING, phase=phase.id, item=repr(item)[:200])
                continue
            out.append(rec)
            if len(out) >= self.limit:
                break
        return out

    def advise(self, phase: PhaseDefinition, verdict: CriteriaVerdict) -> Advisory:
        if verdict.ready:
            raise ValueError(f"Phase {phase.id} is ready; advisor only runs on not-ready verdicts")
        recommendations = self._recommendations(phase, verdict)
        advisory = Advisory(timestamp=utc_now_iso(), phase_id=phase.id, failed=list(verdict.failed), recommendations=recommendations)
        try:
            self.log.append(advisory.to_dict())
        except OSError as exc:
            log_event(logger, "advisory_persist_failed", level=logging.ERROR, phase=phase.id, error=str(exc))
        log_event(
            logger,
            "advisory_created",
            phase=phase.id,
            failed_metrics=[row.metric for row in verdict.failed],
            recommendations=len(recommendations),
        )
        return advisory
