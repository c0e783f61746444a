from __future__ import annotations

import logging
import math
from decimal import ROUND_CEILING, Decimal
from typing import Any

from scaler_core.phases.catalog import PhaseDefinition, SuccessCriterion
from scaler_core.types import Comparator, CriteriaVerdict, CriterionResult, MetricsSnapshot
from scaler_core.utils.logs import log_event


DEFAULT_PASS_FRACTION = 0.8

logger = logging.getLogger(__name__)


def _metric_value(value: Any) -> float | None:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if value is None or isinstance(value, str) and not value.strip():
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def required_passes(total: int, pass_fraction: float) -> int:
    if total <= 0:
        return 0
    # Decimal keeps 0.8 * 5 == 4 exact at the boundary
    needed = (Decimal(str(pass_fraction)) * total).to_integral_value(rounding=ROUND_CEILING)
    return max(0, min(total, int(needed)))


class CriteriaEvaluator:
    def __init__(self, *, pass_fraction: float = DEFAULT_PASS_FRACTION) -> None:
        if not 0 < pass_fraction <= 1:
            raise ValueError(f"pass_fraction must be in (0, 1], got {pass_fraction}")
        self.pass_fraction = float(pass_fraction)

    def _check(self, criterion: SuccessCriterion, snapshot: MetricsSnapshot, phase_id: str) -> CriterionResult:
        raw = snapshot.get(criterion.metric)
        actual = _metric_value(raw)
        if actual is None:
            reason = "missing" if raw is None else "malformed"
            log_event(
                logger,
                "metric_data_quality",
                level=logging.WARNING,
                phase=phase_id,
                metric=criterion.metric,
                issue=reason,
                raw=repr(raw),
            )
            return CriterionResult(criterion.metric, criterion.comparator, criterion.threshold, None, False, f"metric {reason}")
        if criterion.comparator is Comparator.GTE:
            ok = actual >= criterion.threshold
        else:
            ok = actual <= criterion.threshold
        reason = f"{criterion.metric}={actual} {criterion.comparator.value} {criterion.threshold}"
        return CriterionResult(criterion.metric, criterion.comparator, criterion.threshold, actual, ok, reason)

    def evaluate(self, phase: PhaseDefinition, snapshot: MetricsSnapshot) -> CriteriaVerdict:
        results = [self._check(criterion, snapshot, phase.id) for criterion in phase.success_criteria]
        passed = [row for row in results if row.ok]
        failed = [row for row in results if not row.ok]
        required = required_passes(len(results), self.pass_fraction)
        ready = True if not results else len(passed) >= required
        verdict = CriteriaVerdict(phase_id=phase.id, ready=ready, passed=passed, failed=failed, required=required)
        log_event(
            logger,
            "criteria_evaluated",
            phase=phase.id,
            ready=ready,
            passed=len(passed),
            total=len(results),
            required=required,
            failed_metrics=[row.metric for row in failed],
        )
        return verdict
