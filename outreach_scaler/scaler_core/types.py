from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Comparator(str, Enum):
    GTE = ">="
    LTE = "<="


class MarketSource(str, Enum):
    EXPLICIT = "explicit"
    RANKED = "ranked"
    FALLBACK = "fallback"


class RunOutcome(str, Enum):
    TRANSITIONED = "transitioned"
    ADVISED = "advised"
    TERMINAL = "terminal"
    ABORTED = "aborted"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    timestamp: str
    values: dict[str, float | bool] = field(default_factory=dict)

    def get(self, metric: str) -> Any:
        return self.values.get(metric)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "values": dict(self.values)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MetricsSnapshot":
        values = payload.get("values") if isinstance(payload.get("values"), dict) else {}
        return cls(timestamp=str(payload.get("timestamp") or ""), values=dict(values))


@dataclass(frozen=True, slots=True)
class CriterionResult:
    metric: str
    comparator: Comparator
    threshold: float
    actual: float | None
    ok: bool
    reason: str = ""

    @property
    def delta(self) -> float | None:
        # positive: metric must rise, negative: metric must fall
        if self.actual is None:
            return None
        return self.threshold - self.actual

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "comparator": self.comparator.value,
            "threshold": self.threshold,
            "actual": self.actual,
            "ok": self.ok,
            "delta": self.delta,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class CriteriaVerdict:
    phase_id: str
    ready: bool
    passed: list[CriterionResult] = field(default_factory=list)
    failed: list[CriterionResult] = field(default_factory=list)
    required: int = 0

    @property
    def total(self) -> int:
        return len(self.passed) + len(self.failed)

    @property
    def score(self) -> float:
        if self.total == 0:
            return 1.0
        return len(self.passed) / self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "ready": self.ready,
            "score": round(self.score, 6),
            "passed_count": len(self.passed),
            "total": self.total,
            "required": self.required,
            "passed": [row.to_dict() for row in self.passed],
            "failed": [row.to_dict() for row in self.failed],
        }


@dataclass(frozen=True, slots=True)
class CandidateMarket:
    identifier: str
    population: int = 0
    density: float = 0.0
    growth: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"identifier": self.identifier, "population": self.population, "density": self.density, "growth": self.growth}


@dataclass(frozen=True, slots=True)
class MarketSelection:
    markets: list[str]
    source: MarketSource


@dataclass(frozen=True, slots=True)
class TransitionEvent:
    timestamp: str
    from_phase_id: str
    to_phase_id: str
    metrics_snapshot: MetricsSnapshot
    markets_activated: list[str] = field(default_factory=list)
    features_enabled: list[str] = field(default_factory=list)
    score: float = 1.0
    market_source: str = MarketSource.EXPLICIT.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "fromPhase": self.from_phase_id,
            "toPhase": self.to_phase_id,
            "metricsSnapshot": self.metrics_snapshot.to_dict(),
            "marketsActivated": list(self.markets_activated),
            "featuresEnabled": list(self.features_enabled),
            "score": self.score,
            "marketSource": self.market_source,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TransitionEvent":
        snapshot = payload.get("metricsSnapshot") if isinstance(payload.get("metricsSnapshot"), dict) else {}
        return cls(
            timestamp=str(payload.get("timestamp") or ""),
            from_phase_id=str(payload.get("fromPhase") or ""),
            to_phase_id=str(payload.get("toPhase") or ""),
            metrics_snapshot=MetricsSnapshot.from_dict(snapshot),
            markets_activated=[str(x) for x in payload.get("marketsActivated") or []],
            features_enabled=[str(x) for x in payload.get("featuresEnabled") or []],
            score=float(payload.get("score", 1.0)),
            market_source=str(payload.get("marketSource") or MarketSource.EXPLICIT.value),
        )


@dataclass(slots=True)
class EngineState:
    current_phase_id: str
    active_markets: list[str] = field(default_factory=list)
    enabled_features: list[str] = field(default_factory=list)
    transition_history: list[TransitionEvent] = field(default_factory=list)
    last_evaluation_timestamp: str | None = None
    created_at: str = field(default_factory=utc_now_iso)

    def copy(self) -> "EngineState":
        return EngineState(
            current_phase_id=self.current_phase_id,
            active_markets=list(self.active_markets),
            enabled_features=list(self.enabled_features),
            transition_history=list(self.transition_history),
            last_evaluation_timestamp=self.last_evaluation_timestamp,
            created_at=self.created_at,
        )

    def fingerprint(self) -> tuple[Any, ...]:
        """Identity of the phase-bearing fields; bookkeeping timestamps are excluded."""
        return (
            self.current_phase_id,
            tuple(self.active_markets),
            tuple(self.enabled_features),
            tuple((event.timestamp, event.to_phase_id) for event in self.transition_history),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentPhase": self.current_phase_id,
            "activeMarkets": list(self.active_markets),
            "enabledFeatures": list(self.enabled_features),
            "transitionHistory": [event.to_dict() for event in self.transition_history],
            "lastEvaluationTimestamp": self.last_evaluation_timestamp,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "EngineState":
        history = payload.get("transitionHistory") if isinstance(payload.get("transitionHistory"), list) else []
        return cls(
            current_phase_id=str(payload.get("currentPhase") or ""),
            active_markets=_dedupe(payload.get("activeMarkets") or []),
            enabled_features=_dedupe(payload.get("enabledFeatures") or []),
            transition_history=[TransitionEvent.from_dict(row) for row in history if isinstance(row, dict)],
            last_evaluation_timestamp=payload.get("lastEvaluationTimestamp"),
            created_at=str(payload.get("createdAt") or utc_now_iso()),
        )


@dataclass(frozen=True, slots=True)
class TransitionResult:
    terminal: bool
    event: TransitionEvent | None = None
    state: EngineState | None = None


@dataclass(frozen=True, slots=True)
class Recommendation:
    action: str
    target_metric: str
    expected_impact: str
    timeline: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "targetMetric": self.target_metric,
            "expectedImpact": self.expected_impact,
            "timeline": self.timeline,
        }


@dataclass(frozen=True, slots=True)
class Advisory:
    timestamp: str
    phase_id: str
    failed: list[CriterionResult]
    recommendations: list[Recommendation]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "phase": self.phase_id,
            "failedCriteria": [row.to_dict() for row in self.failed],
            "recommendations": [row.to_dict() for row in self.recommendations],
        }


@dataclass(slots=True)
class RunReport:
    outcome: RunOutcome
    started_at: str
    finished_at: str | None = None
    trigger: str = "scheduled"
    phase_before: str | None = None
    phase_after: str | None = None
    verdict: CriteriaVerdict | None = None
    event: TransitionEvent | None = None
    advisory: Advisory | None = None
    notified: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "trigger": self.trigger,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "phase_before": self.phase_before,
            "phase_after": self.phase_after,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "event": self.event.to_dict() if self.event else None,
            "advisory": self.advisory.to_dict() if self.advisory else None,
            "notified": self.notified,
            "error": self.error,
        }


def _dedupe(values: Any) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for raw in values:
        item = str(raw)
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
