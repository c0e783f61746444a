"""Contracts for the collaborators the phase engine talks to.

Each role is a Protocol with the single method the engine calls. Concrete
implementations are checked against these once, when the engine context is
built, never at call time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from scaler_core.collaborators.notify import NotificationMessage
    from scaler_core.phases.catalog import PhaseDefinition
    from scaler_core.types import CandidateMarket, CriterionResult


@runtime_checkable
class MetricsProvider(Protocol):
    def fetch(self) -> Mapping[str, Any]:
        ...


@runtime_checkable
class MarketRanker(Protocol):
    def rank(self, pool: Sequence[CandidateMarket], n: int, phase: PhaseDefinition) -> Sequence[Any]:
        ...


@runtime_checkable
class RecommendationSource(Protocol):
    def recommend(self, phase: PhaseDefinition, failed: Sequence[CriterionResult], limit: int) -> Sequence[Any]:
        ...


@runtime_checkable
class Notifier(Protocol):
    def send(self, message: NotificationMessage) -> None:
        ...


def ensure_implements(obj: object, protocol: type, role: str) -> None:
    if not isinstance(obj, protocol):
        raise TypeError(f"{role} collaborator {type(obj).__name__} does not implement {protocol.__name__}")
    method_names = [name for name in ("fetch", "rank", "recommend", "send") if hasattr(protocol, name)]
    for name in method_names:
        if not callable(getattr(obj, name, None)):
            raise TypeError(f"{role} collaborator {type(obj).__name__}.{name} is not callable")
