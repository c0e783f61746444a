from __future__ import annotations

import logging
from typing import Iterable

from scaler_core.persistence.state_store import StateStore
from scaler_core.phases.catalog import PhaseCatalog
from scaler_core.phases.markets import MarketSelector
from scaler_core.types import CriteriaVerdict, EngineState, MetricsSnapshot, TransitionEvent, TransitionResult, utc_now_iso
from scaler_core.utils.logs import log_event


logger = logging.getLogger(__name__)


def _union(existing: Iterable[str], new: Iterable[str]) -> tuple[list[str], list[str]]:
    merged = list(existing)
    seen = set(merged)
    added: list[str] = []
    for item in new:
        if item not in seen:
            seen.add(item)
            merged.append(item)
            added.append(item)
    return merged, added


class TransitionExecutor:
    """Sole writer of EngineState.

    A transition is built on a copy of the state and only becomes the live
    state once the store has written it.
    """

    def __init__(self, *, catalog: PhaseCatalog, selector: MarketSelector, store: StateStore) -> None:
        self.catalog = catalog
        self.selector = selector
        self.store = store

    def execute(self, state: EngineState, verdict: CriteriaVerdict, snapshot: MetricsSnapshot) -> TransitionResult:
        current = self.catalog.get(state.current_phase_id)
        if verdict.phase_id != current.id:
            raise ValueError(f"Verdict is for phase {verdict.phase_id}, engine is in {current.id}")
        if not verdict.ready:
            raise ValueError(f"Phase {current.id} is not ready; refusing to transition")
        nxt = self.catalog.next_after(current.id)
        if nxt is None:
            log_event(logger, "terminal_phase_ready", phase=current.id)
            return TransitionResult(terminal=True, state=state)

        selection = self.selector.select(nxt, state.active_markets)
        draft = state.copy()
        draft.active_markets, markets_added = _union(draft.active_markets, selection.markets)
        draft.enabled_features, features_added = _union(draft.enabled_features, nxt.feature_set)
        draft.current_phase_id = nxt.id
        event = TransitionEvent(
            timestamp=utc_now_iso(),
            from_phase_id=current.id,
            to_phase_id=nxt.id,
            metrics_snapshot=snapshot,
            markets_activated=markets_added,
            features_enabled=features_added,
            score=round(verdict.score, 6),
            market_source=selection.source.value,
        )
        draft.transition_history.append(event)

        self.store.write(draft)

        state.current_phase_id = draft.current_phase_id
        state.active_markets = draft.active_markets
        state.enabled_features = draft.enabled_features
        state.transition_history = draft.transition_history
        log_event(
            logger,
            "phase_transition_committed",
            from_phase=current.id,
            to_phase=nxt.id,
            markets_activated=markets_added,
            features_enabled=features_added,
            market_source=selection.source.value,
        )
        return TransitionResult(terminal=False, event=event, state=state)

    def record_evaluation(self, state: EngineState, timestamp: str) -> None:
        """Stamp the evaluation time without rewriting phase, markets, features or history."""
        self.store.record_evaluation(timestamp)
        state.last_evaluation_timestamp = timestamp
