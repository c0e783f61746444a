from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from scaler_core.collaborators.metrics import build_snapshot
from scaler_core.collaborators.notify import NotificationMessage, build_optimization_message, build_transition_message
from scaler_core.collaborators.ports import MetricsProvider, Notifier
from scaler_core.errors import CollaboratorError, StateCorruptError, StatePersistError
from scaler_core.persistence.state_store import AdvisoryLog, StateStore
from scaler_core.phases.advisor import OptimizerAdvisor
from scaler_core.phases.catalog import PhaseCatalog
from scaler_core.phases.criteria import CriteriaEvaluator
from scaler_core.phases.executor import TransitionExecutor
from scaler_core.types import EngineState, MetricsSnapshot, RunOutcome, RunReport, utc_now_iso
from scaler_core.utils.logs import log_event
from scaler_core.utils.retry import RetryPolicy, call_with_retry


logger = logging.getLogger(__name__)


def _days_since(iso_ts: str, now: datetime) -> float | None:
    try:
        then = datetime.fromisoformat(iso_ts)
    except (TypeError, ValueError):
        return None
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    return round(max(0.0, (now - then).total_seconds() / 86400.0), 3)


@dataclass(slots=True)
class EngineParts:
    catalog: PhaseCatalog
    evaluator: CriteriaEvaluator
    executor: TransitionExecutor
    advisor: OptimizerAdvisor
    store: StateStore
    advisories: AdvisoryLog
    metrics_provider: MetricsProvider
    notifier: Notifier
    retry_policy: RetryPolicy


class PhaseEngine:
    """One evaluation run: fetch -> evaluate -> transition or advise -> notify -> stamp.

    Not thread-safe on its own; callers go through EvaluationScheduler, which
    guarantees a single run at a time across threads and processes. ``state``
    is only a cache of the persisted document, reloaded before every run.
    """

    def __init__(self, parts: EngineParts, *, sleep: Callable[[float], None] | None = None) -> None:
        self.parts = parts
        self._sleep = sleep
        self.state: EngineState = self.refresh()

    def refresh(self) -> EngineState:
        state = self.parts.store.load_or_create(
            known_phases={row.id for row in self.parts.catalog},
            initial_phase=self.parts.catalog.first.id,
        )
        self.state = state
        return state

    @property
    def catalog(self) -> PhaseCatalog:
        return self.parts.catalog

    def _retry(self, name: str, fn: Callable[[], Any]) -> Any:
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        return call_with_retry(name, fn, self.parts.retry_policy, **kwargs)

    def _snapshot(self, state: EngineState) -> MetricsSnapshot:
        raw = self._retry("metrics_provider", self.parts.metrics_provider.fetch)
        if not isinstance(raw, Mapping):
            raise CollaboratorError("metrics_provider", f"expected a mapping, got {type(raw).__name__}")
        values = dict(raw)
        if "daysInCurrentPhase" not in values:
            since = state.transition_history[-1].timestamp if state.transition_history else state.created_at
            days = _days_since(since, datetime.now(timezone.utc))
            if days is not None:
                values["daysInCurrentPhase"] = days
        return build_snapshot(values)

    def _notify(self, message: NotificationMessage) -> bool:
        try:
            self._retry("notifier", lambda: self.parts.notifier.send(message))
        except CollaboratorError as exc:
            log_event(logger, "notification_failed", level=logging.ERROR, type=message.type, error=str(exc))
            return False
        return True

    def _stamp(self, state: EngineState, report: RunReport) -> None:
        try:
            self.parts.executor.record_evaluation(state, str(report.finished_at))
        except (StatePersistError, StateCorruptError) as exc:
            log_event(logger, "evaluation_stamp_failed", level=logging.WARNING, error=str(exc))

    def run_once(self, *, trigger: str = "scheduled") -> RunReport:
        state = self.refresh()
        phase = self.catalog.get(state.current_phase_id)
        report = RunReport(outcome=RunOutcome.ABORTED, started_at=utc_now_iso(), trigger=trigger, phase_before=phase.id, phase_after=phase.id)
        log_event(logger, "evaluation_started", trigger=trigger, phase=phase.id)

        try:
            snapshot = self._snapshot(state)
        except CollaboratorError as exc:
            report.error = str(exc)
            report.finished_at = utc_now_iso()
            log_event(logger, "evaluation_aborted", level=logging.WARNING, phase=phase.id, error=str(exc))
            return report

        verdict = self.parts.evaluator.evaluate(phase, snapshot)
        report.verdict = verdict
        message: NotificationMessage | None = None

        if verdict.ready:
            try:
                result = self.parts.executor.execute(state, verdict, snapshot)
            except StatePersistError as exc:
                report.outcome = RunOutcome.FAILED
                report.error = str(exc)
                report.finished_at = utc_now_iso()
                log_event(logger, "transition_discarded", level=logging.ERROR, phase=phase.id, error=str(exc))
                return report
            if result.terminal or result.event is None:
                report.outcome = RunOutcome.TERMINAL
            else:
                report.outcome = RunOutcome.TRANSITIONED
                report.event = result.event
                report.phase_after = result.event.to_phase_id
                message = build_transition_message(result.event, verdict)
        else:
            advisory = self.parts.advisor.advise(phase, verdict)
            report.outcome = RunOutcome.ADVISED
            report.advisory = advisory
            message = build_optimization_message(phase, verdict, advisory)

        if message is not None:
            report.notified = self._notify(message)

        report.finished_at = utc_now_iso()
        self._stamp(state, report)
        log_event(
            logger,
            "evaluation_finished",
            trigger=trigger,
            outcome=report.outcome.value,
            phase_before=report.phase_before,
            phase_after=report.phase_after,
            notified=report.notified,
        )
        return report

    def targeting_criteria(self) -> dict[str, Any]:
        state = self.refresh()
        phase = self.catalog.get(state.current_phase_id)
        return {
            "phase": phase.id,
            "phase_name": phase.name,
            "targeting": dict(phase.targeting),
            "channels": list(phase.channels),
            "messaging_template": phase.messaging_template,
            "active_markets": list(state.active_markets),
            "enabled_features": list(state.enabled_features),
        }

    def status(self) -> dict[str, Any]:
        state = self.refresh()
        phase = self.catalog.get(state.current_phase_id)
        nxt = self.catalog.next_after(phase.id)
        return {
            "current_phase": phase.id,
            "phase_name": phase.name,
            "order": phase.order,
            "next_phase": nxt.id if nxt else None,
            "terminal": nxt is None,
            "target_kpis": dict(phase.target_kpis),
            "active_markets": list(state.active_markets),
            "enabled_features": list(state.enabled_features),
            "transitions": len(state.transition_history),
            "last_evaluation_timestamp": state.last_evaluation_timestamp,
            "pass_fraction": self.parts.evaluator.pass_fraction,
        }

    def history(self) -> list[dict[str, Any]]:
        return [event.to_dict() for event in self.refresh().transition_history]

    def advisories(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self.parts.advisories.load()
        return rows[-max(1, limit) :][::-1]
