from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from scaler_core.collaborators.metrics import StaticMetricsProvider
from scaler_core.config import EngineConfig
from scaler_core.context import EngineContext, build_context
from scaler_core.errors import CollaboratorError, StatePersistError
from scaler_core.persistence.state_store import StateStore
from scaler_core.phases.catalog import PhaseCatalog
from scaler_core.types import EngineState, RunOutcome


SCENARIO_A = {
    "daysRunning": 45,
    "payingCustomers": 20,
    "monthlyRecurringRevenue": 4000,
    "conversionRate": 10,
    "churnRate": 5,
    "systemUptime": 99,
}

LAUNCH_CRITERIA = [
    {"metric": "daysRunning", "comparator": ">=", "threshold": 45},
    {"metric": "payingCustomers", "comparator": ">=", "threshold": 20},
    {"metric": "monthlyRecurringRevenue", "comparator": ">=", "threshold": 4000},
    {"metric": "conversionRate", "comparator": ">=", "threshold": 10},
    {"metric": "churnRate", "comparator": "<=", "threshold": 5},
]

TWO_PHASE_ROWS = [
    {
        "id": "launch",
        "order": 1,
        "name": "Launch",
        "market_policy": {"explicit": ["A"]},
        "feature_set": ["email_outreach"],
        "success_criteria": LAUNCH_CRITERIA,
    },
    {
        "id": "expand",
        "order": 2,
        "name": "Expand",
        "market_policy": {"explicit": ["A", "B", "C", "D", "E"]},
        "feature_set": ["ab_testing", "email_outreach", "segmentation"],
        "success_criteria": LAUNCH_CRITERIA,
    },
]


class FakeNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[Any] = []
        self.calls = 0

    def send(self, message: Any) -> None:
        self.calls += 1
        if self.fail:
            raise CollaboratorError("fake_notifier", "smtp down")
        self.sent.append(message)


class RecordingRecommender:
    def __init__(self, items: list[Any] | None = None) -> None:
        self.items = items if items is not None else [
            {"action": "Add SMS follow-ups", "targetMetric": "payingCustomers", "expectedImpact": "+5 customers", "timeline": "2 weeks"},
        ]
        self.calls: list[list[Any]] = []

    def recommend(self, phase: Any, failed: Any, limit: int) -> list[Any]:
        self.calls.append(list(failed))
        return self.items


class FlakyStore(StateStore):
    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.fail = False

    def write(self, state: EngineState) -> None:
        if self.fail:
            raise StatePersistError("disk full")
        super().write(state)


class _Crash(BaseException):
    pass


class CrashingNotifier:
    def send(self, message: Any) -> None:
        raise _Crash("process killed")


def engine_config(tmp_path: Path, **overrides: Any) -> EngineConfig:
    payload: dict[str, Any] = {
        "storage": {"user_data_dir": str(tmp_path / "user_data")},
        "retry": {"max_attempts": 2, "base_delay_sec": 0, "max_delay_sec": 0, "jitter_sec": 0, "timeout_sec": 5},
    }
    payload.update(overrides)
    return EngineConfig.model_validate(payload)


def build_engine(
    tmp_path: Path,
    metrics: dict[str, Any] | Any,
    *,
    rows: list[dict[str, Any]] | None = None,
    recommender: Any = None,
    notifier: Any = None,
    store: StateStore | None = None,
    **overrides: Any,
) -> EngineContext:
    provider = StaticMetricsProvider(metrics) if isinstance(metrics, dict) else metrics
    return build_context(
        engine_config(tmp_path, **overrides),
        catalog=PhaseCatalog.from_rows(rows or TWO_PHASE_ROWS),
        metrics_provider=provider,
        recommender=recommender or RecordingRecommender(),
        notifier=notifier or FakeNotifier(),
        store=store,
        sleep=lambda _: None,
    )


def _state_file(tmp_path: Path) -> dict[str, Any]:
    return json.loads((tmp_path / "user_data" / "scaling" / "state.json").read_text(encoding="utf-8"))


def test_scenario_a_all_pass_transitions_once(tmp_path: Path) -> None:
    ctx = build_engine(tmp_path, SCENARIO_A)
    report = ctx.engine.run_once()

    assert report.outcome is RunOutcome.TRANSITIONED
    assert report.verdict is not None and report.verdict.ready
    assert ctx.engine.state.current_phase_id == "expand"
    assert len(ctx.engine.state.transition_history) == 1
    assert ctx.engine.state.active_markets == ["A", "B", "C", "D", "E"]
    assert ctx.engine.state.enabled_features == ["ab_testing", "email_outreach", "segmentation"]
    assert report.notified is True
    assert ctx.notifier.sent[0].type == "transition"
    assert ctx.notifier.sent[0].to_payload()["phaseAfter"] == "expand"

    persisted = _state_file(tmp_path)
    assert persisted["currentPhase"] == "expand"
    assert len(persisted["transitionHistory"]) == 1
    assert persisted["transitionHistory"][0]["metricsSnapshot"]["values"]["payingCustomers"] == 20


def test_scenario_b_boundary_four_of_five_is_ready(tmp_path: Path) -> None:
    ctx = build_engine(tmp_path, {**SCENARIO_A, "payingCustomers": 15})
    report = ctx.engine.run_once()

    assert report.verdict is not None
    assert report.verdict.score == pytest.approx(0.8)
    assert report.verdict.ready is True
    assert report.outcome is RunOutcome.TRANSITIONED


def test_scenario_c_below_boundary_advises_without_mutation(tmp_path: Path) -> None:
    recommender = RecordingRecommender()
    ctx = build_engine(tmp_path, {**SCENARIO_A, "payingCustomers": 15, "monthlyRecurringRevenue": 3000}, recommender=recommender)
    before = ctx.engine.state.fingerprint()

    report = ctx.engine.run_once()

    assert report.outcome is RunOutcome.ADVISED
    assert report.verdict is not None and report.verdict.ready is False
    assert ctx.engine.state.fingerprint() == before
    assert ctx.engine.state.current_phase_id == "launch"
    assert len(recommender.calls) == 1
    assert [row.metric for row in recommender.calls[0]] == ["payingCustomers", "monthlyRecurringRevenue"]
    assert recommender.calls[0][0].delta == pytest.approx(5.0)
    assert report.advisory is not None and len(report.advisory.recommendations) == 1
    assert ctx.notifier.sent[0].type == "optimization"
    assert ctx.engine.advisories()[0]["phase"] == "launch"
    assert _state_file(tmp_path)["transitionHistory"] == []


def test_one_transition_per_run_even_when_next_phase_would_pass(tmp_path: Path) -> None:
    three = [
        *TWO_PHASE_ROWS,
        {"id": "global", "order": 3, "name": "Global", "market_policy": {"explicit": ["F"]}, "success_criteria": []},
    ]
    ctx = build_engine(tmp_path, SCENARIO_A, rows=three)

    first = ctx.engine.run_once()
    assert first.outcome is RunOutcome.TRANSITIONED
    assert ctx.engine.state.current_phase_id == "expand"
    assert len(ctx.engine.state.transition_history) == 1

    markets_before = set(ctx.engine.state.active_markets)
    second = ctx.engine.run_once()
    assert second.outcome is RunOutcome.TRANSITIONED
    assert ctx.engine.state.current_phase_id == "global"
    assert len(ctx.engine.state.transition_history) == 2
    assert set(ctx.engine.state.active_markets) >= markets_before


def test_default_catalog_advances_mvp_to_automation_then_advises(tmp_path: Path) -> None:
    ctx = build_context(
        engine_config(tmp_path),
        metrics_provider=StaticMetricsProvider(SCENARIO_A),
        recommender=RecordingRecommender(),
        notifier=FakeNotifier(),
        sleep=lambda _: None,
    )
    assert ctx.engine.state.current_phase_id == "mvp"
    assert ctx.engine.state.active_markets == []

    first = ctx.engine.run_once()
    assert first.outcome is RunOutcome.TRANSITIONED
    assert ctx.engine.state.current_phase_id == "automation"
    assert len(ctx.engine.state.active_markets) == 10
    assert "ab_testing" in ctx.engine.state.enabled_features

    second = ctx.engine.run_once()
    assert second.outcome is RunOutcome.ADVISED
    assert ctx.engine.state.current_phase_id == "automation"
    assert {row.metric for row in second.verdict.failed} >= {"payingCustomers", "customerSatisfaction"}


def test_terminal_phase_is_idempotent(tmp_path: Path) -> None:
    ctx = build_engine(tmp_path, SCENARIO_A)
    ctx.engine.run_once()
    assert ctx.engine.state.current_phase_id == "expand"
    settled = ctx.engine.state.fingerprint()

    for _ in range(2):
        report = ctx.engine.run_once()
        assert report.outcome is RunOutcome.TERMINAL
        assert ctx.engine.state.fingerprint() == settled
    assert len(_state_file(tmp_path)["transitionHistory"]) == 1


def test_state_write_failure_discards_transition_and_skips_notification(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "user_data" / "scaling" / "state.json")
    notifier = FakeNotifier()
    ctx = build_engine(tmp_path, SCENARIO_A, store=store, notifier=notifier)
    store.fail = True

    report = ctx.engine.run_once()

    assert report.outcome is RunOutcome.FAILED
    assert "disk full" in (report.error or "")
    assert ctx.engine.state.current_phase_id == "launch"
    assert ctx.engine.state.transition_history == []
    assert ctx.engine.state.active_markets == []
    assert notifier.calls == 0
    assert _state_file(tmp_path)["currentPhase"] == "launch"

    store.fail = False
    retried = ctx.engine.run_once()
    assert retried.outcome is RunOutcome.TRANSITIONED
    assert len(ctx.engine.state.transition_history) == 1


def test_notification_failure_keeps_committed_transition(tmp_path: Path) -> None:
    notifier = FakeNotifier(fail=True)
    ctx = build_engine(tmp_path, SCENARIO_A, notifier=notifier)

    report = ctx.engine.run_once()

    assert report.outcome is RunOutcome.TRANSITIONED
    assert report.notified is False
    assert notifier.calls == 2
    assert _state_file(tmp_path)["currentPhase"] == "expand"


def test_metrics_failure_aborts_and_leaves_state_untouched(tmp_path: Path) -> None:
    class DownProvider:
        calls = 0

        def fetch(self) -> dict[str, Any]:
            DownProvider.calls += 1
            raise ConnectionError("metrics service unreachable")

    ctx = build_engine(tmp_path, DownProvider())
    before = _state_file(tmp_path)

    report = ctx.engine.run_once()

    assert report.outcome is RunOutcome.ABORTED
    assert DownProvider.calls == 2
    assert _state_file(tmp_path) == before
    assert ctx.engine.state.last_evaluation_timestamp is None


def test_scenario_e_restart_after_persist_before_notify(tmp_path: Path) -> None:
    ctx = build_engine(tmp_path, SCENARIO_A, notifier=CrashingNotifier())
    with pytest.raises(_Crash):
        ctx.engine.run_once()

    restarted = build_engine(tmp_path, SCENARIO_A)
    assert restarted.engine.state.current_phase_id == "expand"
    assert len(restarted.engine.state.transition_history) == 1

    report = restarted.engine.run_once()
    assert report.outcome is RunOutcome.TERMINAL
    assert len(restarted.engine.state.transition_history) == 1


def test_days_in_current_phase_is_derived_when_missing(tmp_path: Path) -> None:
    ctx = build_engine(tmp_path, SCENARIO_A)
    report = ctx.engine.run_once()
    assert report.event is not None
    assert "daysInCurrentPhase" in report.event.metrics_snapshot.values


def test_status_and_targeting(tmp_path: Path) -> None:
    ctx = build_engine(tmp_path, SCENARIO_A)
    status = ctx.engine.status()
    assert status["current_phase"] == "launch"
    assert status["next_phase"] == "expand"
    assert status["terminal"] is False
    assert status["pass_fraction"] == 0.8

    ctx.engine.run_once()
    targeting = ctx.engine.targeting_criteria()
    assert targeting["phase"] == "expand"
    assert targeting["active_markets"] == ["A", "B", "C", "D", "E"]
    assert ctx.engine.status()["last_evaluation_timestamp"] is not None


def test_advise_run_only_stamps_the_evaluation_time_on_disk(tmp_path: Path) -> None:
    build_engine(tmp_path, SCENARIO_A).engine.run_once()
    before = _state_file(tmp_path)
    ctx = build_engine(tmp_path, {**SCENARIO_A, "payingCustomers": 15, "monthlyRecurringRevenue": 3000})

    report = ctx.engine.run_once()

    assert report.outcome is RunOutcome.ADVISED
    after = _state_file(tmp_path)
    for key in ("currentPhase", "activeMarkets", "enabledFeatures", "transitionHistory", "createdAt"):
        assert json.dumps(after[key], sort_keys=True) == json.dumps(before[key], sort_keys=True)
    assert after["lastEvaluationTimestamp"] == report.finished_at
    assert ctx.engine.state.last_evaluation_timestamp == report.finished_at
