from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import requests

from scaler_core.collaborators.llm import ChatCompletionsClient, LlmMarketRanker, LlmRecommendationSource
from scaler_core.collaborators.metrics import FileMetricsProvider, HttpMetricsProvider, build_snapshot
from scaler_core.collaborators.notify import FanoutNotifier, LogNotifier, NotificationMessage, WebhookNotifier
from scaler_core.collaborators.ports import MetricsProvider, ensure_implements
from scaler_core.errors import CollaboratorError
from scaler_core.persistence.state_store import AdvisoryLog
from scaler_core.phases.advisor import OptimizerAdvisor, parse_recommendation
from scaler_core.phases.catalog import PhaseCatalog
from scaler_core.phases.criteria import CriteriaEvaluator
from scaler_core.phases.markets import CandidateDirectory
from scaler_core.types import MetricsSnapshot
from scaler_core.utils.retry import RetryPolicy


class _FakeResponse:
    def __init__(self, payload: Any, status: int = 200) -> None:
        self._payload = payload
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> Any:
        return self._payload


class _FakeSession:
    def __init__(self, payload: Any, status: int = 200) -> None:
        self.payload = payload
        self.status = status
        self.requests: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.requests.append({"url": url, **kwargs})
        return _FakeResponse(self.payload, self.status)

    def get(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.requests.append({"url": url, **kwargs})
        return _FakeResponse(self.payload, self.status)


def _completion(content: dict[str, Any]) -> dict[str, Any]:
    return {"choices": [{"message": {"content": json.dumps(content)}}]}


def _message() -> NotificationMessage:
    return NotificationMessage(type="transition", phase_before="mvp", phase_after="automation", criteria_breakdown={"passed_count": 5, "total": 5})


def test_llm_ranker_posts_prompt_and_returns_markets() -> None:
    session = _FakeSession(_completion({"markets": ["Miami, FL", "Chicago, IL"]}))
    client = ChatCompletionsClient(api_key="sk-test", base_url="https://llm.example/v1/", session=session)
    phase = PhaseCatalog.default().get("scale")
    pool = CandidateDirectory.default().all()

    assert LlmMarketRanker(client).rank(pool, 2, phase) == ["Miami, FL", "Chicago, IL"]
    sent = session.requests[0]
    assert sent["url"] == "https://llm.example/v1/chat/completions"
    assert sent["headers"]["Authorization"] == "Bearer sk-test"
    assert "Select exactly 2 markets" in sent["json"]["messages"][0]["content"]


def test_llm_non_json_completion_is_a_collaborator_error() -> None:
    session = _FakeSession({"choices": [{"message": {"content": "sure! here you go"}}]})
    client = ChatCompletionsClient(api_key="sk-test", session=session)
    with pytest.raises(CollaboratorError):
        client.complete_json("hi")


def test_llm_recommendations_feed_the_advisor(tmp_path: Path) -> None:
    items = [
        {"action": "Launch referral program", "targetMetric": "payingCustomers", "expectedImpact": "+8 customers", "timeline": "3 weeks"},
        {"action": "", "targetMetric": "churnRate", "expectedImpact": "-1%", "timeline": "1 month"},
        "not an object",
        {"action": "Raise prices", "target": "monthlyRecurringRevenue", "impact": 500, "timeline": "now"},
    ]
    client = ChatCompletionsClient(api_key="sk-test", session=_FakeSession(_completion({"optimizations": items})))
    phase = PhaseCatalog.default().get("mvp")
    verdict = CriteriaEvaluator().evaluate(phase, MetricsSnapshot(timestamp="t", values={"daysRunning": 10}))
    log = AdvisoryLog(tmp_path / "advisories.json")
    advisor = OptimizerAdvisor(source=LlmRecommendationSource(client), log=log, retry_policy=RetryPolicy(max_attempts=1, timeout_sec=None))

    advisory = advisor.advise(phase, verdict)

    assert [rec.action for rec in advisory.recommendations] == ["Launch referral program", "Raise prices"]
    assert advisory.recommendations[1].expected_impact == "500"
    assert log.load()[0]["recommendations"][0]["targetMetric"] == "payingCustomers"


def test_advisor_refuses_ready_verdicts(tmp_path: Path) -> None:
    phase = PhaseCatalog.default().get("mvp").model_copy(update={"success_criteria": []})
    verdict = CriteriaEvaluator().evaluate(phase, MetricsSnapshot(timestamp="t", values={}))
    advisor = OptimizerAdvisor(source=None, log=AdvisoryLog(tmp_path / "a.json"))
    with pytest.raises(ValueError):
        advisor.advise(phase, verdict)


def test_parse_recommendation_requires_every_field() -> None:
    assert parse_recommendation({"action": "x", "targetMetric": "y", "expectedImpact": "z"}) is None
    assert parse_recommendation(["action"]) is None


def test_file_metrics_provider_reads_json_and_yaml(tmp_path: Path) -> None:
    json_path = tmp_path / "metrics.json"
    json_path.write_text(json.dumps({"payingCustomers": 12}), encoding="utf-8")
    yaml_path = tmp_path / "metrics.yaml"
    yaml_path.write_text("churnRate: 4.5\n", encoding="utf-8")

    assert FileMetricsProvider(json_path).fetch() == {"payingCustomers": 12}
    assert FileMetricsProvider(yaml_path).fetch() == {"churnRate": 4.5}
    with pytest.raises(CollaboratorError):
        FileMetricsProvider(tmp_path / "absent.json").fetch()


def test_http_metrics_provider_unwraps_envelope() -> None:
    session = _FakeSession({"data": {"payingCustomers": 30}})
    provider = HttpMetricsProvider(url="https://metrics.example/kpis", token="t0k", envelope_key="data", session=session)
    assert provider.fetch() == {"payingCustomers": 30}
    assert session.requests[0]["headers"]["Authorization"] == "Bearer t0k"

    with pytest.raises(CollaboratorError):
        HttpMetricsProvider(url="https://metrics.example/kpis", session=_FakeSession({}, status=502)).fetch()


def test_snapshot_drops_unknown_metrics() -> None:
    snapshot = build_snapshot({"payingCustomers": 3, "favoriteColor": "blue"})
    assert snapshot.values == {"payingCustomers": 3}


def test_webhook_failure_is_a_collaborator_error() -> None:
    notifier = WebhookNotifier(url="https://hooks.example/x", session=_FakeSession({}, status=500))
    with pytest.raises(CollaboratorError):
        notifier.send(_message())


def test_fanout_survives_one_failing_channel() -> None:
    healthy = LogNotifier()
    broken = WebhookNotifier(url="https://hooks.example/x", session=_FakeSession({}, status=500))
    FanoutNotifier([broken, healthy]).send(_message())
    assert len(healthy.sent) == 1
    assert "mvp -> automation" in healthy.sent[0].render_text()


def test_collaborators_are_checked_at_composition_time() -> None:
    class NotAProvider:
        def pull(self) -> dict[str, Any]:
            return {}

    with pytest.raises(TypeError, match="metrics"):
        ensure_implements(NotAProvider(), MetricsProvider, "metrics")
    ensure_implements(FileMetricsProvider("x.json"), MetricsProvider, "metrics")


def test_log_notifier_keeps_a_bounded_history() -> None:
    notifier = LogNotifier(keep=3)
    for _ in range(5):
        notifier.send(_message())
    assert len(notifier.sent) == 3
