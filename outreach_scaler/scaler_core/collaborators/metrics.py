from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

import requests
import yaml

from scaler_core.errors import CollaboratorError
from scaler_core.types import MetricsSnapshot, utc_now_iso
from scaler_core.utils.logs import log_event


logger = logging.getLogger(__name__)

METRIC_VOCABULARY: dict[str, str] = {
    "daysRunning": "days since the operation started",
    "daysInCurrentPhase": "days since the last phase transition",
    "payingCustomers": "customers with an active subscription",
    "monthlyRecurringRevenue": "MRR in USD",
    "conversionRate": "outreach to customer conversion, percent",
    "churnRate": "monthly churn, percent",
    "systemUptime": "trailing uptime, percent",
    "customerSatisfaction": "average rating, 0-5",
    "activeMarkets": "number of active markets",
    "marketPenetration": "share of addressable market, percent",
}


def build_snapshot(values: Mapping[str, Any], *, timestamp: str | None = None) -> MetricsSnapshot:
    """Keep known metrics only; unknown names are dropped with a debug log."""
    known: dict[str, float | bool] = {}
    for key, value in values.items():
        if key not in METRIC_VOCABULARY:
            log_event(logger, "metric_ignored", level=logging.DEBUG, metric=key)
            continue
        known[key] = value
    return MetricsSnapshot(timestamp=timestamp or utc_now_iso(), values=known)


class StaticMetricsProvider:
    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self.values = dict(values or {})

    def fetch(self) -> Mapping[str, Any]:
        return dict(self.values)


class FileMetricsProvider:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def fetch(self) -> Mapping[str, Any]:
        if not self.path.exists():
            raise CollaboratorError("metrics_file", f"{self.path} not found")
        text = self.path.read_text(encoding="utf-8")
        try:
            payload = json.loads(text) if self.path.suffix == ".json" else yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise CollaboratorError("metrics_file", f"unreadable {self.path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise CollaboratorError("metrics_file", f"{self.path} must hold a mapping")
        return payload


class HttpMetricsProvider:
    def __init__(
        self,
        *,
        url: str,
        token: str | None = None,
        envelope_key: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.envelope_key = envelope_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self) -> Mapping[str, Any]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            res = self.session.get(self.url, headers=headers, timeout=self.timeout)
            res.raise_for_status()
            payload = res.json()
        except (requests.RequestException, ValueError) as exc:
            raise CollaboratorError("metrics_http", str(exc)) from exc
        if self.envelope_key and isinstance(payload, dict):
            payload = payload.get(self.envelope_key)
        if not isinstance(payload, dict):
            raise CollaboratorError("metrics_http", "response is not a JSON object")
        return payload
