from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Sequence

import requests

from scaler_core.collaborators.ports import Notifier
from scaler_core.errors import CollaboratorError
from scaler_core.types import Advisory, CriteriaVerdict, TransitionEvent, utc_now_iso
from scaler_core.utils.logs import log_event

if TYPE_CHECKING:
    from scaler_core.phases.catalog import PhaseDefinition


logger = logging.getLogger(__name__)

MessageType = Literal["transition", "optimization"]


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    type: MessageType
    phase_before: str
    criteria_breakdown: dict[str, Any]
    phase_after: str | None = None
    markets_activated: list[str] | None = None
    features_enabled: list[str] | None = None
    recommendations: list[dict[str, Any]] | None = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "phaseBefore": self.phase_before,
            "criteriaBreakdown": self.criteria_breakdown,
            "timestamp": self.timestamp,
        }
        if self.phase_after is not None:
            payload["phaseAfter"] = self.phase_after
        if self.markets_activated is not None:
            payload["marketsActivated"] = list(self.markets_activated)
        if self.features_enabled is not None:
            payload["featuresEnabled"] = list(self.features_enabled)
        if self.recommendations is not None:
            payload["recommendations"] = list(self.recommendations)
        return payload

    def render_text(self) -> str:
        breakdown = self.criteria_breakdown
        lines: list[str] = []
        if self.type == "transition":
            lines.append(f"Scaling event: {self.phase_before} -> {self.phase_after}")
            lines.append(f"Readiness: {breakdown.get('passed_count')}/{breakdown.get('total')} criteria passed")
            lines.append(f"New markets ({len(self.markets_activated or [])}): {', '.join(self.markets_activated or []) or '-'}")
            lines.append(f"New features: {', '.join(self.features_enabled or []) or '-'}")
        else:
            lines.append(f"Not ready to scale from {self.phase_before}")
            lines.append(f"Readiness: {breakdown.get('passed_count')}/{breakdown.get('total')} (need {breakdown.get('required')})")
            for row in breakdown.get("failed") or []:
                lines.append(f"  x {row.get('metric')}: {row.get('actual')} (need {row.get('comparator')} {row.get('threshold')})")
            for idx, rec in enumerate(self.recommendations or [], start=1):
                lines.append(f"{idx}. {rec.get('action')} [{rec.get('targetMetric')}] {rec.get('expectedImpact')} / {rec.get('timeline')}")
        return "\n".join(lines)


def build_transition_message(event: TransitionEvent, verdict: CriteriaVerdict) -> NotificationMessage:
    return NotificationMessage(
        type="transition",
        phase_before=event.from_phase_id,
        phase_after=event.to_phase_id,
        criteria_breakdown=verdict.to_dict(),
        markets_activated=list(event.markets_activated),
        features_enabled=list(event.features_enabled),
    )


def build_optimization_message(phase: PhaseDefinition, verdict: CriteriaVerdict, advisory: Advisory) -> NotificationMessage:
    return NotificationMessage(
        type="optimization",
        phase_before=phase.id,
        criteria_breakdown=verdict.to_dict(),
        recommendations=[row.to_dict() for row in advisory.recommendations],
    )


class LogNotifier:
    def __init__(self, *, keep: int = 50) -> None:
        self.sent: deque[NotificationMessage] = deque(maxlen=keep)

    def send(self, message: NotificationMessage) -> None:
        self.sent.append(message)
        log_event(logger, "notification", **message.to_payload())


class TelegramNotifier:
    def __init__(self, *, bot_token: str, chat_id: str, timeout: float = 8.0, session: requests.Session | None = None) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, message: NotificationMessage) -> None:
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        try:
            res = self.session.post(url, json={"chat_id": self.chat_id, "text": message.render_text()}, timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as exc:
            raise CollaboratorError("telegram", str(exc)) from exc


class WebhookNotifier:
    def __init__(self, *, url: str, timeout: float = 8.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, message: NotificationMessage) -> None:
        try:
            res = self.session.post(self.url, json=message.to_payload(), timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as exc:
            raise CollaboratorError("webhook", str(exc)) from exc


class FanoutNotifier:
    """Delivers to every channel; one failing channel does not stop the others."""

    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self.notifiers = list(notifiers)

    def send(self, message: NotificationMessage) -> None:
        errors: list[str] = []
        for notifier in self.notifiers:
            try:
                notifier.send(message)
            except Exception as exc:
                errors.append(f"{type(notifier).__name__}: {exc}")
        if errors and len(errors) == len(self.notifiers):
            raise CollaboratorError("notifier", "; ".join(errors))
        for err in errors:
            log_event(logger, "notification_channel_failed", level=logging.WARNING, error=err)
