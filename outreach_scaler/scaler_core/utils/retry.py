from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from scaler_core.errors import CollaboratorTimeout, RetryExhausted
from scaler_core.utils.logs import log_event


T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 2
    base_delay_sec: float = 1.0
    max_delay_sec: float = 30.0
    jitter_sec: float = 0.25
    timeout_sec: float | None = 30.0

    def delay_for(self, attempt: int, rand: float = 0.0) -> float:
        backoff = min(self.max_delay_sec, self.base_delay_sec * (2 ** attempt))
        return backoff + max(0.0, min(1.0, rand)) * self.jitter_sec

    @classmethod
    def from_config(cls, cfg: object) -> "RetryPolicy":
        return cls(
            max_attempts=int(getattr(cfg, "max_attempts")),
            base_delay_sec=float(getattr(cfg, "base_delay_sec")),
            max_delay_sec=float(getattr(cfg, "max_delay_sec")),
            jitter_sec=float(getattr(cfg, "jitter_sec")),
            timeout_sec=float(getattr(cfg, "timeout_sec")),
        )


def _call_with_timeout(name: str, fn: Callable[[], T], timeout_sec: float | None) -> T:
    """Run ``fn`` on a daemon thread and wait at most ``timeout_sec``.

    A call that times out is abandoned, not interrupted: it keeps running on
    its daemon thread until the collaborator's own I/O timeout ends it, and
    never holds up interpreter shutdown.
    """
    if timeout_sec is None:
        return fn()
    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = fn()
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name=f"call-{name}", daemon=True)
    worker.start()
    worker.join(timeout_sec)
    if worker.is_alive():
        raise CollaboratorTimeout(name, f"no answer within {timeout_sec}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def call_with_retry(
    name: str,
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """Run ``fn`` with a per-attempt timeout and exponential backoff between attempts.

    Raises ``RetryExhausted`` once ``policy.max_attempts`` attempts have failed.
    """
    attempts = max(1, int(policy.max_attempts))
    last_error: BaseException | None = None
    for attempt in range(attempts):
        try:
            return _call_with_timeout(name, fn, policy.timeout_sec)
        except Exception as exc:
            last_error = exc
            log_event(
                logger,
                "collaborator_call_failed",
                level=logging.WARNING,
                collaborator=name,
                attempt=attempt + 1,
                max_attempts=attempts,
                error=str(exc),
            )
            if attempt + 1 < attempts:
                sleep(policy.delay_for(attempt, rand()))
    raise RetryExhausted(name, attempts, last_error)
