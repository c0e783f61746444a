from __future__ import annotations

import logging
import threading
import traceback

from scaler_core.phases.engine import PhaseEngine
from scaler_core.types import RunOutcome, RunReport, utc_now_iso
from scaler_core.utils.logs import log_event


logger = logging.getLogger(__name__)


class EvaluationScheduler:
    """Recurring timer plus on-demand trigger, funnelled through one single-flight guard.

    A firing that finds a run in progress, in this process or in another one
    sharing the state file, is dropped, not queued.
    """

    def __init__(self, engine: PhaseEngine, *, interval_sec: float, run_on_start: bool = False) -> None:
        if interval_sec <= 0:
            raise ValueError("interval_sec must be > 0")
        self.engine = engine
        self.interval_sec = float(interval_sec)
        self.run_on_start = run_on_start
        self.last_report: RunReport | None = None
        self._guard = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lifecycle = threading.Lock()

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def in_flight(self) -> bool:
        return self._guard.locked()

    def trigger_now(self, *, trigger: str = "manual") -> RunReport:
        if not self._guard.acquire(blocking=False):
            log_event(logger, "evaluation_skipped_overlap", trigger=trigger)
            return self._skipped(trigger)
        state_lock = self.engine.parts.store.lock
        try:
            acquired = state_lock.acquire()
        except OSError:
            self._guard.release()
            raise
        if not acquired:
            self._guard.release()
            # another process (CLI or server) is mid-run on the same state file
            log_event(logger, "evaluation_skipped_locked", trigger=trigger, lock=str(state_lock.path))
            return self._skipped(trigger)
        try:
            try:
                report = self.engine.run_once(trigger=trigger)
            except Exception as exc:
                log_event(logger, "evaluation_crashed", level=logging.ERROR, trigger=trigger, error=str(exc), tb=traceback.format_exc())
                report = RunReport(
                    outcome=RunOutcome.FAILED,
                    started_at=utc_now_iso(),
                    finished_at=utc_now_iso(),
                    trigger=trigger,
                    phase_before=self.engine.state.current_phase_id,
                    phase_after=self.engine.state.current_phase_id,
                    error=str(exc),
                )
            self.last_report = report
            return report
        finally:
            state_lock.release()
            self._guard.release()

    def _skipped(self, trigger: str) -> RunReport:
        now = utc_now_iso()
        return RunReport(outcome=RunOutcome.SKIPPED, started_at=now, finished_at=now, trigger=trigger)

    def _loop(self) -> None:
        if self.run_on_start:
            self.trigger_now(trigger="startup")
        while not self._stop.wait(self.interval_sec):
            self.trigger_now(trigger="scheduled")

    def start(self) -> None:
        with self._lifecycle:
            if self.is_running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="phase-evaluation-scheduler", daemon=True)
            self._thread.start()
        log_event(logger, "scheduler_started", interval_sec=self.interval_sec, run_on_start=self.run_on_start)

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lifecycle:
            self._stop.set()
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join(timeout=timeout)
        log_event(logger, "scheduler_stopped")
