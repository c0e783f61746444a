from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import IO, Any

from scaler_core.errors import StateCorruptError, StatePersistError
from scaler_core.types import EngineState, utc_now_iso
from scaler_core.utils.logs import log_event


logger = logging.getLogger(__name__)


def _atomic_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateCorruptError(f"State file {path} is not valid JSON: {exc}") from exc


class StateFileLock:
    """Non-blocking advisory flock beside the state file, shared by every process using it."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        if self._handle is not None:
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        except OSError:
            handle.close()
            raise
        self._handle = handle
        return True

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


class StateStore:
    """Durable EngineState document, rewritten atomically on every save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.lock = StateFileLock(self.path.with_name(f"{self.path.name}.lock"))

    def exists(self) -> bool:
        return self.path.exists()

    def _persist(self, payload: dict[str, Any]) -> None:
        try:
            _atomic_write_json(self.path, {**payload, "updatedAt": utc_now_iso()})
        except OSError as exc:
            log_event(logger, "state_persist_failed", level=logging.ERROR, path=str(self.path), error=str(exc))
            raise StatePersistError(f"Could not persist engine state to {self.path}: {exc}") from exc

    def write(self, state: EngineState) -> None:
        self._persist(state.to_dict())

    def record_evaluation(self, timestamp: str) -> None:
        """Set lastEvaluationTimestamp on the persisted document; every other field is kept as read."""
        payload = _read_json(self.path) if self.path.exists() else None
        if not isinstance(payload, dict) or not payload.get("currentPhase"):
            raise StateCorruptError(f"State file {self.path} has no currentPhase")
        payload["lastEvaluationTimestamp"] = timestamp
        self._persist(payload)

    def read(self) -> EngineState | None:
        if not self.path.exists():
            return None
        payload = _read_json(self.path)
        if not isinstance(payload, dict) or not payload.get("currentPhase"):
            raise StateCorruptError(f"State file {self.path} has no currentPhase")
        return EngineState.from_dict(payload)

    def load_or_create(self, *, known_phases: set[str], initial_phase: str) -> EngineState:
        state = self.read()
        if state is None:
            state = EngineState(current_phase_id=initial_phase)
            self.write(state)
            log_event(logger, "state_created", path=str(self.path), phase=initial_phase)
            return state
        if state.current_phase_id not in known_phases:
            raise StateCorruptError(f"Persisted phase {state.current_phase_id!r} is not in the catalog")
        log_event(
            logger,
            "state_loaded",
            level=logging.DEBUG,
            path=str(self.path),
            phase=state.current_phase_id,
            markets=len(state.active_markets),
            transitions=len(state.transition_history),
        )
        return state


class AdvisoryLog:
    def __init__(self, path: str | Path, *, keep: int = 200) -> None:
        self.path = Path(path)
        self.keep = max(1, int(keep))

    def load(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            rows = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            log_event(logger, "advisory_log_unreadable", level=logging.WARNING, path=str(self.path))
            return []
        return rows if isinstance(rows, list) else []

    def append(self, row: dict[str, Any]) -> None:
        rows = self.load()
        rows.append(row)
        _atomic_write_json(self.path, rows[-self.keep :])
