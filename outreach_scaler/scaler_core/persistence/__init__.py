from .state_store import AdvisoryLog, StateFileLock, StateStore

__all__ = ["AdvisoryLog", "StateFileLock", "StateStore"]
