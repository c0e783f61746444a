from __future__ import annotations


class EngineError(Exception):
    """Base class for phase engine failures."""


class CatalogError(EngineError):
    pass


class CollaboratorError(EngineError):
    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class CollaboratorTimeout(CollaboratorError):
    pass


class RetryExhausted(CollaboratorError):
    def __init__(self, collaborator: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(collaborator, f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class StatePersistError(EngineError):
    pass


class StateCorruptError(EngineError):
    pass
