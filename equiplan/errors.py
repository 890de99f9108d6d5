"""Typed failures raised by the store and the scenario repository."""
from __future__ import annotations


class StoreError(Exception):
    """A store call failed. ``code`` is opaque to callers."""
    def __init__(self, message: str, code: str = "database"):
        super().__init__(message)
        self.message = message
        self.code = code


class RepositoryError(Exception):
    """Base class for everything the repository raises."""


class Unauthenticated(RepositoryError):
    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class StoreFailure(RepositoryError):
    """A store call failed; message and code are forwarded unchanged."""
    def __init__(self, message: str, code: str = "database", step: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.step = step

    @classmethod
    def from_store_error(cls, exc: StoreError, step: str | None = None) -> StoreFailure:
        return cls(exc.message, exc.code, step)


class PartialAggregateFailure(StoreFailure):
    """A later step failed after earlier steps of the same operation committed.

    The aggregate is left in an intermediate state: a scenario with fewer
    dependents than requested, or a dependent set cleared but not refilled.
    Nothing is rolled back; ``committed_steps`` says what is already stored.
    """
    def __init__(
        self, message: str, code: str, *, scenario_id: str, failed_step: str,
        committed_steps: tuple[str, ...],
    ):
        super().__init__(message, code, failed_step)
        self.scenario_id = scenario_id
        self.failed_step = failed_step
        self.committed_steps = committed_steps

    def to_dict(self) -> dict:
        return {
            "error": self.message, "code": self.code, "scenario_id": self.scenario_id,
            "failed_step": self.failed_step, "committed_steps": list(self.committed_steps),
        }


class InvalidAggregate(RepositoryError, ValueError):
    """Input would break an aggregate invariant."""
