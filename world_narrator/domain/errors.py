"""Error taxonomy shared by the turn pipeline.

Transient model errors are retried by the invoker, contract violations are
corrected once and then degraded, conflicts are retried by the synchronizer,
capacity errors are rejected immediately, and fatal errors quarantine the
world until it is reset.
"""

from __future__ import annotations


class NarrativeError(Exception):
    """Base class for every error raised by the orchestration engine."""


class TransientModelError(NarrativeError):
    pass


class ModelTimeoutError(TransientModelError):
    pass


class ModelTransportError(TransientModelError):
    pass


class ModelUnavailableError(NarrativeError):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class ContractViolationError(NarrativeError):
    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


class ConflictError(NarrativeError):
    def __init__(self, world_id: str, expected_sequence: int, actual_sequence: int | None = None) -> None:
        detail = f"expected={expected_sequence}"
        if actual_sequence is not None:
            detail += f" actual={actual_sequence}"
        super().__init__(f"World {world_id} sequence advanced concurrently ({detail})")
        self.world_id = world_id
        self.expected_sequence = expected_sequence
        self.actual_sequence = actual_sequence


class CapacityError(NarrativeError):
    pass


class InvalidActionError(NarrativeError):
    pass


class EntityValidationError(InvalidActionError):
    pass


class UnknownWorldError(NarrativeError):
    def __init__(self, world_id: str) -> None:
        super().__init__(f"No world with id '{world_id}'")
        self.world_id = world_id


class WorldCorruptedError(NarrativeError):
    """Persisted state of a world cannot be trusted."""


class WorldFaultedError(NarrativeError):
    def __init__(self, world_id: str) -> None:
        super().__init__(f"World {world_id} is faulted and accepts no actions until reset")
        self.world_id = world_id
