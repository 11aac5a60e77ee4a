"""Domain errors raised by the generation pipeline and credit ledger."""

from __future__ import annotations


class InsufficientCreditsError(Exception):
    """Raised when the spendable balance cannot cover a charge or hold."""

    def __init__(self, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"Insufficient credits. Required: {self.required}, available: {self.available}.")


class DuplicateJobError(Exception):
    """Raised when a live job already exists for a generation."""

    def __init__(self, generation_id: str):
        self.generation_id = generation_id
        super().__init__(f"A live job already exists for generation {generation_id}")


class ProviderError(Exception):
    """Transient image provider failure; the job is retried."""


class ProviderPermanentError(ProviderError):
    """Permanent image provider failure; the job fails without retry."""


class InvalidTransitionError(Exception):
    def __init__(self, generation_id: str, target: str, current: str | None):
        self.generation_id = generation_id
        self.target = target
        self.current = current
        super().__init__(f"Generation {generation_id} cannot move from {current!r} to {target!r}")


class IdempotencyConflict(Exception):
    """An operation keyed by an already-applied idempotency key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Idempotency key already applied: {key}")


class MigrationConflictError(Exception):
    """Guest account was already merged into a different user."""


class GuestAccountMergedError(Exception):
    """Guest identity was migrated and can no longer spend or submit."""


class GenerationNotFoundError(Exception):
    pass


class GenerationBusyError(Exception):
    """Generation is currently claimed by a worker."""
