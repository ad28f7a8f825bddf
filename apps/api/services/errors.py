"""Domain errors raised by the credit ledger, job store and generation pipeline."""

from __future__ import annotations

from typing import Optional


class GenerationError(Exception):
    """Base class for generation/billing domain errors."""


class GenerationValidationError(GenerationError):
    """Submitted generation request is malformed. Nothing was persisted."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InsufficientCredits(GenerationError):
    """Account balance does not cover the requested reservation."""

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}.")
        self.required = required
        self.available = available


class StorageUnavailable(GenerationError):
    """The ledger or job store could not be read or written."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class ReferenceImageUnreadable(GenerationError):
    """Reference photo could not be fetched or is not a supported image."""


class SlotGenerationFailed(GenerationError):
    """A single image slot failed in synthesis or publishing."""

    def __init__(self, slot_index: int, message: str):
        super().__init__(f"Slot {slot_index + 1} failed: {message}")
        self.slot_index = slot_index


class InvalidJobTransition(GenerationError):
    """A job update would regress status or rewrite already published slots."""


class JobNotFound(GenerationError):
    """Job does not exist or is not owned by the requesting account."""


class QueueUnavailable(GenerationError):
    """Pipeline could not be dispatched to the background queue."""
