"""Custom exception hierarchy for the MoneySeed package."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .models import BatchRewardResult


class MoneySeedError(Exception):
    """Base class for all MoneySeed specific errors."""

    code = "moneyseed_error"
    retryable = False


class ValidationError(MoneySeedError):
    """Raised when input is malformed before anything is written."""

    code = "validation_error"


class ImmutableAfterTransferError(MoneySeedError):
    """Raised when a mission that has already been paid out is modified."""

    code = "immutable_after_transfer"


class AlreadyTransferredError(ImmutableAfterTransferError):
    """Raised when completing a mission whose reward was already transferred."""

    code = "already_transferred"


class NotFoundError(MoneySeedError):
    """Raised when a referenced row no longer exists."""

    code = "not_found"


class PermissionDeniedError(MoneySeedError):
    """Raised when a user acts on data outside their family."""

    code = "permission_denied"


class ConflictError(MoneySeedError):
    """Raised when a write collides with a uniqueness constraint."""

    code = "conflict"


class AlreadyClaimedError(ConflictError):
    """Raised when a streak bonus milestone is claimed a second time."""

    code = "already_claimed"


class InsufficientFundsError(MoneySeedError):
    """Raised when an expense would result in a negative balance."""

    code = "insufficient_funds"


class BackendUnavailableError(MoneySeedError):
    """Raised when the database cannot be reached or a query fails."""

    code = "backend_unavailable"
    retryable = True


class BatchInterruptedError(BackendUnavailableError):
    """Raised when a settlement batch stops part way because of a backend failure.

    ``partial_result`` reports the missions that were paid before the failure.
    """

    code = "batch_interrupted"

    def __init__(self, message: str, partial_result: "BatchRewardResult") -> None:
        super().__init__(message)
        self.partial_result = partial_result


class ConsistencyWarning(UserWarning):
    """Emitted by the verification utilities when ledger totals disagree."""


__all__ = [
    "MoneySeedError",
    "ValidationError",
    "ImmutableAfterTransferError",
    "AlreadyTransferredError",
    "NotFoundError",
    "PermissionDeniedError",
    "ConflictError",
    "AlreadyClaimedError",
    "InsufficientFundsError",
    "BackendUnavailableError",
    "BatchInterruptedError",
    "ConsistencyWarning",
]
