from __future__ import annotations

from typing import Any


class BackofficeError(Exception):
    pass


class ValidationError(BackofficeError):
    pass


class ConflictError(BackofficeError):
    pass


class NotFoundError(BackofficeError):
    pass


class StateError(BackofficeError):
    pass


class ParentNotFoundError(NotFoundError):
    pass


class ParentArchivedError(StateError):
    pass


class DateConflictError(ConflictError):
    def __init__(self, message: str, conflicting_card: Any) -> None:
        super().__init__(message)
        self.conflicting_card = conflicting_card


class AdjustmentOutOfBoundsError(ValidationError):
    pass


class EmptyContractSetError(ValidationError):
    pass


class NestedAdjustmentError(ValidationError):
    pass
