from __future__ import annotations

import datetime
from typing import Iterable, Optional, Tuple


class EngineError(Exception):
    """Base class for roster engine failures."""

    pass


class NotFoundError(EngineError):
    """Raised when a referenced exception, shift type, officer or recurring row is absent."""

    def __init__(self, kind: str, identifier) -> None:
        super().__init__(f"{kind} {identifier!r} was not found.")
        self.kind = kind
        self.identifier = identifier


class InvalidStateError(EngineError):
    """Raised when an operation does not apply to the record's current state."""

    pass


class AmbiguousOverrideError(EngineError):
    """Raised when two exceptions claim the same (officer, date, shift type) key."""

    def __init__(
        self,
        officer_id: int,
        date: datetime.date,
        shift_type_id: int,
        exception_ids: Iterable[int],
    ) -> None:
        ids = tuple(sorted(exception_ids))
        super().__init__(
            f"Officer {officer_id} has {len(ids)} exceptions for shift {shift_type_id} "
            f"on {date.isoformat()} (ids {', '.join(str(i) for i in ids)})."
        )
        self.key: Tuple[int, datetime.date, int] = (officer_id, date, shift_type_id)
        self.exception_ids = ids


class StoreFailure(EngineError):
    """Wraps an error raised by the persistence layer.

    ``balance_adjusted`` tells the caller whether a leave balance delta was
    committed before the failure so it can tell the officer what happened.
    """

    def __init__(self, message: str, *, balance_adjusted: bool = False, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.balance_adjusted = balance_adjusted
        self.cause = cause
