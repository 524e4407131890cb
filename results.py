"""Tagged results returned by the service layer.

Expected failures (bad input, missing or foreign rows, constraint
violations) come back as :class:`Err` instead of being raised. Exceptions
are left for infrastructure faults such as a lost database connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    validation = "validation"
    not_found = "not_found"
    conflict = "conflict"
    storage = "storage"
    transfer_failed = "transfer_failed"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    warning: Optional[str] = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    field: Optional[str] = None

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


def validation_error(message: str, field: Optional[str] = None) -> Err:
    return Err(ErrorKind.validation, message, field)


def not_found(message: str) -> Err:
    return Err(ErrorKind.not_found, message)
