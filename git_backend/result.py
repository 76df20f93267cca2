"""Outcome of a backend operation.

The backend never lets a provider failure escape as an exception. Instead
each operation returns an OperationResult that says whether it succeeded,
failed or is not supported by the provider. A failed result still carries
the operation's empty value (an empty list or None), so callers must check
`ok` before treating an empty value as genuinely empty.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ResultStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    status: ResultStatus
    value: T
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, value: T) -> OperationResult[T]:
        return cls(ResultStatus.OK, value)

    @classmethod
    def failure(cls, error: BaseException, empty: T) -> OperationResult[T]:
        return cls(ResultStatus.FAILED, empty, error)

    @classmethod
    def unsupported(cls, empty: T) -> OperationResult[T]:
        return cls(ResultStatus.UNSUPPORTED, empty)

    @property
    def ok(self) -> bool:
        """True if the operation completed."""
        return self.status is ResultStatus.OK

    @property
    def failed(self) -> bool:
        return self.status is ResultStatus.FAILED

    def __str__(self) -> str:
        if self.error is not None:
            return f"{self.status.value}: {self.error}"
        return self.status.value
