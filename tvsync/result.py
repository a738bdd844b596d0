"""Result values returned by sync operations before the public boundary."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class SyncErrorKind(str, Enum):
    """Why a pull or push did not produce a value."""

    NOT_AUTHENTICATED = "not_authenticated"
    MISSING_RESOURCE = "missing_resource"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying the produced value."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True, frozen=True)
class Err:
    """Failed outcome with its classification and the underlying error."""

    kind: SyncErrorKind
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return False

    def describe(self) -> str:
        if self.error is None:
            return self.kind.value
        return f"{self.kind.value}: {self.error}"


Result = Union[Ok[T], Err]
