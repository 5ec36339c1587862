"""
Outcome of a model operation. Keeps "not found", "expired" and "store down" apart for
logging and tests; the model's public operations collapse it to value-or-None.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class Outcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    DENIED = "denied"
    MALFORMED = "malformed"
    STORE_ERROR = "store_error"


@dataclass(frozen=True)
class Result(Generic[T]):
    outcome: Outcome
    value: T | None = None
    error: BaseException | None = None

    @classmethod
    def ok(cls, value: T) -> "Result[T]":
        return cls(Outcome.OK, value)

    @classmethod
    def fail(cls, outcome: Outcome, error: BaseException | None = None) -> "Result[T]":
        return cls(outcome, None, error)

    def __bool__(self) -> bool:
        # An OK result with an empty scope list is still a success
        return self.outcome is Outcome.OK

    def value_or_none(self) -> T | None:
        return self.value if self else None
