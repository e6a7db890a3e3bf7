"""Outcome of one unit of work that may fail without stopping its siblings."""

from dataclasses import dataclass
from typing import Generic, TypeVar

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


@dataclass(frozen=True, slots=True)
class Result(Generic[ValueT, ErrorT]):
    """
    A sweep batch either commits and yields its counts, or fails with a
    tracked error. Build with ``ok`` or ``err``.
    """

    value: ValueT | None = None
    error: ErrorT | None = None

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> ValueT:
        """The value, re-raising the error of a failed outcome."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def unwrap_err(self) -> ErrorT:
        if self.error is None:
            raise ValueError("Called unwrap_err() on a successful result")
        return self.error
