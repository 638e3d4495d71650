"""
Result type returned by the mutation engine.

A mutation either settles with the server-confirmed value or with a typed
failure the caller can render. Callers pattern-match instead of catching:

    result = await students.update(student_id, grade_level="10")
    match result:
        case Success(student):
            render(student)
        case Failure(error):
            show_error(error)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """A settled operation carrying the confirmed value."""

    value: T

    def is_success(self) -> bool:
        return True

    def is_failure(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def __repr__(self) -> str:
        return f"Success({self.value!r})"


@dataclass(frozen=True, slots=True)
class Failure(Generic[E]):
    """A settled operation carrying the typed error."""

    error: E

    def is_success(self) -> bool:
        return False

    def is_failure(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the carried error."""
        if isinstance(self.error, BaseException):
            raise self.error
        raise RuntimeError(f"Operation failed: {self.error}")

    def __repr__(self) -> str:
        return f"Failure({self.error!r})"


Result = Union[Success[T], Failure[E]]


__all__ = ["Failure", "Result", "Success"]
