"""Success/failure sum type returned by the ``*_result`` entry points."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar, Union

S = TypeVar("S")
E = TypeVar("E")
R = TypeVar("R")
F = TypeVar("F")


@dataclass(frozen=True)
class Success(Generic[S]):
    value: S

    @property
    def is_success(self) -> bool:
        return True

    @property
    def is_failure(self) -> bool:
        return False

    @property
    def error(self) -> None:
        return None


@dataclass(frozen=True)
class Failure(Generic[E]):
    error: E

    @property
    def is_success(self) -> bool:
        return False

    @property
    def is_failure(self) -> bool:
        return True

    @property
    def value(self) -> None:
        return None


Result = Union[Success[S], Failure[E]]


def when(result: Result, *, success: Callable[[S], R], failure: Callable[[E], R]) -> R:
    if isinstance(result, Success):
        return success(result.value)
    if isinstance(result, Failure):
        return failure(result.error)
    raise TypeError(f"Expected Success or Failure, got {type(result).__name__}")


def map_result(result: Result, transform: Callable[[S], R]) -> Result:
    """Transform the value of a Success, pass a Failure through untouched."""
    if isinstance(result, Success):
        return Success(transform(result.value))
    return result


def map_error(result: Result, transform: Callable[[E], F]) -> Result:
    if isinstance(result, Failure):
        return Failure(transform(result.error))
    return result


def unwrap(result: Result) -> S:
    """Return the value of a Success or raise the error of a Failure.

    A Failure whose error is not an exception is wrapped in a RuntimeError.
    """
    if isinstance(result, Success):
        return result.value
    if isinstance(result.error, BaseException):
        raise result.error
    raise RuntimeError(f"Result failed with {result.error!r}")
