from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E")
F = TypeVar("F")


class Result(Generic[T, E]):
    """
    Result Monad estilo Ok/Err.

    Custody operations never hide a rejection inside a try/except: they return
    Ok(value) or Err(error) and the caller decides.

        r = engine.deposit(user, 30_000_000, request=req)
        if r.is_err():
            log.warning("deposit rejected: %s", r.error.code)
    """

    def is_ok(self) -> bool:
        raise NotImplementedError

    def is_err(self) -> bool:
        raise NotImplementedError

    def map(self, fn: Callable[[T], U]) -> Result[U, E]:
        """Aplica fn(value) sólo si es Ok, propaga Err tal cual."""
        raise NotImplementedError

    def map_err(self, fn: Callable[[E], F]) -> Result[T, F]:
        """Transforma el error si es Err, deja Ok igual."""
        raise NotImplementedError

    def bind(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """FlatMap / and_then: encadena operaciones que también devuelven Result."""
        raise NotImplementedError

    def unwrap(self) -> T:
        raise NotImplementedError

    def unwrap_err(self) -> E:
        raise NotImplementedError

    def unwrap_or(self, default: T) -> T:
        raise NotImplementedError


@dataclass(frozen=True)
class Ok(Result[T, E]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def map(self, fn: Callable[[T], U]) -> Result[U, E]:
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[E], F]) -> Result[T, F]:
        return Ok(self.value)  # type: ignore[return-value]

    def bind(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        return fn(self.value)

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self) -> E:
        raise ValueError(f"Called unwrap_err() on Ok: {self.value!r}")

    def unwrap_or(self, default: T) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Result[T, E]):
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def map(self, fn: Callable[[T], U]) -> Result[U, E]:
        # Propaga el error; no aplica fn
        return Err(self.error)  # type: ignore[return-value]

    def map_err(self, fn: Callable[[E], F]) -> Result[T, F]:
        return Err(fn(self.error))

    def bind(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        return Err(self.error)  # type: ignore[return-value]

    def unwrap(self) -> T:
        raise ValueError(f"Called unwrap() on Err: {self.error}")

    def unwrap_err(self) -> E:
        return self.error

    def unwrap_or(self, default: T) -> T:
        return default


def ok(value: T) -> Result[T, Any]:
    """Helper rápido para crear Ok."""
    return Ok(value)


def err(error: E) -> Result[Any, E]:
    """Helper rápido para crear Err."""
    return Err(error)
