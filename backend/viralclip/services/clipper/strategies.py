"""Ordered fallback strategies: try each attempt until one succeeds."""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Optional, Sequence, TypeVar

from .errors import ClipperError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of one attempt."""
    strategy: str
    value: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Strategy(Generic[T]):
    """A named attempt. Only ClipperError failures are converted to a failed Result."""
    name: str
    call: Callable[[], Awaitable[T]]

    async def attempt(self) -> Result[T]:
        try:
            value = await self.call()
        except ClipperError as e:
            logger.warning(f"Strategy '{self.name}' failed: {e}")
            return Result(strategy=self.name, error=e)
        return Result(strategy=self.name, value=value)


@dataclass
class FallbackOutcome(Generic[T]):
    """First successful result, plus every failed attempt before it."""
    result: Optional[Result[T]]
    failures: list[Result[T]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.result is not None


async def first_success(strategies: Sequence[Strategy[T]]) -> FallbackOutcome[T]:
    """Run strategies in order and stop at the first success."""
    failures: list[Result[T]] = []
    for strategy in strategies:
        result = await strategy.attempt()
        if result.ok:
            return FallbackOutcome(result=result, failures=failures)
        failures.append(result)
    return FallbackOutcome(result=None, failures=failures)
