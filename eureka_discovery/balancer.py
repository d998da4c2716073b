"""Load-balancing strategies and the registry that creates them by name."""

from __future__ import annotations

import logging
import random
import threading
from typing import Callable, Mapping, Protocol, Sequence, runtime_checkable

from .exceptions import EmptyCandidateSetError, UnknownStrategyError

logger = logging.getLogger(__name__)


@runtime_checkable
class Strategy(Protocol):
    """Selects exactly one URL from a non-empty candidate list."""

    def select(self, urls: Sequence[str]) -> str:
        ...


class RandomStrategy:
    """Uniform random pick. Carries no state between calls."""

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def select(self, urls: Sequence[str]) -> str:
        if not urls:
            raise EmptyCandidateSetError("Cannot select from an empty URL list")
        return urls[self._rng.randrange(len(urls))]


class RoundRobinStrategy:
    """Cycles through the list in order, starting at index 0.

    The cursor resets to 0 when the list has shrunk below it.
    """

    def __init__(self) -> None:
        self._cursor = 0
        self._lock = threading.Lock()

    def select(self, urls: Sequence[str]) -> str:
        n = len(urls)
        if n == 0:
            raise EmptyCandidateSetError("Cannot select from an empty URL list")
        with self._lock:
            if self._cursor >= n:
                self._cursor = 0
            url = urls[self._cursor]
            self._cursor = (self._cursor + 1) % n
        return url


StrategyFactory = Callable[[], Strategy]

DEFAULT_STRATEGIES: Mapping[str, StrategyFactory] = {
    "random": RandomStrategy,
    "roundrobin": RoundRobinStrategy,
}


class StrategyRegistry:
    """Maps strategy names to factories; each create() returns a fresh instance."""

    def __init__(self, strategies: Mapping[str, StrategyFactory] | None = None):
        self._factories: dict[str, StrategyFactory] = dict(DEFAULT_STRATEGIES)
        if strategies:
            self._factories.update(strategies)

    @property
    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def create(self, name: str) -> Strategy:
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownStrategyError(name, self.names)
        logger.debug("Creating %s strategy", name, extra={"strategy": name})
        return factory()
