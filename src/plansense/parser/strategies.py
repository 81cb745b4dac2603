"""
Ordered extraction strategies with typed outcomes.

Several extractions (SQL Server operators, used indexes) are "try the most
precise pattern first, fall back to weaker ones". Each tier is a named
strategy returning `Matched(items)` or `NoMatch`; `first_match` runs them in
order and stops at the first `Matched`. Tiers can be reordered, added and
unit-tested in isolation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Sequence, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Matched(Generic[T]):
    """A strategy produced at least one item."""

    strategy: str
    items: tuple[T, ...]


@dataclass(frozen=True)
class NoMatch:
    """A strategy (or a whole chain) produced nothing."""

    strategy: str


Outcome = Union[Matched[T], NoMatch]


@dataclass(frozen=True)
class Strategy(Generic[T]):
    """
    A named extraction tier.

    Attributes:
        name: Identifier reported in results and logs
        extract: Callable returning the extracted items (empty when no match)
    """

    name: str
    extract: Callable[..., Sequence[T]]

    def attempt(self, *args: Any) -> Outcome[T]:
        items = tuple(self.extract(*args))
        if items:
            return Matched(self.name, items)
        return NoMatch(self.name)


def first_match(strategies: Sequence[Strategy[T]], *args: Any) -> Outcome[T]:
    """
    Run strategies in order and return the first Matched outcome.

    Returns NoMatch("none") when every strategy comes up empty.
    """
    for strategy in strategies:
        outcome = strategy.attempt(*args)
        if isinstance(outcome, Matched):
            logger.debug(
                "Strategy %s matched %d item(s)", strategy.name, len(outcome.items)
            )
            return outcome
        logger.debug("Strategy %s did not match", strategy.name)
    return NoMatch("none")
