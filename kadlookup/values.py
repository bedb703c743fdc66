"""Choosing the best of the values that peers return for a key, with quorum options."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Hashable, Iterable, Optional

logger = logging.getLogger(__name__)

QUORUM_OPTION_KEY = "quorum"
DEFAULT_QUORUM = 0
"""Zero means the lookup runs to completion instead of returning early."""

Option = Callable[["RoutingOptions"], None]
Selector = Callable[[str, list], int]
"""Given a key and candidate values, return the index of the best one; may raise."""


class RoutingOptions:
    """Options of one routing operation, built by applying option callables in order."""

    def __init__(self, *options: Option, offline: bool = False) -> None:
        self.offline = offline
        self.other: dict = {}
        for option in options:
            option(self)


def quorum(n: int) -> Option:
    """Option telling a search how many responses it needs before returning the best.

    Zero means the search should complete instead of returning early.
    """

    def apply(options: RoutingOptions) -> None:
        options.other[QUORUM_OPTION_KEY] = n

    return apply


def get_quorum(options: RoutingOptions) -> int:
    """The quorum set on ``options``, or the default when none (or no integer) is set."""
    value = options.other.get(QUORUM_OPTION_KEY)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return DEFAULT_QUORUM


@dataclass(frozen=True)
class ReceivedValue:
    """A value and the peer it came from."""

    value: bytes
    source: Hashable


@dataclass
class ValueSearchResult:
    """Outcome of weighing the received values against each other."""

    best: Optional[bytes] = None
    peers_with_best: set = field(default_factory=set)
    aborted: bool = False
    improvements: list = field(default_factory=list)
    """Each value that became the new best, in the order it did."""


def process_values(
    key: str,
    values: Iterable[ReceivedValue],
    selector: Selector,
    new_value: Callable[[ReceivedValue, bool], bool],
) -> ValueSearchResult:
    """Track the best value received, telling ``new_value`` of every counted response.

    ``new_value(received, better)`` returns True to stop consuming ``values``.
    Responses the selector fails on are logged and skipped.
    """
    result = ValueSearchResult()
    for received in values:
        if result.best is not None:
            if result.best == received.value:
                result.peers_with_best.add(received.source)
                result.aborted = bool(new_value(received, False))
                if result.aborted:
                    return result
                continue
            try:
                selected = selector(key, [result.best, received.value])
            except Exception as err:
                logger.warning("failed to select best value for key %r: %s", key, err)
                continue
            if selected != 1:
                result.aborted = bool(new_value(received, False))
                if result.aborted:
                    return result
                continue
        result.peers_with_best = {received.source}
        result.best = received.value
        result.aborted = bool(new_value(received, True))
        if result.aborted:
            return result
    return result


def search_value_quorum(
    key: str,
    values: Iterable[ReceivedValue],
    selector: Selector,
    needed: int,
) -> ValueSearchResult:
    """Weigh values until more than ``needed`` responses arrived (or all, if zero).

    Every new best value is recorded in ``improvements``; ``aborted`` is True
    when the search stopped because the quorum was reached.
    """
    improvements: list = []
    responses = 0

    def on_value(received: ReceivedValue, better: bool) -> bool:
        nonlocal responses
        responses += 1
        if better:
            improvements.append(received.value)
        return needed > 0 and responses > needed

    result = process_values(key, values, selector, on_value)
    result.improvements = improvements
    return result