"""
Atomic units of work over a record store.

A multi-step posting either runs inside the store's own transaction or,
when the store has none, as a saga: each completed step registers a
compensation, and on any failure the compensations run newest first.
An optional deadline is checked between steps.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from posting_engine.errors import OrchestrationTimeout
from posting_engine.store import RecordStore

logger = logging.getLogger(__name__)


class Saga:
    """Ordered list of compensating actions for one unit of work."""

    def __init__(self, label: str, timeout: Optional[float] = None) -> None:
        self.label = label
        self.timeout = timeout
        self._deadline = time.monotonic() + timeout if timeout else None
        self._compensations: list[tuple[str, Callable[[], None]]] = []

    def add(self, description: str, action: Callable[[], None]) -> None:
        self._compensations.append((description, action))

    def checkpoint(self) -> None:
        """Raise OrchestrationTimeout if the deadline has passed."""
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise OrchestrationTimeout(self.label, self.timeout or 0)

    def compensate(self) -> list[str]:
        """
        Run every compensation newest first.

        A failing compensation is logged and the rest still run; the
        names of failed steps are returned so a recovery sweep can pick
        them up.
        """
        failed: list[str] = []
        while self._compensations:
            description, action = self._compensations.pop()
            try:
                action()
                logger.warning("%s: compensated %s", self.label, description)
            except Exception:
                logger.error(
                    "%s: compensation '%s' failed", self.label, description,
                    exc_info=True,
                )
                failed.append(description)
        return failed


@contextmanager
def unit_of_work(
    store: RecordStore, label: str, timeout: Optional[float] = None
) -> Iterator[Saga]:
    """
    Run a block atomically against ``store``.

    Transactional stores roll back natively and the saga's compensations
    are discarded; other stores run the compensations on failure.
    """
    saga = Saga(label, timeout)
    if store.supports_transactions:
        with store.transaction():
            yield saga
            saga.checkpoint()
        return

    try:
        yield saga
        saga.checkpoint()
    except BaseException:
        saga.compensate()
        raise
