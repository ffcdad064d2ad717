"""
Single-flight guard for one-time async setup steps.

Schema migration and full-text index creation are idempotent but expensive,
and they race against concurrent first use. A guard instance is a tiny state
machine:

    UNSTARTED --run()--> IN_FLIGHT(task) --ok--> DONE
                             |
                             +--error--> UNSTARTED   (next caller retries)

`run()` is a plain method: the state check and the task creation happen in
one synchronous step, so two callers arriving back-to-back before the event
loop switches always share the same task.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class FlightState(str, enum.Enum):
    UNSTARTED = "unstarted"
    IN_FLIGHT = "in_flight"
    DONE = "done"


class SingleFlight:
    """Run an async setup step at most once; concurrent callers share it."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._state = FlightState.UNSTARTED

    @property
    def state(self) -> FlightState:
        return self._state

    def run(self, factory: Callable[[], Awaitable[None]]) -> Awaitable[None]:
        """
        Start `factory()` unless it is already running or finished.

        Returns an awaitable for the shared task. Awaiters are shielded, so a
        caller that gets cancelled does not cancel the setup for everyone else.
        """
        if self._state is FlightState.UNSTARTED:
            self._task = asyncio.ensure_future(factory())
            self._state = FlightState.IN_FLIGHT
            self._task.add_done_callback(self._on_done)
            logger.debug("single-flight %s started", self.name)
        assert self._task is not None
        return asyncio.shield(self._task)

    def _on_done(self, task: asyncio.Task) -> None:
        if task is not self._task:
            return
        if task.cancelled() or task.exception() is not None:
            self._task = None
            self._state = FlightState.UNSTARTED
            logger.warning("single-flight %s failed; guard cleared for retry", self.name)
            return
        self._state = FlightState.DONE

    def reset(self) -> None:
        """Forget a finished flight. Used when the underlying handle is replaced."""
        if self._state is FlightState.IN_FLIGHT:
            raise RuntimeError(f"cannot reset single-flight '{self.name}' while in flight")
        self._task = None
        self._state = FlightState.UNSTARTED
