"""Generic Expectation-Maximization driver.

An algorithm family implements :class:`EMEngine` (``initialize``,
``expectation``, ``maximization``, ``terminated``) and :func:`run_em` drives
it. The iteration state is an explicit :class:`EMState` value threaded
through :func:`em_step`; engines keep no per-iteration fields, so
independent fits can run concurrently without synchronization.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Callable, Generic, Optional, TypeVar

if TYPE_CHECKING:
    from collections.abc import Iterable

__all__ = [
    "DEFAULT_EPSILON",
    "DEFAULT_MAX_ITERATION",
    "EMConfig",
    "EMControl",
    "EMEngine",
    "EMEvent",
    "EMState",
    "EMStatus",
    "em_step",
    "not_satisfy",
    "run_em",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ITERATION = 1000
DEFAULT_EPSILON = 0.001

P = TypeVar("P")
S = TypeVar("S")


def not_satisfy(estimated: float, current: float, threshold: float, ratio_mode: bool) -> bool:
    """Return True when ``estimated`` is not within ``threshold`` of ``current``.

    In ratio mode the threshold is relative to ``|current|``.
    """
    diff = abs(estimated - current)
    if ratio_mode:
        return diff > threshold * abs(current)
    return diff > threshold


@dataclass(frozen=True)
class EMConfig:
    """Convergence settings shared by every EM engine.

    Attributes
    ----------
    epsilon
        Convergence threshold (absolute, or relative when ``ratio_mode``).
    ratio_mode
        Compare changes relative to the magnitude of the current value.
    max_iteration
        Hard cap on EM iterations; values <= 0 select the default (1000).
    """

    epsilon: float = DEFAULT_EPSILON
    ratio_mode: bool = True
    max_iteration: int = DEFAULT_MAX_ITERATION

    def __post_init__(self) -> None:
        if not (self.epsilon >= 0.0):
            msg = f"epsilon must be non-negative; got {self.epsilon!r}."
            raise ValueError(msg)

    @property
    def effective_max_iteration(self) -> int:
        return int(self.max_iteration) if self.max_iteration > 0 else DEFAULT_MAX_ITERATION

    def not_satisfy(self, estimated: float, current: float) -> bool:
        return not_satisfy(estimated, current, self.epsilon, self.ratio_mode)


class EMStatus(str, Enum):
    INIT = "init"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER = "max_iter"
    HALTED = "halted"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class EMState(Generic[P, S]):
    """Loop-local state of one EM run.

    ``current`` is always the last good parameter; ``previous`` the one
    before it (used for convergence comparison only).
    """

    iteration: int = 0
    current: Optional[P] = None
    previous: Optional[P] = None
    statistics: Optional[S] = None
    status: EMStatus = EMStatus.INIT

    @property
    def succeeded(self) -> bool:
        return self.current is not None and self.status is not EMStatus.FAILED


@dataclass(frozen=True)
class EMEvent(Generic[P]):
    """Progress notification emitted after every M-step."""

    iteration: int
    max_iteration: int
    estimated: Optional[P]
    current: Optional[P]
    status: EMStatus


Listener = Callable[[EMEvent], None]


class EMControl:
    """Cooperative pause/resume/stop flags for a running fit.

    The fitting thread calls :meth:`checkpoint` between iterations; while
    paused it blocks on a condition variable until resumed or stopped.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._paused = False
        self._stopped = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def stopped(self) -> bool:
        return self._stopped

    def pause(self) -> None:
        with self._cond:
            if not self._stopped:
                self._paused = True

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._paused = False
            self._cond.notify_all()

    def checkpoint(self, timeout: float | None = None) -> bool:
        """Block while paused; return False once a stop was requested."""
        with self._cond:
            while self._paused and not self._stopped:
                if not self._cond.wait(timeout=timeout) and timeout is not None:
                    break
            return not self._stopped


class EMEngine(ABC, Generic[P, S]):
    """Algorithm hooks driven by :func:`run_em`."""

    @abstractmethod
    def initialize(self) -> P | None:
        """Starting parameter, or None when no model can be built."""

    @abstractmethod
    def expectation(self, parameter: P) -> S | None:
        """Expected sufficient statistics under ``parameter``."""

    @abstractmethod
    def maximization(self, statistics: S, current: P | None) -> P | None:
        """Re-estimate the parameter; ``current`` is the fallback value."""

    @abstractmethod
    def terminated(self, estimated: P, current: P, previous: P | None) -> bool:
        """Convergence test between successive estimates."""


def em_step(engine: EMEngine[P, S], state: EMState[P, S]) -> EMState[P, S]:
    """One E-step plus M-step; returns the next state."""
    stats = engine.expectation(state.current)
    if stats is None:
        LOGGER.debug("EM: expectation produced no statistics at iteration %d", state.iteration + 1)
        return replace(state, status=EMStatus.HALTED)
    estimated = engine.maximization(stats, state.current)
    if estimated is None:
        LOGGER.debug("EM: maximization produced no parameter at iteration %d", state.iteration + 1)
        return replace(state, status=EMStatus.HALTED)
    done = engine.terminated(estimated, state.current, state.previous)
    return EMState(
        iteration=state.iteration + 1,
        current=estimated,
        previous=state.current,
        statistics=stats,
        status=EMStatus.CONVERGED if done else EMStatus.ITERATING,
    )


def run_em(
    engine: EMEngine[P, S],
    config: EMConfig | None = None,
    *,
    control: EMControl | None = None,
    listeners: Iterable[Listener] = (),
) -> EMState[P, S]:
    """Run ``engine`` until convergence, the iteration cap, a halt or a stop.

    The returned state's ``current`` is the last good parameter, or None
    when ``initialize`` failed.
    """
    config = config or EMConfig()
    max_iter = config.effective_max_iteration
    listeners = tuple(listeners)

    start = engine.initialize()
    if start is None:
        LOGGER.debug("EM: initialization failed; no model")
        return EMState(status=EMStatus.FAILED)

    state: EMState[P, S] = EMState(current=start, status=EMStatus.ITERATING)
    while state.status is EMStatus.ITERATING:
        if control is not None and not control.checkpoint():
            state = replace(state, status=EMStatus.CANCELLED)
            break
        if state.iteration >= max_iter:
            state = replace(state, status=EMStatus.MAX_ITER)
            break
        state = em_step(engine, state)
        LOGGER.debug("EM: iteration %d/%d, status %s", state.iteration, max_iter, state.status.value)
        for listener in listeners:
            listener(
                EMEvent(
                    iteration=state.iteration,
                    max_iteration=max_iter,
                    estimated=state.current,
                    current=state.previous,
                    status=state.status,
                ),
            )

    if state.status is EMStatus.MAX_ITER:
        LOGGER.info("EM: reached the iteration cap (%d) without convergence", max_iter)
    else:
        LOGGER.info("EM: stopped after %d iteration(s) with status %s", state.iteration, state.status.value)
    return state
