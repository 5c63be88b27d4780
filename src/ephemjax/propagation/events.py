"""Event detection on the dense output of accepted steps.

An :class:`EventDetector` defines a switching function ``g(state)``.  An
event occurs when ``g`` changes sign.  After every accepted step the
propagator checks each detector over the step, locates roots on the
step interpolant with a bracketing secant (Illinois) iteration, and calls
:meth:`EventDetector.event_occurred`.  Returning :attr:`Action.STOP`
ends the run normally at the event epoch; the generated ephemeris then
ends there too.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Callable

from ephemjax.epoch import Epoch
from ephemjax.state import SpacecraftState


class Action(enum.Enum):
    """What the propagator does after an event."""

    CONTINUE = "continue"
    STOP = "stop"


class EventDetector:
    """Base class of event detectors.

    Args:
        max_check: Maximum interval [s] between two evaluations of ``g``
            inside a step.  Sign changes happening twice within this
            interval may be missed.
        threshold: Convergence threshold of the root location [s].
        max_iterations: Maximum number of iterations of the root search.
    """

    def __init__(self, max_check: float = 600.0, threshold: float = 1e-6,
                 max_iterations: int = 100):
        if not max_check > 0.0:
            raise ValueError(f"max_check must be positive, got {max_check}")
        if not threshold > 0.0:
            raise ValueError(f"threshold must be positive, got {threshold}")
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        self.max_check = float(max_check)
        self.threshold = float(threshold)
        self.max_iterations = int(max_iterations)

    def init(self, initial_state: SpacecraftState, target: Epoch) -> None:
        pass

    def g(self, state: SpacecraftState) -> float:
        """Switching function.  Events are the roots of this function."""
        raise NotImplementedError

    def event_occurred(self, state: SpacecraftState, increasing: bool) -> Action:
        """Handle an event.  Stops the propagation by default."""
        return Action.STOP


class DateDetector(EventDetector):
    """Event at a fixed epoch.

    Args:
        target: Event epoch.
        action: Action returned when the event occurs.
    """

    def __init__(self, target: Epoch, action: Action = Action.STOP, **kwargs):
        super().__init__(**kwargs)
        self.target = target
        self.action = action

    def g(self, state):
        return state.epoch - self.target

    def event_occurred(self, state, increasing):
        return self.action


class FunctionalDetector(EventDetector):
    """Event detector built from plain functions.

    Args:
        g: Switching function ``g(state) -> float``.
        handler: Optional ``handler(state, increasing) -> Action``.  When
            omitted the detector stops the propagation.

    Examples:
        ```python
        # Stop at the first ascending node crossing
        detector = FunctionalDetector(lambda s: s.position[2])
        ```
    """

    def __init__(self, g: Callable[[SpacecraftState], float],
                 handler: Callable[[SpacecraftState, bool], Action] | None = None,
                 **kwargs):
        super().__init__(**kwargs)
        self._g = g
        self._handler = handler

    def g(self, state):
        return self._g(state)

    def event_occurred(self, state, increasing):
        if self._handler is None:
            return Action.STOP
        return self._handler(state, increasing)


def sign_change(ga: float, gb: float) -> bool:
    """Whether ``g`` crosses zero between ``ga`` (excluded) and ``gb`` (included)."""
    return (ga < 0.0 <= gb) or (ga > 0.0 >= gb)


def find_root(
    g: Callable[[float], float],
    ta: float,
    tb: float,
    ga: float,
    gb: float,
    threshold: float,
    max_iterations: int,
) -> float:
    """Locate a root of ``g`` bracketed by ``ta`` and ``tb``.

    Uses the Illinois variant of regula falsi, falling back to bisection
    when the secant point leaves the bracket.  The returned time lies on
    the ``tb`` side of the root (``g`` has already changed sign there), so
    that an event is never reported before it happens.

    Args:
        g: Switching function of the time offset.
        ta: Bracket start, with ``g(ta) = ga`` non-zero.
        tb: Bracket end, with ``g(tb) = gb`` of opposite sign or zero.
        threshold: Bracket width at which iteration stops [s].
        max_iterations: Maximum number of evaluations of ``g``.

    Returns:
        float: Time of the event.
    """
    if gb == 0.0:
        return tb
    side = 0
    for _ in range(max_iterations):
        if abs(tb - ta) <= threshold:
            break
        t = tb - gb * (tb - ta) / (gb - ga)
        lo, hi = min(ta, tb), max(ta, tb)
        if not (lo < t < hi) or not math.isfinite(t):
            t = 0.5 * (ta + tb)
        gt = g(t)
        if gt == 0.0:
            return t
        if (gt > 0.0) == (gb > 0.0):
            tb, gb = t, gt
            if side == -1:
                ga *= 0.5
            side = -1
        else:
            ta, ga = t, gt
            if side == 1:
                gb *= 0.5
            side = 1
    return tb
