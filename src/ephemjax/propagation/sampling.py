"""Accepted steps, their interpolators and step handlers.

- :class:`StepModel`: one accepted integration step with the data needed
  to rebuild its dense interpolant.
- :class:`StepInterpolator`: read access to the states inside a step (or
  inside a sub-range of it), handed to step handlers.
- :class:`StepHandler`: observer notified of every step, in order.
- :class:`StepNormalizer`: adapts a :class:`FixedStepHandler` to the
  variable steps of the integrator by sampling them on a fixed grid.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from ephemjax.config import get_epoch_eq_tolerance
from ephemjax.epoch import Epoch
from ephemjax.errors import OutOfRange
from ephemjax.integrators import get_dense_method
from ephemjax.state import SpacecraftState


@dataclass(frozen=True, eq=False)
class StepModel:
    """One accepted integrator step.

    Times are stored as offsets in seconds from ``reference``, the start
    epoch of the run that produced the step.  ``end_offset`` normally
    equals ``start_offset + step_size``; a step cut short by a terminal
    event keeps the full ``step_size`` (which defines the interpolant) and
    an earlier ``end_offset``.

    Args:
        reference: Start epoch of the run.
        start_offset: Offset of the step start [s].
        end_offset: Offset of the step end [s].
        step_size: Signed length of the full integrator step [s].
        start_vector: Flat state vector at the step start, shape ``(n,)``.
        dense_output: Data of the continuous extension, shape ``(7, n)``,
            as returned in ``DenseStepResult.stages``.
        method: Name of the integration method that produced the step,
            which selects the interpolant.
    """

    reference: Epoch
    start_offset: float
    end_offset: float
    step_size: float
    start_vector: np.ndarray
    dense_output: np.ndarray
    method: str = "dop853"

    def __post_init__(self):
        get_dense_method(self.method)
        for name in ("start_vector", "dense_output"):
            arr = np.array(getattr(self, name), dtype=np.float64)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)
        object.__setattr__(self, "start_offset", float(self.start_offset))
        object.__setattr__(self, "end_offset", float(self.end_offset))
        object.__setattr__(self, "step_size", float(self.step_size))

    @property
    def start_epoch(self) -> Epoch:
        return self.reference + self.start_offset

    @property
    def end_epoch(self) -> Epoch:
        return self.reference + self.end_offset

    @property
    def is_forward(self) -> bool:
        return self.step_size > 0.0

    def interpolate(self, offset: float) -> np.ndarray:
        """Evaluate the dense interpolant at ``offset`` seconds from the reference."""
        theta = (offset - self.start_offset) / self.step_size
        interpolate = get_dense_method(self.method).interpolate
        return np.asarray(
            interpolate(self.start_vector, self.dense_output, self.step_size, theta)
        )

    def truncated(self, end_offset: float) -> StepModel:
        """Return a copy of the step ending at ``end_offset``."""
        return dataclasses.replace(self, end_offset=end_offset)


class StepInterpolator:
    """Interpolator over an accepted step or a sub-range of it.

    Args:
        model: The step.
        codec: Codec used to decode interpolated vectors.
        start_offset: Start of the covered range.  Defaults to the step start.
        end_offset: End of the covered range.  Defaults to the step end.
    """

    def __init__(self, model: StepModel, codec, start_offset=None, end_offset=None):
        self.model = model
        self.codec = codec
        self.start_offset = model.start_offset if start_offset is None else float(start_offset)
        self.end_offset = model.end_offset if end_offset is None else float(end_offset)

    @property
    def previous_date(self) -> Epoch:
        return self.model.reference + self.start_offset

    @property
    def current_date(self) -> Epoch:
        return self.model.reference + self.end_offset

    @property
    def is_forward(self) -> bool:
        return self.end_offset >= self.start_offset

    def _offset(self, epoch: Epoch) -> float:
        offset = epoch - self.model.reference
        lo = min(self.start_offset, self.end_offset)
        hi = max(self.start_offset, self.end_offset)
        tol = get_epoch_eq_tolerance()
        if offset < lo - tol or offset > hi + tol:
            first, last = sorted((self.previous_date, self.current_date))
            raise OutOfRange(epoch, first, last)
        return min(max(offset, lo), hi)

    def get_interpolated_state(self, epoch: Epoch | None = None) -> SpacecraftState:
        """Return the state at ``epoch``, by default at :attr:`current_date`.

        Raises:
            OutOfRange: If ``epoch`` is outside the covered range.
        """
        if epoch is None:
            return self.codec.decode(self.model.interpolate(self.end_offset),
                                     self.current_date)
        return self.codec.decode(self.model.interpolate(self._offset(epoch)), epoch)

    def get_interpolated_additional_state(self, name: str,
                                          epoch: Epoch | None = None) -> np.ndarray:
        """Return the additional state ``name`` at ``epoch``.

        Raises:
            UnknownAdditionalState: If ``name`` is not part of the layout.
            OutOfRange: If ``epoch`` is outside the covered range.
        """
        self.codec.layout.size_of(name)
        return self.get_interpolated_state(epoch).get_additional(name)

    def restricted(self, start_offset: float, end_offset: float) -> StepInterpolator:
        """Return an interpolator over a sub-range of the same step."""
        return StepInterpolator(self.model, self.codec, start_offset, end_offset)

    def __repr__(self):
        return (f"StepInterpolator(previous_date={self.previous_date}, "
                f"current_date={self.current_date})")


class StepHandler:
    """Observer of accepted steps.

    Subclasses override :meth:`handle_step`, and optionally :meth:`init`
    which is called once before the first step.
    """

    def init(self, initial_state: SpacecraftState, target: Epoch) -> None:
        pass

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        raise NotImplementedError


class _CallableStepHandler(StepHandler):
    def __init__(self, function):
        self._function = function

    def handle_step(self, interpolator, is_last):
        self._function(interpolator, is_last)


def as_step_handler(handler: StepHandler | Callable) -> StepHandler:
    """Wrap a plain ``handler(interpolator, is_last)`` callable if needed."""
    if isinstance(handler, StepHandler):
        return handler
    if callable(handler):
        return _CallableStepHandler(handler)
    raise TypeError(f"Expected a StepHandler or a callable, got {type(handler)}")


class FixedStepHandler:
    """Observer of states sampled on a fixed time grid."""

    def init(self, initial_state: SpacecraftState, target: Epoch) -> None:
        pass

    def handle_step(self, state: SpacecraftState, is_last: bool) -> None:
        raise NotImplementedError


class _CallableFixedStepHandler(FixedStepHandler):
    def __init__(self, function):
        self._function = function

    def handle_step(self, state, is_last):
        self._function(state, is_last)


class StepNormalizer(StepHandler):
    """Sample variable integrator steps on a fixed grid.

    The grid starts at the first step start and advances by ``step``
    seconds in the direction of the steps.  The final state of the run is
    always delivered, with ``is_last=True``, even when it is off-grid.

    Args:
        step: Grid spacing [s], strictly positive.
        handler: :class:`FixedStepHandler` or callable
            ``handler(state, is_last)``.

    Examples:
        ```python
        states = []
        normalizer = StepNormalizer(60.0, lambda state, last: states.append(state))
        propagator.set_master_mode(normalizer)
        propagator.propagate(target)
        ```
    """

    def __init__(self, step: float, handler: FixedStepHandler | Callable):
        step = float(step)
        if not step > 0.0:
            raise ValueError(f"Normalizer step must be strictly positive, got {step}")
        self.step = step
        if isinstance(handler, FixedStepHandler):
            self.handler = handler
        elif callable(handler):
            self.handler = _CallableFixedStepHandler(handler)
        else:
            raise TypeError(f"Expected a FixedStepHandler or a callable, got {type(handler)}")
        self._next: Epoch | None = None

    def init(self, initial_state, target):
        self._next = None
        self.handler.init(initial_state, target)

    def handle_step(self, interpolator, is_last):
        if self._next is None:
            self._next = interpolator.previous_date
        signed = self.step if interpolator.is_forward else -self.step
        sign = 1.0 if interpolator.is_forward else -1.0
        tol = get_epoch_eq_tolerance()
        current = interpolator.current_date

        while sign * (self._next - current) < -tol:
            self.handler.handle_step(interpolator.get_interpolated_state(self._next), False)
            self._next = self._next + signed

        if is_last:
            self.handler.handle_step(interpolator.get_interpolated_state(), True)
            self._next = None
