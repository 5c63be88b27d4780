"""Bounded ephemeris built from the steps of a numerical propagation.

A :class:`BoundedEphemeris` keeps every accepted step of a run together
with its dense interpolant, so that the trajectory can be evaluated at any
epoch of its validity interval, in any order, without integrating again.

Lookup is a binary search (``numpy.searchsorted``) over the step end
offsets, ordered in the integration direction.  At a boundary shared by
two steps the earlier step in integration order is used, which keeps
evaluation left-continuous.

Ephemerides are immutable once built: steps are kept in a tuple, the
boundary arrays are read-only, and queries never modify the object.  They
can be queried from several threads concurrently.  The only mutable
attribute is the optional master-mode handler.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

import numpy as np
import polars as pl

from ephemjax.config import get_epoch_eq_tolerance
from ephemjax.epoch import Epoch
from ephemjax.errors import MissingData, OutOfRange, StateJacobianNotInitialized
from ephemjax.propagation.codec import StateLayout, StateVectorCodec
from ephemjax.propagation.sampling import (
    StepHandler,
    StepInterpolator,
    StepModel,
    as_step_handler,
)
from ephemjax.propagation.variational import JacobiansMapper
from ephemjax.state import SpacecraftState

logger = logging.getLogger(__name__)


class BoundedEphemeris:
    """Queryable trajectory over a bounded time interval.

    Args:
        steps: Accepted steps in integration order.  Consecutive steps
            must share their boundary.
        layout: Layout of the integration vector of the run.

    Raises:
        MissingData: If ``steps`` is empty.

    Examples:
        ```python
        propagator.set_ephemeris_mode()
        propagator.propagate(epoch0 + 86400.0)
        ephemeris = propagator.get_generated_ephemeris()
        state = ephemeris.propagate(epoch0 + 41589.0)
        ```
    """

    def __init__(self, steps: Sequence[StepModel], layout: StateLayout):
        steps = tuple(steps)
        if not steps:
            raise MissingData("Cannot build an ephemeris without any step")
        self._steps = steps
        self._layout = layout
        self._codec = StateVectorCodec(layout)
        self._reference = steps[0].reference
        self._direction = 1.0 if steps[0].is_forward else -1.0

        self._start = steps[0].start_offset
        self._end = steps[-1].end_offset
        self._lo = min(self._start, self._end)
        self._hi = max(self._start, self._end)

        keys = self._direction * np.array([s.end_offset for s in steps], dtype=np.float64)
        keys.setflags(write=False)
        self._keys = keys

        self._min_date = self._reference + self._lo
        self._max_date = self._reference + self._hi
        self._handler: StepHandler | None = None

    # Properties

    @property
    def steps(self) -> tuple[StepModel, ...]:
        return self._steps

    @property
    def layout(self) -> StateLayout:
        return self._layout

    @property
    def reference(self) -> Epoch:
        """Start epoch of the run that produced the ephemeris."""
        return self._reference

    @property
    def is_forward(self) -> bool:
        return self._direction > 0.0

    @property
    def min_date(self) -> Epoch:
        return self._min_date

    @property
    def max_date(self) -> Epoch:
        return self._max_date

    @property
    def initial_state(self) -> SpacecraftState:
        """State at the start of the run (``min_date`` for forward runs)."""
        return self._codec.decode(self._steps[0].start_vector, self._reference + self._start)

    @property
    def final_state(self) -> SpacecraftState:
        """State at the end of the run."""
        return self._state_at_offset(self._end, self._reference + self._end)

    def contains(self, epoch: Epoch) -> bool:
        """Whether ``epoch`` is inside ``[min_date, max_date]``."""
        offset = epoch - self._reference
        tol = get_epoch_eq_tolerance()
        return self._lo - tol <= offset <= self._hi + tol

    # Lookup

    def _offset(self, epoch: Epoch) -> float:
        if not self.contains(epoch):
            raise OutOfRange(epoch, self._min_date, self._max_date)
        return min(max(epoch - self._reference, self._lo), self._hi)

    def _locate(self, offset: float, side: str = "left") -> int:
        idx = int(np.searchsorted(self._keys, self._direction * offset, side=side))
        return min(idx, len(self._steps) - 1)

    def _state_at_offset(self, offset: float, epoch: Epoch) -> SpacecraftState:
        step = self._steps[self._locate(offset)]
        return self._codec.decode(step.interpolate(offset), epoch)

    def _state_at(self, epoch: Epoch) -> SpacecraftState:
        return self._state_at_offset(self._offset(epoch), epoch)

    # Propagation

    def set_master_mode(self, handler: StepHandler | Callable) -> None:
        """Notify ``handler`` of every step swept by :meth:`propagate`."""
        self._handler = as_step_handler(handler)

    def set_slave_mode(self) -> None:
        """Stop notifying a master-mode handler."""
        self._handler = None

    def propagate(self, target: Epoch, start: Epoch | None = None) -> SpacecraftState:
        """Return the state at ``target``.

        In master mode the steps between ``start`` and ``target`` are
        swept first, see :meth:`sweep`.

        Args:
            target: Query epoch.
            start: Start of the master-mode sweep.  Defaults to the start
                of the run.  Ignored in slave mode.

        Raises:
            OutOfRange: If ``target`` (or ``start``) is outside
                ``[min_date, max_date]``.
        """
        if self._handler is not None:
            return self.sweep(self._handler, target, start)
        return self._state_at(target)

    def sweep(self, handler: StepHandler | Callable, target: Epoch,
              start: Epoch | None = None) -> SpacecraftState:
        """Call ``handler`` on every step between ``start`` and ``target``.

        Steps are visited in sweep order (from ``start`` toward
        ``target``), each restricted to its overlap with the swept range.
        The last one is flagged with ``is_last=True``.

        Args:
            handler: :class:`StepHandler` or callable
                ``handler(interpolator, is_last)``.
            target: End of the sweep.
            start: Start of the sweep.  Defaults to the start of the run.

        Returns:
            SpacecraftState: State at ``target``.

        Raises:
            OutOfRange: If ``start`` or ``target`` is outside
                ``[min_date, max_date]``.
        """
        handler = as_step_handler(handler)
        if start is None:
            start = self._reference + self._start
        a = self._offset(start)
        b = self._offset(target)
        handler.init(self._state_at_offset(a, start), target)

        if a == b:
            return self._state_at_offset(b, target)

        same_direction = (b - a) * self._direction > 0.0
        if same_direction:
            first = self._locate(a, side="right")
            last = self._locate(b, side="left")
            indices = range(first, last + 1)
        else:
            first = self._locate(a, side="left")
            last = self._locate(b, side="right")
            indices = range(first, last - 1, -1)

        seg_lo, seg_hi = min(a, b), max(a, b)
        segments = []
        for idx in indices:
            step = self._steps[idx]
            lo = max(min(step.start_offset, step.end_offset), seg_lo)
            hi = min(max(step.start_offset, step.end_offset), seg_hi)
            if hi <= lo:
                continue
            segments.append((step, lo, hi) if b > a else (step, hi, lo))

        logger.debug("Sweeping %d steps from %s to %s", len(segments), start, target)
        for i, (step, seg_start, seg_end) in enumerate(segments):
            interpolator = StepInterpolator(step, self._codec, seg_start, seg_end)
            handler.handle_step(interpolator, i == len(segments) - 1)

        return self._state_at_offset(b, target)

    # Additional states and Jacobians

    def get_additional_state(self, epoch: Epoch, name: str) -> np.ndarray:
        """Return the additional state ``name`` at ``epoch``.

        Raises:
            UnknownAdditionalState: If ``name`` is not part of the layout.
            OutOfRange: If ``epoch`` is outside the validity interval.
        """
        self._layout.size_of(name)
        return self._state_at(epoch).get_additional(name)

    def _mapper(self, name: str | None) -> JacobiansMapper:
        info = self._layout.sensitivities
        if info is None:
            raise StateJacobianNotInitialized(
                "The variational equations were not enabled for this ephemeris"
            )
        if name is not None and name != info.name:
            raise StateJacobianNotInitialized(
                f"No Jacobian block named '{name}'; this ephemeris carries '{info.name}'"
            )
        return JacobiansMapper(info)

    def get_state_jacobian(self, epoch: Epoch, name: str | None = None) -> np.ndarray:
        """Return ``dY/dY0`` at ``epoch``.

        Raises:
            StateJacobianNotInitialized: If the run did not integrate the
                variational equations.
        """
        mapper = self._mapper(name)
        return mapper.get_state_jacobian(self._state_at(epoch))

    def get_parameters_jacobian(self, epoch: Epoch, name: str | None = None) -> np.ndarray:
        """Return ``dY/dP`` at ``epoch``.

        Raises:
            StateJacobianNotInitialized: If the run did not integrate the
                variational equations.
        """
        mapper = self._mapper(name)
        return mapper.get_parameters_jacobian(self._state_at(epoch))

    # Sampling

    def sample(self, n_points: int = 100) -> list[SpacecraftState]:
        """Return ``n_points`` states evenly spaced over the run, in run order."""
        if n_points < 2:
            raise ValueError(f"n_points must be at least 2, got {n_points}")
        offsets = np.linspace(self._start, self._end, n_points)
        return [self._state_at_offset(float(t), self._reference + float(t)) for t in offsets]

    def to_dataframe(self, epochs: Sequence[Epoch] | None = None,
                     n_points: int = 100) -> pl.DataFrame:
        """Tabulate states of the ephemeris.

        Args:
            epochs: Epochs to evaluate.  Defaults to ``n_points`` evenly
                spaced epochs, see :meth:`sample`.
            n_points: Number of samples when ``epochs`` is ``None``.

        Returns:
            pl.DataFrame: One row per epoch with columns ``epoch`` (ISO
                string), ``offset`` (seconds from the run start), ``x``,
                ``y``, ``z`` [m], ``vx``, ``vy``, ``vz`` [m/s] and, when the
                state has mass, ``mass`` [kg].
        """
        if epochs is None:
            states = self.sample(n_points)
        else:
            states = [self._state_at(epoch) for epoch in epochs]

        pos = np.array([s.position for s in states]).reshape(-1, 3)
        vel = np.array([s.velocity for s in states]).reshape(-1, 3)
        columns = {
            "epoch": pl.Series([s.epoch.isoformat() for s in states], dtype=pl.Utf8),
            "offset": pl.Series([s.epoch - self._reference for s in states],
                                dtype=pl.Float64),
            "x": pl.Series(pos[:, 0], dtype=pl.Float64),
            "y": pl.Series(pos[:, 1], dtype=pl.Float64),
            "z": pl.Series(pos[:, 2], dtype=pl.Float64),
            "vx": pl.Series(vel[:, 0], dtype=pl.Float64),
            "vy": pl.Series(vel[:, 1], dtype=pl.Float64),
            "vz": pl.Series(vel[:, 2], dtype=pl.Float64),
        }
        if self._layout.has_mass:
            columns["mass"] = pl.Series([s.mass for s in states], dtype=pl.Float64)
        return pl.DataFrame(columns)

    def __len__(self) -> int:
        return len(self._steps)

    def __repr__(self):
        return (f"BoundedEphemeris(min_date={self._min_date}, max_date={self._max_date}, "
                f"steps={len(self._steps)})")
