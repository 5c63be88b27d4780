"""Step recorder: turns the accepted steps of a run into an ephemeris.

The recorder is a :class:`~ephemjax.propagation.sampling.StepHandler`
subscribed to the stream of accepted steps of a propagation run.  It
follows a small state machine:

``IDLE -> RECORDING -> FINALIZED``

:meth:`StepRecorder.start` enters ``RECORDING``, every accepted step is
appended, and :meth:`StepRecorder.finalize` freezes the list into a
:class:`~ephemjax.propagation.ephemeris.BoundedEphemeris`.  An aborted
run calls :meth:`StepRecorder.discard` instead, which drops the steps so
that no partial ephemeris can escape.  A recorder serves a single run.
"""

from __future__ import annotations

import enum
import logging

from ephemjax.epoch import Epoch
from ephemjax.propagation.codec import StateLayout
from ephemjax.propagation.ephemeris import BoundedEphemeris
from ephemjax.propagation.sampling import StepHandler, StepInterpolator, StepModel

logger = logging.getLogger(__name__)


class RecorderState(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZED = "finalized"


class StepRecorder(StepHandler):
    """Record accepted steps and build the ephemeris of a run."""

    def __init__(self):
        self._state = RecorderState.IDLE
        self._steps: list[StepModel] = []
        self._reference: Epoch | None = None
        self._layout: StateLayout | None = None
        self._direction = 1.0

    @property
    def state(self) -> RecorderState:
        return self._state

    @property
    def step_count(self) -> int:
        return len(self._steps)

    def start(self, reference: Epoch, layout: StateLayout, direction: float) -> None:
        """Enter ``RECORDING`` for a run starting at ``reference``.

        Raises:
            RuntimeError: If the recorder is not ``IDLE``.
        """
        if self._state is not RecorderState.IDLE:
            raise RuntimeError(f"Cannot start recording from state {self._state.name}")
        self._reference = reference
        self._layout = layout
        self._direction = 1.0 if direction >= 0.0 else -1.0
        self._steps = []
        self._state = RecorderState.RECORDING

    def record(self, step: StepModel) -> None:
        """Append one accepted step.

        Raises:
            RuntimeError: If the recorder is not ``RECORDING``.
            ValueError: If the step does not continue the recorded steps
                monotonically in the integration direction.
        """
        if self._state is not RecorderState.RECORDING:
            raise RuntimeError(f"Cannot record a step in state {self._state.name}")
        if self._direction * (step.end_offset - step.start_offset) <= 0.0:
            raise ValueError(
                f"Step [{step.start_offset}, {step.end_offset}] does not advance "
                f"in the integration direction"
            )
        if self._steps and step.start_offset != self._steps[-1].end_offset:
            raise ValueError(
                f"Step starting at offset {step.start_offset} does not continue "
                f"the previous step ending at {self._steps[-1].end_offset}"
            )
        self._steps.append(step)

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        self.record(interpolator.model)

    def finalize(self) -> BoundedEphemeris:
        """Freeze the recorded steps into an ephemeris.

        Raises:
            RuntimeError: If the recorder is not ``RECORDING``.
            MissingData: If no step was recorded.
        """
        if self._state is not RecorderState.RECORDING:
            raise RuntimeError(f"Cannot finalize in state {self._state.name}")
        ephemeris = BoundedEphemeris(self._steps, self._layout)
        self._state = RecorderState.FINALIZED
        logger.debug("Recorded %d steps into %r", len(self._steps), ephemeris)
        return ephemeris

    def discard(self) -> None:
        """Drop the steps of an aborted run and return to ``IDLE``."""
        if self._steps:
            logger.debug("Discarding %d recorded steps", len(self._steps))
        self._steps = []
        self._state = RecorderState.IDLE
