"""Numerical propagator driving the adaptive integrator.

:class:`NumericalPropagator` integrates a spacecraft state from its
initial epoch to a target epoch with an adaptive Dormand-Prince integrator,
of order 8(5,3) unless another :class:`~ephemjax.integrators.DenseMethod`
is chosen.
The right-hand side is the user dynamics augmented with every registered
set of additional equations (including the variational equations).

Each run works on a flat vector laid out by a
:class:`~ephemjax.propagation.codec.StateLayout` snapshotted at the start
of the run.  Time inside the run is counted in seconds from the initial
epoch.  The step function is ``jax.jit``-compiled once per layout and
configuration and cached on the propagator; parameter values are passed
as a traced argument so changing them does not trigger recompilation.

Accepted steps are published, in order, to the subscribers of the run:

- the :class:`~ephemjax.propagation.recorder.StepRecorder` in ephemeris
  mode, which builds the :class:`~ephemjax.propagation.ephemeris.BoundedEphemeris`,
- the step handler set with :meth:`NumericalPropagator.set_master_mode`
  (or passed to :meth:`NumericalPropagator.set_ephemeris_mode`).

Rejected trial steps stay inside the integrator and are never published.

Three conditions abort a run and discard the recorded steps: a call to
:meth:`NumericalPropagator.cancel`, a state leaving the physical domain
(:class:`~ephemjax.errors.PhysicallyInvalidState`), and an exhausted
evaluation budget (:class:`~ephemjax.errors.MaxEvaluationsExceeded`).  A
terminal event is not an abort: the run ends normally at the event.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable, Mapping

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array

from ephemjax.config import get_dtype, get_epoch_eq_tolerance
from ephemjax.epoch import Epoch
from ephemjax.errors import (
    ConfigurationError,
    MaxEvaluationsExceeded,
    MissingData,
    NotInEphemerisMode,
    PhysicallyInvalidState,
    PropagationAborted,
    PropagationError,
    UnknownAdditionalState,
)
from ephemjax.integrators import (
    DOP853,
    AdaptiveConfig,
    DenseMethod,
    get_dense_method,
    initial_step_size,
)
from ephemjax.propagation.additional import AdditionalEquations, AdditionalStateRegistry
from ephemjax.propagation.codec import PV_DIM, StateLayout, StateVectorCodec
from ephemjax.propagation.ephemeris import BoundedEphemeris
from ephemjax.propagation.events import Action, EventDetector, find_root, sign_change
from ephemjax.propagation.recorder import StepRecorder
from ephemjax.propagation.sampling import (
    StepHandler,
    StepInterpolator,
    StepModel,
    StepNormalizer,
    as_step_handler,
)
from ephemjax.state import SpacecraftState

logger = logging.getLogger(__name__)

# Dynamics evaluations spent by the starting step heuristic
_INITIAL_STEP_EVALUATIONS = 2


class PropagatorMode(enum.Enum):
    SLAVE = "slave"
    MASTER = "master"
    EPHEMERIS = "ephemeris"


class _EphemerisStatus(enum.Enum):
    NONE = "none"
    GENERATED = "generated"
    EMPTY = "empty"
    ABORTED = "aborted"


class NumericalPropagator:
    """Adaptive-step numerical propagator.

    Args:
        dynamics: JAX-traceable right-hand side of the primary state
            ``[x, y, z, vx, vy, vz]`` or ``[x, y, z, vx, vy, vz, m]``.
            Called as ``dynamics(t, state)``, or ``dynamics(t, state,
            params)`` when ``parameters`` is given, with ``t`` the seconds
            elapsed since the initial epoch of the run.
        config: Integrator configuration.  Defaults to
            :class:`~ephemjax.integrators.AdaptiveConfig`.
        parameters: Named parameters of the dynamics and their values.
            They are passed to ``dynamics`` as a 1-D array in mapping
            order.
        method: Dense-output integration method, or its name.  Defaults to
            :data:`~ephemjax.integrators.DOP853`.

    Examples:
        ```python
        from ephemjax import Epoch, SpacecraftState
        from ephemjax.dynamics import create_two_body_dynamics
        from ephemjax.integrators import AdaptiveConfig
        from ephemjax.propagation import NumericalPropagator

        propagator = NumericalPropagator(
            create_two_body_dynamics(),
            AdaptiveConfig(abs_tol=1e-8, rel_tol=1e-8),
        )
        epoch0 = Epoch(2024, 1, 1)
        propagator.set_initial_state(
            SpacecraftState(epoch0, [7.0e6, 1.0e6, 4.0e6], [-500.0, 8000.0, 1000.0])
        )
        propagator.set_ephemeris_mode()
        propagator.propagate(epoch0 + 86400.0)
        ephemeris = propagator.get_generated_ephemeris()
        ```
    """

    def __init__(
        self,
        dynamics: Callable[..., Array],
        config: AdaptiveConfig | None = None,
        parameters: Mapping[str, float] | None = None,
        method: DenseMethod | str = DOP853,
    ):
        self.config = config if config is not None else AdaptiveConfig()
        self.method = get_dense_method(method) if isinstance(method, str) else method
        self._parameters: dict[str, float] = {
            str(name): float(value) for name, value in (parameters or {}).items()
        }
        if parameters is None:
            def _dynamics(t, state, params):
                return dynamics(t, state)
            self._dynamics = _dynamics
        else:
            self._dynamics = dynamics

        self._registry = AdditionalStateRegistry()
        self._detectors: list[EventDetector] = []
        self._initial_state: SpacecraftState | None = None

        self._mode = PropagatorMode.SLAVE
        self._handler: StepHandler | None = None

        self._ephemeris: BoundedEphemeris | None = None
        self._ephemeris_status = _EphemerisStatus.NONE

        self._cancel_event = threading.Event()
        self._running = False
        self._evaluations = 0
        self._compiled: dict = {}

    # Configuration

    @property
    def dynamics(self) -> Callable[..., Array]:
        """Dynamics in the ``dynamics(t, state, params)`` form."""
        return self._dynamics

    @property
    def parameter_names(self) -> tuple[str, ...]:
        return tuple(self._parameters)

    def get_parameter(self, name: str) -> float:
        try:
            return self._parameters[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown parameter '{name}'. Parameters: {list(self._parameters)}"
            ) from None

    def set_parameter(self, name: str, value: float) -> None:
        """Change the value of an existing parameter."""
        self.get_parameter(name)
        if self._running:
            raise ConfigurationError("Cannot change parameters while a propagation is running")
        self._parameters[name] = float(value)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def evaluations(self) -> int:
        """Number of dynamics evaluations of the last :meth:`propagate` call."""
        return self._evaluations

    def set_initial_state(self, state: SpacecraftState) -> None:
        if self._running:
            raise ConfigurationError("Cannot reset the initial state while a propagation is running")
        self._initial_state = state

    @property
    def initial_state(self) -> SpacecraftState:
        if self._initial_state is None:
            raise ConfigurationError("The initial state has not been set")
        return self._initial_state

    def add_additional_equations(self, equations: AdditionalEquations) -> None:
        """Register additional equations integrated with the main state.

        Raises:
            ConfigurationError: If an additional state with the same name
                is already registered, or a propagation is running.
        """
        self._registry.register(equations)

    def get_additional_equations(self, name: str) -> AdditionalEquations:
        return self._registry.get(name)

    def add_event_detector(self, detector: EventDetector) -> None:
        if self._running:
            raise ConfigurationError("Cannot add an event detector while a propagation is running")
        self._detectors.append(detector)

    def clear_event_detectors(self) -> None:
        if self._running:
            raise ConfigurationError("Cannot remove event detectors while a propagation is running")
        self._detectors.clear()

    @property
    def event_detectors(self) -> tuple[EventDetector, ...]:
        return tuple(self._detectors)

    # Modes

    @property
    def mode(self) -> PropagatorMode:
        return self._mode

    def set_slave_mode(self) -> None:
        """Only return the final state of each run."""
        self._mode = PropagatorMode.SLAVE
        self._handler = None

    def set_master_mode(self, handler: StepHandler | Callable) -> None:
        """Notify ``handler`` of every accepted step.

        Args:
            handler: :class:`~ephemjax.propagation.sampling.StepHandler` or
                callable ``handler(interpolator, is_last)``.
        """
        self._mode = PropagatorMode.MASTER
        self._handler = as_step_handler(handler)

    def set_master_mode_fixed(self, step: float, handler) -> None:
        """Notify ``handler(state, is_last)`` on a fixed grid of ``step`` seconds."""
        self.set_master_mode(StepNormalizer(step, handler))

    def set_ephemeris_mode(self, handler: StepHandler | Callable | None = None) -> None:
        """Record every accepted step into an ephemeris.

        Args:
            handler: Optional step handler also notified of every step.
        """
        self._mode = PropagatorMode.EPHEMERIS
        self._handler = None if handler is None else as_step_handler(handler)

    def get_generated_ephemeris(self) -> BoundedEphemeris:
        """Return the ephemeris generated by the last run.

        Raises:
            NotInEphemerisMode: If the propagator is not in ephemeris mode
                or no run was recorded since ephemeris mode was set.
            PropagationAborted: If the last run was aborted.
            MissingData: If the last run had zero length.
        """
        if self._mode is not PropagatorMode.EPHEMERIS:
            raise NotInEphemerisMode("The propagator is not in ephemeris generation mode")
        status = self._ephemeris_status
        if status is _EphemerisStatus.NONE:
            raise NotInEphemerisMode("No propagation was recorded in ephemeris mode")
        if status is _EphemerisStatus.ABORTED:
            raise PropagationAborted("The last propagation was aborted, no ephemeris was generated")
        if status is _EphemerisStatus.EMPTY:
            raise MissingData("The last propagation had zero length, no step was recorded")
        return self._ephemeris

    def cancel(self) -> None:
        """Abort the running propagation at the next step boundary.

        Safe to call from another thread or from a step handler.  A call
        made while the last step is handled aborts the run once the step
        handlers return.  The aborted run raises
        :class:`~ephemjax.errors.PropagationAborted` and produces no
        ephemeris.
        """
        self._cancel_event.set()

    # Propagation

    def propagate(self, target: Epoch, start: Epoch | None = None) -> SpacecraftState:
        """Propagate the initial state to ``target``.

        Every call starts from :attr:`initial_state`.  Integration runs
        forward or backward according to the sign of ``target -
        initial_state.epoch``.

        Args:
            target: Target epoch.
            start: Optional intermediate start.  The propagator first
                integrates silently (no handlers, no events, no recording)
                from the initial state to ``start``, then runs normally
                from ``start`` to ``target``.

        Returns:
            SpacecraftState: State at ``target``, or at the epoch of the
                terminal event that stopped the run.

        Raises:
            ConfigurationError: On an invalid setup, or when called while
                a propagation of this propagator is already running.
            PhysicallyInvalidState: If the mass becomes negative.
            PropagationAborted: If the run was cancelled or the integrator
                failed to meet the tolerance at the minimum step.
            MaxEvaluationsExceeded: If the evaluation budget is exhausted.
        """
        if self._running:
            raise ConfigurationError(
                "A propagation is already running; propagate cannot be called from "
                "a step handler or event handler of the same propagator"
            )
        initial = self.initial_state
        self._cancel_event.clear()
        self._evaluations = 0
        self._running = True
        self._registry.freeze()
        if self._mode is PropagatorMode.EPHEMERIS:
            self._ephemeris = None
            self._ephemeris_status = _EphemerisStatus.ABORTED
        try:
            if start is not None:
                initial = self._integrate(initial, start, subscribers=(), detectors=())
            return self._run(initial, target)
        except PropagationError as exc:
            logger.warning("Propagation aborted: %s", exc)
            raise
        finally:
            self._registry.unfreeze()
            self._running = False

    def _run(self, initial: SpacecraftState, target: Epoch) -> SpacecraftState:
        subscribers = []
        recorder = None
        if self._mode is PropagatorMode.EPHEMERIS:
            recorder = StepRecorder()
            subscribers.append(recorder)
        if self._handler is not None:
            subscribers.append(self._handler)

        try:
            final = self._integrate(initial, target, subscribers, tuple(self._detectors),
                                    recorder=recorder)
        except Exception:
            if recorder is not None:
                recorder.discard()
            raise

        if recorder is not None:
            if recorder.step_count == 0:
                recorder.discard()
                self._ephemeris_status = _EphemerisStatus.EMPTY
            else:
                self._ephemeris = recorder.finalize()
                self._ephemeris_status = _EphemerisStatus.GENERATED
        return final

    def _prepare(self, initial: SpacecraftState) -> tuple[StateLayout, np.ndarray]:
        layout = self._registry.build_layout(initial.has_mass)
        for name in initial.additional:
            if name not in self._registry:
                raise UnknownAdditionalState(name, self._registry.names)

        for tol_name in ("abs_tol", "rel_tol"):
            tol = getattr(self.config, tol_name)
            if isinstance(tol, tuple) and len(tol) != layout.primary_dim:
                raise ConfigurationError(
                    f"{tol_name} has {len(tol)} entries but the state has "
                    f"{layout.primary_dim} primary components"
                )

        state = initial
        for equations in self._registry:
            state = state.with_additional(equations.name, equations.initial_value(initial))
        return layout, StateVectorCodec(layout).encode(state)

    def _compiled_functions(self, layout: StateLayout):
        key = (layout, self.config)
        if key not in self._compiled:
            self._compiled[key] = self._compile(layout)
        return self._compiled[key]

    def _compile(self, layout: StateLayout):
        """Build the jitted step and starting-step functions for ``layout``."""
        config = self.config
        method = self.method
        n0 = layout.primary_dim
        dynamics = self._dynamics
        blocks = [(self._registry.get(name), layout.block_slice(name))
                  for name in layout.names]

        def rhs(t, y, params):
            primary = y[:n0]
            primary_dot = dynamics(t, primary, params)
            parts = [jnp.asarray(primary_dot)]
            for equations, sl in blocks:
                parts.append(
                    equations.compute_derivatives(t, primary, primary_dot, y[sl], params)
                )
            return jnp.concatenate(parts)

        def step(t, y, h, params):
            return method.dense_step(lambda ti, yi: rhs(ti, yi, params), t, y, h,
                                     config, error_dim=n0)

        def first_step(t, y, direction, params):
            return initial_step_size(lambda ti, yi: rhs(ti, yi, params), t, y, direction,
                                     method.error_order, config.abs_tol, config.rel_tol,
                                     config.max_step, error_dim=n0)

        logger.debug("Compiling %s step function for layout %s", method.name, layout)
        return jax.jit(step), jax.jit(first_step)

    def _count(self, evaluations: int) -> None:
        self._evaluations += evaluations
        if self._evaluations > self.config.max_evaluations:
            raise MaxEvaluationsExceeded(
                f"Exceeded the budget of {self.config.max_evaluations} dynamics evaluations"
            )

    def _integrate(self, initial, target, subscribers, detectors, recorder=None):
        reference = initial.epoch
        t_target = float(target - reference)
        layout, y0 = self._prepare(initial)
        codec = StateVectorCodec(layout)
        config = self.config
        dtype = get_dtype()

        direction = 1.0 if t_target >= 0.0 else -1.0
        if recorder is not None:
            recorder.start(reference, layout, direction)
        for subscriber in subscribers:
            subscriber.init(codec.decode(y0, reference), target)

        if abs(t_target) < get_epoch_eq_tolerance():
            logger.info("Zero-length propagation at %s", reference)
            return codec.decode(y0, reference)

        logger.info("Propagating from %s to %s (%d components)",
                    reference, target, layout.dimension())

        step_fn, first_step_fn = self._compiled_functions(layout)
        params = jnp.asarray(list(self._parameters.values()), dtype=dtype)

        if config.initial_step is not None:
            h = direction * min(abs(float(config.initial_step)), config.max_step)
        else:
            h = float(first_step_fn(0.0, y0, direction, params))
            self._count(_INITIAL_STEP_EVALUATIONS)

        g_values = {}
        for detector in detectors:
            state0 = codec.decode(y0, reference)
            detector.init(state0, target)
            g_values[id(detector)] = float(detector.g(state0))

        t = 0.0
        y = jnp.asarray(y0, dtype=dtype)
        n_steps = 0

        while True:
            if self._cancel_event.is_set():
                raise PropagationAborted(f"Propagation cancelled at {reference + t}")

            remaining = t_target - t
            if abs(h) >= abs(remaining) or abs(remaining) - abs(h) <= config.min_step:
                h = remaining

            result = step_fn(t, y, h, params)
            self._count(self.method.stages_per_attempt * int(result.attempts)
                        + self.method.dense_evaluations)

            h_used = float(result.dt_used)
            if not bool(result.accepted):
                if abs(h_used) <= config.min_step:
                    raise PropagationAborted(
                        f"Step size {h_used} s at {reference + t} reached the minimum "
                        f"step without meeting the tolerance"
                    )
                logger.debug("Step from offset %.6f not accepted after %d attempts, "
                             "retrying with %.6g s", t, int(result.attempts),
                             float(result.dt_next))
                h = float(result.dt_next)
                continue

            reached = h_used == remaining
            t_end = t_target if reached else t + h_used
            y_end = result.state
            if layout.has_mass and float(y_end[PV_DIM]) < 0.0:
                raise PhysicallyInvalidState(
                    f"Negative spacecraft mass {float(y_end[PV_DIM])} kg at {reference + t_end}"
                )

            model = StepModel(reference, t, t_end, h_used, np.asarray(y),
                              np.asarray(result.stages), self.method.name)

            stop = False
            if detectors:
                model, stop = self._handle_events(model, codec, detectors, g_values)
                if stop:
                    t_end = model.end_offset
                    y_end = jnp.asarray(model.interpolate(t_end), dtype=dtype)

            is_last = reached or stop
            interpolator = StepInterpolator(model, codec)
            for subscriber in subscribers:
                subscriber.handle_step(interpolator, is_last)
            n_steps += 1

            t = t_end
            y = y_end
            if is_last:
                break
            h = float(result.dt_next)

        if self._cancel_event.is_set():
            raise PropagationAborted(f"Propagation cancelled at {reference + t}")

        final = codec.decode(np.asarray(y), reference + t)
        logger.info("Propagation finished at %s after %d steps and %d evaluations",
                    final.epoch, n_steps, self._evaluations)
        return final

    def _handle_events(self, model, codec, detectors, g_values):
        """Detect the events of one step and apply their actions.

        Returns:
            tuple: The step, truncated at the event epoch when an event
                stopped the propagation, and whether it did.
        """
        t0, t1 = model.start_offset, model.end_offset
        reference = model.reference

        def state_at(t):
            return codec.decode(model.interpolate(t), reference + t)

        occurrences = []
        for detector in detectors:
            ga = g_values[id(detector)]
            n_sub = max(1, int(np.ceil(abs(t1 - t0) / detector.max_check)))
            ta = t0
            for i in range(1, n_sub + 1):
                tb = t1 if i == n_sub else t0 + (t1 - t0) * i / n_sub
                gb = float(detector.g(state_at(tb)))
                if sign_change(ga, gb):
                    t_event = find_root(
                        lambda t, d=detector: float(d.g(state_at(t))),
                        ta, tb, ga, gb, detector.threshold, detector.max_iterations,
                    )
                    occurrences.append((t_event, detector, gb > ga))
                ta, ga = tb, gb
            g_values[id(detector)] = ga

        sign = 1.0 if t1 >= t0 else -1.0
        occurrences.sort(key=lambda item: sign * item[0])
        for t_event, detector, increasing in occurrences:
            state = state_at(t_event)
            action = detector.event_occurred(state, increasing)
            logger.debug("Event %s at %s (%s)", type(detector).__name__, state.epoch,
                         action.name)
            if action is Action.STOP:
                for other in detectors:
                    g_values[id(other)] = float(other.g(state))
                return model.truncated(t_event), True
        return model, False
