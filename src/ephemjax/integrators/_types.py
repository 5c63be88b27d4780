"""Type definitions for numerical integrators.

Provides the core data types used by the integrator implementations:

- :class:`StepResult`: Output of a plain step function, containing the new
  state, actual timestep used, error estimate, and suggested next timestep.
- :class:`DenseStepResult`: Output of a dense-output step function.  Adds
  the Runge-Kutta stages that define the continuous interpolant over the
  step, the number of attempts spent, and whether the step met the
  tolerance.
- :class:`AdaptiveConfig`: Configuration for adaptive step-size control.
- :class:`DenseMethod`: A dense-output stepper bundled with its
  interpolant and evaluation costs.

All types are :class:`~typing.NamedTuple` instances, which JAX treats as
pytrees automatically. This means they work seamlessly with ``jax.jit``,
``jax.vmap``, and ``jax.lax`` control flow primitives.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import NamedTuple

from jax import Array


class StepResult(NamedTuple):
    """Result of a single integrator step.

    Attributes:
        state: State vector at time ``t + dt_used``.
        dt_used: Actual timestep taken. This may be smaller than the
            requested ``dt`` if the step was rejected and retried.
        error_estimate: Normalized error estimate. A value <= 1.0 means the
            step met the tolerance.
        dt_next: Suggested timestep for the next step.
    """

    state: Array
    dt_used: Array
    error_estimate: Array
    dt_next: Array


class DenseStepResult(NamedTuple):
    """Result of a single integrator step with dense output.

    Attributes:
        state: State vector at time ``t + dt_used``.
        dt_used: Step size of the last attempt, the one whose solution is
            returned.
        error_estimate: Normalized error of the last attempt.
        dt_next: Suggested timestep for the next step.  When the step was
            not accepted, this is the reduced size to retry with.
        stages: Dense output data of the last attempt, shape ``(7, n)``:
            the Runge-Kutta stages for DP54, the interpolation
            coefficients for DOP853.  Together with the initial state and
            ``dt_used`` they define the continuous interpolant over the
            step.
        attempts: Number of trial steps computed.
        accepted: Whether the returned step met the error tolerance.
    """

    state: Array
    dt_used: Array
    error_estimate: Array
    dt_next: Array
    stages: Array
    attempts: Array
    accepted: Array


class AdaptiveConfig(NamedTuple):
    """Configuration for adaptive step-size control.

    Default values provide a reasonable starting point for orbital
    mechanics problems.  The configuration is immutable and hashable, so
    propagators use it as part of the key of their compiled step cache.

    Attributes:
        abs_tol: Absolute error tolerance. Either a scalar applied to every
            controlled component or a tuple with one entry per primary
            state component (position, velocity and, when present, mass).
        rel_tol: Relative error tolerance, scalar or tuple like ``abs_tol``.
        safety_factor: Multiplicative safety factor applied to step-size
            predictions. Values < 1.0 produce conservative step sizes.
        min_scale_factor: Minimum allowed ratio ``dt_next / dt_used``.
            Prevents excessively aggressive step-size reduction.
        max_scale_factor: Maximum allowed ratio ``dt_next / dt_used``.
            Prevents excessively aggressive step-size growth.
        min_step: Absolute minimum allowed step size. A step that still
            fails the tolerance at this size is reported as not accepted.
        max_step: Absolute maximum allowed step size.
        max_step_attempts: Maximum number of trial steps computed inside
            one call before control returns to the caller.
        initial_step: Magnitude of the first trial step. ``None`` selects
            it automatically from the dynamics at the initial state.
        max_evaluations: Budget of dynamics evaluations for a whole
            propagation run.
    """

    abs_tol: float | tuple[float, ...] = 1e-6
    rel_tol: float | tuple[float, ...] = 1e-3
    safety_factor: float = 0.9
    min_scale_factor: float = 0.2
    max_scale_factor: float = 10.0
    min_step: float = 1e-12
    max_step: float = 900.0
    max_step_attempts: int = 10
    initial_step: float | None = None
    max_evaluations: int = 1_000_000


class DenseMethod(NamedTuple):
    """An adaptive stepper with a continuous extension.

    Attributes:
        name: Short name, stored with every recorded step.
        dense_step: ``dense_step(dynamics, t, state, dt, config, error_dim)``
            returning a :class:`DenseStepResult`.
        interpolate: ``interpolate(state, stages, dt, theta)`` evaluating
            the continuous extension of a step.
        error_order: Order of the embedded error estimator.
        stages_per_attempt: Dynamics evaluations per trial step.
        dense_evaluations: Dynamics evaluations per call spent on the
            continuous extension.
    """

    name: str
    dense_step: Callable
    interpolate: Callable
    error_order: float
    stages_per_attempt: int
    dense_evaluations: int
