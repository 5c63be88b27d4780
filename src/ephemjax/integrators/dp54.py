"""Dormand-Prince 5(4) stepping with a continuous extension.

Each trial step costs seven evaluations of the dynamics.  The fifth-order
solution is propagated and the embedded fourth-order solution only feeds
the error estimate.  The last stage is evaluated on the new state, so an
accepted step hands its final derivative to the next one (FSAL), and the
same seven stages drive Shampine's quartic interpolant in
:func:`dp54_interpolate`: an accepted step can be evaluated anywhere inside
its span without touching the dynamics again.

Rejected trials are retried inside ``jax.lax.while_loop`` with the step
shrunk by :func:`~ephemjax.integrators._adaptive.compute_next_step_size`,
so a whole adaptive step compiles to a single XLA computation.
"""

from __future__ import annotations

from typing import Callable, Optional

import jax
import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from ephemjax.config import get_dtype
from ephemjax.integrators._adaptive import compute_error_norm, compute_next_step_size
from ephemjax.integrators._types import (
    AdaptiveConfig,
    DenseMethod,
    DenseStepResult,
    StepResult,
)

# Butcher tableau coefficients as Python tuples (cast at call time).
# Nodes
_C = (0.0, 1.0 / 5.0, 3.0 / 10.0, 4.0 / 5.0, 8.0 / 9.0, 1.0, 1.0)

# Coupling coefficients (lower-triangular rows)
_A1 = (1.0 / 5.0,)
_A2 = (3.0 / 40.0, 9.0 / 40.0)
_A3 = (44.0 / 45.0, -56.0 / 15.0, 32.0 / 9.0)
_A4 = (19372.0 / 6561.0, -25360.0 / 2187.0, 64448.0 / 6561.0, -212.0 / 729.0)
_A5 = (9017.0 / 3168.0, -355.0 / 33.0, 46732.0 / 5247.0, 49.0 / 176.0, -5103.0 / 18656.0)
_A6 = (35.0 / 384.0, 0.0, 500.0 / 1113.0, 125.0 / 192.0, -2187.0 / 6784.0, 11.0 / 84.0)

# 5th-order weights (primary solution), same as _A6
_B_HIGH = (35.0 / 384.0, 0.0, 500.0 / 1113.0, 125.0 / 192.0, -2187.0 / 6784.0, 11.0 / 84.0, 0.0)

# 4th-order weights (error estimation)
_B_LOW = (
    5179.0 / 57600.0,
    0.0,
    7571.0 / 16695.0,
    393.0 / 640.0,
    -92097.0 / 339200.0,
    187.0 / 2100.0,
    1.0 / 40.0,
)

# Continuous extension (Shampine). Row i multiplies stage k_i, column j
# multiplies theta^(j+1).
_P = (
    (1.0, -8048581381.0 / 2820520608.0, 8663915743.0 / 2820520608.0,
     -12715105075.0 / 11282082432.0),
    (0.0, 0.0, 0.0, 0.0),
    (0.0, 131558114200.0 / 32700410799.0, -68118460800.0 / 10900136933.0,
     87487479700.0 / 32700410799.0),
    (0.0, -1754552775.0 / 470086768.0, 14199869525.0 / 1410260304.0,
     -10690763975.0 / 1880347072.0),
    (0.0, 127303824393.0 / 49829197408.0, -318862633887.0 / 49829197408.0,
     701980252875.0 / 199316789632.0),
    (0.0, -282668133.0 / 205662961.0, 2019193451.0 / 616988883.0,
     -1453857185.0 / 822651844.0),
    (0.0, 40617522.0 / 29380423.0, -110615467.0 / 29380423.0,
     69997945.0 / 29380423.0),
)

# Order of the embedded error estimator
ERROR_ORDER = 4.0

# Dynamics evaluations per trial step
STAGES_PER_ATTEMPT = 7


def _dp54_trial(f, t, state, h):
    """Compute one DP54 trial step with step size h.

    Returns:
        tuple: (5th-order state, 4th-order state, stages of shape (7, n)).
    """
    k0 = f(t, state)
    k1 = f(t + _C[1] * h, state + h * _A1[0] * k0)
    k2 = f(t + _C[2] * h, state + h * (_A2[0] * k0 + _A2[1] * k1))
    k3 = f(t + _C[3] * h, state + h * (_A3[0] * k0 + _A3[1] * k1 + _A3[2] * k2))
    k4 = f(
        t + _C[4] * h,
        state + h * (_A4[0] * k0 + _A4[1] * k1 + _A4[2] * k2 + _A4[3] * k3),
    )
    k5 = f(
        t + _C[5] * h,
        state
        + h * (_A5[0] * k0 + _A5[1] * k1 + _A5[2] * k2 + _A5[3] * k3 + _A5[4] * k4),
    )

    # 5th-order solution (primary); _B_HIGH[1] = _B_HIGH[6] = 0
    state_high = state + h * (
        _B_HIGH[0] * k0
        + _B_HIGH[2] * k2
        + _B_HIGH[3] * k3
        + _B_HIGH[4] * k4
        + _B_HIGH[5] * k5
    )

    # FSAL stage, evaluated on the 5th-order solution
    k6 = f(t + _C[6] * h, state_high)

    # 4th-order solution (for error estimation)
    state_low = state + h * (
        _B_LOW[0] * k0
        + _B_LOW[2] * k2
        + _B_LOW[3] * k3
        + _B_LOW[4] * k4
        + _B_LOW[5] * k5
        + _B_LOW[6] * k6
    )

    return state_high, state_low, jnp.stack([k0, k1, k2, k3, k4, k5, k6])


def dp54_dense_step(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    state: ArrayLike,
    dt: ArrayLike,
    config: Optional[AdaptiveConfig] = None,
    error_dim: Optional[int] = None,
) -> DenseStepResult:
    """Perform a single adaptive DP54 step and keep its dense output.

    Returns the seven stages of the last trial alongside the new state
    so the step can be interpolated with :func:`dp54_interpolate`, and
    never forces acceptance: a step that still exceeds the tolerance at
    ``config.min_step`` (or after ``config.max_step_attempts`` trials) is
    returned with ``accepted=False`` and the caller decides whether to
    retry with ``dt_next`` or give up.

    Error control can be restricted to the leading ``error_dim``
    components. Propagators use this to control the primary state only,
    so that integrating auxiliary equations (state transition matrix,
    user quantities) does not alter the step sequence.

    Args:
        dynamics: Right-hand side ``f(t, x) -> dx/dt``.
        t: Start time of the step.
        state: State at ``t``.
        dt: Requested step, negative to integrate backward.
        config: Step-size control settings, defaults to :class:`AdaptiveConfig`.
        error_dim: Number of leading components under error control.
            ``None`` controls the whole state. Must be a Python int
            (static under ``jax.jit``).

    Returns:
        DenseStepResult: Named tuple with fields ``state``, ``dt_used``,
            ``error_estimate``, ``dt_next``, ``stages``, ``attempts`` and
            ``accepted``.
    """
    if config is None:
        config = AdaptiveConfig()

    dtype = get_dtype()
    t = jnp.asarray(t, dtype=dtype)
    state = jnp.asarray(state, dtype=dtype)
    dt = jnp.asarray(dt, dtype=dtype)
    n_ctrl = state.shape[0] if error_dim is None else error_dim

    def _attempt_step(h):
        state_high, state_low, stages = _dp54_trial(dynamics, t, state, h)
        error = compute_error_norm(
            state_high[:n_ctrl] - state_low[:n_ctrl],
            state_high[:n_ctrl],
            state[:n_ctrl],
            config.abs_tol,
            config.rel_tol,
        )
        return state_high, error, stages

    # Carry: (h, h_used, attempts, done, accepted, state_out, error_out, stages)
    def cond_fn(carry):
        attempts, done = carry[2], carry[3]
        return (~done) & (attempts < config.max_step_attempts)

    def body_fn(carry):
        h, _h_used, attempts = carry[0], carry[1], carry[2]
        state_new, error, stages = _attempt_step(h)

        accepted = error <= 1.0
        at_min_step = jnp.abs(h) <= config.min_step

        h_reduced = compute_next_step_size(
            error, h, ERROR_ORDER, config.safety_factor,
            config.min_scale_factor, config.max_scale_factor,
            config.min_step, config.max_step,
        )
        h_next = jnp.where(accepted, h, h_reduced)

        return (h_next, h, attempts + 1, accepted | at_min_step, accepted,
                state_new, error, stages)

    init_carry = (
        dt,
        dt,
        jnp.asarray(0, dtype=jnp.int32),
        jnp.asarray(False),
        jnp.asarray(False),
        state,
        jnp.asarray(jnp.inf, dtype=dtype),
        jnp.zeros((STAGES_PER_ATTEMPT, state.shape[0]), dtype=dtype),
    )

    (h_retry, h_used, attempts, _done, accepted,
     state_out, error_out, stages_out) = jax.lax.while_loop(cond_fn, body_fn, init_carry)

    h_grow = compute_next_step_size(
        error_out, h_used, ERROR_ORDER, config.safety_factor,
        config.min_scale_factor, config.max_scale_factor,
        config.min_step, config.max_step,
    )

    return DenseStepResult(
        state=state_out,
        dt_used=h_used,
        error_estimate=error_out,
        dt_next=jnp.where(accepted, h_grow, h_retry),
        stages=stages_out,
        attempts=attempts,
        accepted=accepted,
    )


@jax.jit
def dp54_interpolate(
    state: ArrayLike,
    stages: ArrayLike,
    dt: ArrayLike,
    theta: ArrayLike,
) -> Array:
    """Evaluate the DP54 continuous extension inside an accepted step.

    Args:
        state: State at the beginning of the step, shape ``(n,)``.
        stages: Stages of the step from :func:`dp54_dense_step`, shape
            ``(7, n)``.
        dt: Full step size ``dt_used`` of the step (signed).
        theta: Normalised position in the step, ``0`` at its start and
            ``1`` at its end.

    Returns:
        jax.Array: Interpolated state of shape ``(n,)``. Equals ``state``
            at ``theta=0`` and the step's 5th-order solution at
            ``theta=1``.
    """
    dtype = get_dtype()
    state = jnp.asarray(state, dtype=dtype)
    stages = jnp.asarray(stages, dtype=dtype)
    dt = jnp.asarray(dt, dtype=dtype)
    theta = jnp.asarray(theta, dtype=dtype)

    powers = theta ** jnp.arange(1, 5, dtype=dtype)
    weights = jnp.asarray(_P, dtype=dtype) @ powers
    return state + dt * (weights @ stages)


def dp54_step(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    state: ArrayLike,
    dt: ArrayLike,
    config: Optional[AdaptiveConfig] = None,
    control: Optional[Callable[[ArrayLike, ArrayLike], Array]] = None,
) -> StepResult:
    """Advance ``state`` by one adaptive DP54 step of at most ``dt``.

    The last trial is kept even when it misses the tolerance, which only
    happens at ``config.min_step`` or once ``config.max_step_attempts`` is
    used up.  Use :func:`dp54_dense_step` to see whether the step was
    actually accepted.

    Args:
        dynamics: Right-hand side ``f(t, x) -> dx/dt``.
        t: Start time of the step.
        state: State at ``t``.
        dt: Requested step, negative to integrate backward.
        config: Step-size control settings, defaults to :class:`AdaptiveConfig`.
        control: Optional extra term ``u(t, x)`` added to the derivative.

    Returns:
        StepResult: ``state``, ``dt_used``, ``error_estimate`` and ``dt_next``.

    Examples:
        ```python
        from ephemjax.integrators import dp54_step
        result = dp54_step(lambda t, x: -x, 0.0, jnp.array([1.0]), 0.1)
        result.state  # ~exp(-0.1)
        ```
    """
    rhs = dynamics
    if control is not None:
        def rhs(ti, xi):
            return dynamics(ti, xi) + control(ti, xi)

    dense = dp54_dense_step(rhs, t, state, dt, config)
    return StepResult(
        state=dense.state,
        dt_used=dense.dt_used,
        error_estimate=dense.error_estimate,
        dt_next=dense.dt_next,
    )


DP54 = DenseMethod(
    name="dp54",
    dense_step=dp54_dense_step,
    interpolate=dp54_interpolate,
    error_order=ERROR_ORDER,
    stages_per_attempt=STAGES_PER_ATTEMPT,
    dense_evaluations=0,
)
"""Dormand-Prince 5(4), cheaper per step, for loose tolerances."""
