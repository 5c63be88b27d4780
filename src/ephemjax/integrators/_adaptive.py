"""Step-size control shared by the adaptive steppers.

A trial step is scored by :func:`compute_error_norm` (accepted when the
score is at most one), the following step is sized by
:func:`compute_next_step_size`, and the very first step of a propagation
comes from :func:`initial_step_size`.
"""

from __future__ import annotations

from collections.abc import Callable

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from ephemjax.config import get_dtype


def compute_error_norm(
    error_vec: ArrayLike,
    state_new: ArrayLike,
    state_old: ArrayLike,
    abs_tol: float | tuple[float, ...],
    rel_tol: float | tuple[float, ...],
) -> Array:
    """Score a trial step against mixed absolute/relative tolerances.

    The score is the largest ratio of error to tolerance over all
    components, each component being scaled by

    .. math::

        \\text{tol}_i = \\text{abs\\_tol}_i + \\text{rel\\_tol}_i
            \\cdot \\max(|y^{\\text{new}}_i|, |y^{\\text{old}}_i|)

    Args:
        error_vec: Difference between the embedded solutions.
        state_new: Propagated (higher-order) solution.
        state_old: State at the start of the step.
        abs_tol: Absolute error tolerance, scalar or one entry per component.
        rel_tol: Relative error tolerance, scalar or one entry per component.

    Returns:
        jax.Array: Scalar score, at most 1.0 for an acceptable step.
    """
    dtype = get_dtype()
    error_vec = jnp.asarray(error_vec, dtype=dtype)
    state_new = jnp.asarray(state_new, dtype=dtype)
    state_old = jnp.asarray(state_old, dtype=dtype)
    abs_tol = jnp.asarray(abs_tol, dtype=dtype)
    rel_tol = jnp.asarray(rel_tol, dtype=dtype)

    scale = abs_tol + rel_tol * jnp.maximum(jnp.abs(state_new), jnp.abs(state_old))
    return jnp.max(jnp.abs(error_vec) / scale)


def compute_next_step_size(
    error: ArrayLike,
    h: ArrayLike,
    order: float,
    safety_factor: float,
    min_scale_factor: float,
    max_scale_factor: float,
    min_step: float,
    max_step: float,
) -> Array:
    """Size the next trial from the score of the current one.

    .. math::

        h_{\\text{next}} = |h| \\cdot S \\cdot
            \\left(\\frac{1}{\\text{error}}\\right)^{1/(p+1)}

    with safety factor *S* and estimator order *p*.  The growth ratio and
    the resulting magnitude are both clipped, and the sign of ``h`` is kept.

    Args:
        error: Normalized error from :func:`compute_error_norm`.
        h: Signed size of the scored step.
        order: Order of the error estimator.
        safety_factor: Safety factor S.
        min_scale_factor: Minimum allowed ratio ``|h_next| / |h|``.
        max_scale_factor: Maximum allowed ratio ``|h_next| / |h|``.
        min_step: Absolute minimum step size.
        max_step: Absolute maximum step size.

    Returns:
        jax.Array: Signed size of the next trial.
    """
    error = jnp.asarray(error, dtype=get_dtype())
    h = jnp.asarray(h, dtype=get_dtype())

    abs_h = jnp.abs(h)
    sign_h = jnp.sign(h)

    exponent = 1.0 / (order + 1.0)
    raw_scale = jnp.where(error > 0.0, jnp.power(1.0 / error, exponent), max_scale_factor)
    scale = safety_factor * raw_scale

    scale = jnp.clip(scale, min_scale_factor, max_scale_factor)
    return sign_h * jnp.clip(abs_h * scale, min_step, max_step)


def initial_step_size(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    t0: ArrayLike,
    state0: ArrayLike,
    direction: float,
    order: float,
    abs_tol: float | tuple[float, ...],
    rel_tol: float | tuple[float, ...],
    max_step: float,
    error_dim: int | None = None,
) -> Array:
    """Select the magnitude of the first trial step.

    Estimates the step from the size of the state, its derivative, and a
    finite-difference estimate of the second derivative, so that the
    local error of the first step is of the order of the tolerance. Costs
    two dynamics evaluations.

    Args:
        dynamics: ODE right-hand side ``f(t, x) -> dx/dt``.
        t0: Initial time.
        state0: Initial state vector.
        direction: ``+1.0`` for forward, ``-1.0`` for backward integration.
        order: Order of the error estimator.
        abs_tol: Absolute tolerance, scalar or one entry per controlled
            component.
        rel_tol: Relative tolerance, scalar or one entry per controlled
            component.
        max_step: Upper bound of the returned step magnitude.
        error_dim: Number of leading components taken into account.
            ``None`` uses the whole state.

    Returns:
        jax.Array: Signed initial step size.

    References:

        1. E. Hairer, S. P. Norsett and G. Wanner, *Solving Ordinary
           Differential Equations I: Nonstiff Problems*, Sec. II.4, 1993.
    """
    dtype = get_dtype()
    t0 = jnp.asarray(t0, dtype=dtype)
    state0 = jnp.asarray(state0, dtype=dtype)
    n = state0.shape[0] if error_dim is None else error_dim

    def rms(v):
        return jnp.sqrt(jnp.mean(v * v))

    f0 = dynamics(t0, state0)
    scale = (jnp.asarray(abs_tol, dtype=dtype)
             + jnp.asarray(rel_tol, dtype=dtype) * jnp.abs(state0[:n]))
    d0 = rms(state0[:n] / scale)
    d1 = rms(f0[:n] / scale)

    h0 = jnp.where((d0 < 1e-5) | (d1 < 1e-5), 1e-6, 0.01 * d0 / d1)

    state1 = state0 + direction * h0 * f0
    f1 = dynamics(t0 + direction * h0, state1)
    d2 = rms((f1[:n] - f0[:n]) / scale) / h0

    d12 = jnp.maximum(d1, d2)
    h1 = jnp.where(
        d12 <= 1e-15,
        jnp.maximum(1e-6, h0 * 1e-3),
        jnp.power(0.01 / jnp.where(d12 <= 1e-15, 1.0, d12), 1.0 / (order + 1.0)),
    )

    return direction * jnp.minimum(jnp.minimum(100.0 * h0, h1), max_step)
