"""Numerical ODE integrators for ephemeris generation.

Provides adaptive embedded Runge-Kutta integrators with continuous
extensions, implemented in JAX for compatibility with ``jax.jit`` and
``jax.vmap``.

Available functions:

- :func:`dop853_dense_step` -- Dormand-Prince 8(5,3) step with dense output
- :func:`dop853_interpolate` -- Evaluate the interpolant of a DOP853 step
- :func:`dp54_step` -- Dormand-Prince 5(4) step (adaptive step)
- :func:`dp54_dense_step` -- Dormand-Prince 5(4) step keeping its stages
- :func:`dp54_interpolate` -- Evaluate the interpolant of a DP54 step
- :func:`initial_step_size` -- Starting step heuristic

The dense steppers are also bundled as :class:`DenseMethod` values,
:data:`DOP853` and :data:`DP54`, looked up by name with
:func:`get_dense_method`.

All step functions share a common interface::

    result = step_fn(dynamics, t, state, dt)

where ``dynamics(t, x) -> dx`` defines the ODE right-hand side.
"""

from ephemjax.integrators._adaptive import (
    compute_error_norm,
    compute_next_step_size,
    initial_step_size,
)
from ephemjax.integrators._types import (
    AdaptiveConfig,
    DenseMethod,
    DenseStepResult,
    StepResult,
)
from ephemjax.integrators.dop853 import (
    DOP853,
    dop853_dense_step,
    dop853_error_norm,
    dop853_interpolate,
)
from ephemjax.integrators.dp54 import (
    DP54,
    ERROR_ORDER,
    STAGES_PER_ATTEMPT,
    dp54_dense_step,
    dp54_interpolate,
    dp54_step,
)

_DENSE_METHODS = {method.name: method for method in (DOP853, DP54)}


def get_dense_method(name: str) -> DenseMethod:
    """Return the dense-output method registered under ``name``.

    Raises:
        ValueError: If no method has that name.
    """
    try:
        return _DENSE_METHODS[name]
    except KeyError:
        raise ValueError(
            f"Unknown integration method '{name}'. Methods: {sorted(_DENSE_METHODS)}"
        ) from None


__all__ = [
    "AdaptiveConfig",
    "DenseMethod",
    "DenseStepResult",
    "StepResult",
    "DOP853",
    "DP54",
    "ERROR_ORDER",
    "STAGES_PER_ATTEMPT",
    "compute_error_norm",
    "compute_next_step_size",
    "initial_step_size",
    "get_dense_method",
    "dop853_dense_step",
    "dop853_error_norm",
    "dop853_interpolate",
    "dp54_step",
    "dp54_dense_step",
    "dp54_interpolate",
]
