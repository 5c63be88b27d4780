"""Integration tolerances derived from a target position error."""

from __future__ import annotations

import numpy as np

from ephemjax.state import SpacecraftState

MASS_ABS_TOL = 1.0e-6
"""Absolute tolerance on the mass component [kg]."""


def cartesian_tolerances(
    dp: float,
    state: SpacecraftState,
    gm: float,
) -> tuple[tuple[float, ...], tuple[float, ...]]:
    """Estimate tolerance vectors for a Cartesian integration.

    The velocity tolerance is the velocity error that, through the
    gravitational acceleration, builds up a position error of ``dp``:
    ``dv = gm * dp / (v * r^2)``.  The relative tolerance is ``dp / r`` for
    every component.

    Args:
        dp: Target position error [m].
        state: State at which the tolerances are estimated.
        gm: Gravitational parameter of the central body [m^3/s^2].

    Returns:
        tuple: ``(abs_tol, rel_tol)``, each with one entry per primary
            state component (6, or 7 when ``state`` has mass), ready for
            :class:`~ephemjax.integrators.AdaptiveConfig`.

    Examples:
        ```python
        abs_tol, rel_tol = cartesian_tolerances(1.0, state0, GM_EARTH)
        config = AdaptiveConfig(abs_tol=abs_tol, rel_tol=rel_tol)
        ```
    """
    if dp <= 0.0:
        raise ValueError(f"dp must be positive, got {dp}")
    r2 = float(np.dot(state.position, state.position))
    v = float(np.linalg.norm(state.velocity))
    dv = gm * dp / (v * r2)

    abs_tol = [dp, dp, dp, dv, dv, dv]
    n = 6
    if state.has_mass:
        abs_tol.append(MASS_ABS_TOL)
        n = 7
    rel = float(dp / np.sqrt(r2))
    return tuple(abs_tol), tuple([rel] * n)
