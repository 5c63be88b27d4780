"""Point-mass reference dynamics.

Provides the two-body equations of motion used by the tests and examples
to drive the propagator.  Force-model physics is otherwise outside the
scope of ephemjax: any JAX-traceable ``dynamics(t, state)`` or
``dynamics(t, state, params)`` callable can be propagated.

The factory captures static configuration at Python trace time: the
``with_mass`` and thrust settings become Python ``if`` branches that are
resolved during ``jax.jit`` tracing.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from ephemjax.config import get_dtype
from ephemjax.constants import G0_STANDARD, GM_EARTH

TWO_BODY_PARAMETERS = ("gm",)
"""Names of the parameters accepted by the parametric two-body dynamics."""


def accel_point_mass(r: ArrayLike, gm: ArrayLike) -> Array:
    """Acceleration due to a point-mass central body at the origin.

    Args:
        r: Position of the object [m].  Shape ``(3,)`` or longer (only the
            first 3 elements are used).
        gm: Gravitational parameter of the central body [m^3/s^2].

    Returns:
        Acceleration vector [m/s^2], shape ``(3,)``.
    """
    r = jnp.asarray(r, dtype=get_dtype())[:3]
    r_norm = jnp.linalg.norm(r)
    return -gm * r / r_norm**3


@dataclass(frozen=True)
class TwoBodyConfig:
    """Configuration of the two-body reference dynamics.

    Args:
        gm: Gravitational parameter [m^3/s^2].  Ignored by the parametric
            form, which reads it from the parameter vector.
        with_mass: Whether the state carries a 7th mass component.
        thrust: Constant thrust along the velocity direction [N].  Requires
            ``with_mass``.
        isp: Specific impulse of the engine [s].
    """

    gm: float = GM_EARTH
    with_mass: bool = False
    thrust: float = 0.0
    isp: float = 300.0

    def __post_init__(self):
        if self.gm <= 0.0:
            raise ValueError(f"gm must be positive, got {self.gm}")
        if self.thrust != 0.0 and not self.with_mass:
            raise ValueError("thrust requires with_mass=True")
        if self.isp <= 0.0:
            raise ValueError(f"isp must be positive, got {self.isp}")


def create_two_body_dynamics(
    config: TwoBodyConfig | None = None,
    parametric: bool = False,
) -> Callable[..., Array]:
    """Create a two-body dynamics function.

    Args:
        config: Dynamics configuration.  Defaults to Earth point-mass
            gravity without mass.
        parametric: When ``True`` the returned function has the signature
            ``dynamics(t, state, params)`` with ``params[0]`` the
            gravitational parameter (see :data:`TWO_BODY_PARAMETERS`),
            so that sensitivities with respect to it can be computed.

    Returns:
        A callable ``dynamics(t, state)`` (or ``dynamics(t, state,
        params)``) returning the time-derivative of
        ``[x, y, z, vx, vy, vz]`` or ``[x, y, z, vx, vy, vz, m]``.

    Examples:
        ```python
        import jax.numpy as jnp
        from ephemjax.dynamics import create_two_body_dynamics
        dynamics = create_two_body_dynamics()
        dynamics(0.0, jnp.array([7.0e6, 0.0, 0.0, 0.0, 7546.0, 0.0]))
        ```
    """
    if config is None:
        config = TwoBodyConfig()

    _with_mass = config.with_mass
    _thrust = config.thrust
    _mass_rate = -config.thrust / (config.isp * G0_STANDARD)

    def _derivative(state, gm):
        r = state[:3]
        v = state[3:6]
        a = accel_point_mass(r, gm)

        if not _with_mass:
            return jnp.concatenate([v, a])

        if _thrust != 0.0:
            a = a + (_thrust / state[6]) * v / jnp.linalg.norm(v)
        m_dot = jnp.full((1,), _mass_rate, dtype=state.dtype)
        return jnp.concatenate([v, a, m_dot])

    if parametric:
        def dynamics(t: ArrayLike, state: ArrayLike, params: ArrayLike) -> Array:
            return _derivative(jnp.asarray(state), params[0])
    else:
        _gm = config.gm

        def dynamics(t: ArrayLike, state: ArrayLike) -> Array:
            return _derivative(jnp.asarray(state), _gm)

    return dynamics
