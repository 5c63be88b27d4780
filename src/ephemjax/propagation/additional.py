"""Additional equations and the registry of named additional states.

Additional equations integrate extra quantities alongside the main
spacecraft state, for instance an accumulated cost or the
state-transition matrix of the variational equations.  Each set of
equations owns a named, fixed-size block of the flat integration vector.

The :class:`AdditionalStateRegistry` is the ordered arena of these blocks.
Names are unique: registering a duplicate is a configuration error
detected at setup time.  The registry is frozen while a propagation runs
and its content is snapshotted into an immutable
:class:`~ephemjax.propagation.codec.StateLayout` that the generated
ephemeris keeps for decoding.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

import numpy as np
from jax import Array

from ephemjax.errors import ConfigurationError, MissingData, UnknownAdditionalState
from ephemjax.propagation.codec import SensitivityInfo, StateLayout
from ephemjax.state import SpacecraftState


class AdditionalEquations:
    """Equations integrated alongside the main state.

    Args:
        name: Name of the additional state produced by the equations.
        size: Number of components of the additional state.
        derivatives: JAX-traceable function
            ``derivatives(t, state, state_dot, block) -> block_dot`` where
            ``state`` is the primary state (position, velocity and
            optional mass), ``state_dot`` its time derivative and
            ``block`` the current value of the additional state.  Required
            unless a subclass overrides :meth:`compute_derivatives`.
        initial_value: Initial value of the block, used when the initial
            spacecraft state does not already carry it.

    Examples:
        ```python
        import jax.numpy as jnp
        from ephemjax.propagation import AdditionalEquations
        # Accumulated speed change: d(dv)/dt = |a|
        dv = AdditionalEquations(
            "dv", 1,
            lambda t, x, xdot, block: jnp.linalg.norm(xdot[3:6])[None],
            initial_value=[0.0],
        )
        ```
    """

    def __init__(
        self,
        name: str,
        size: int,
        derivatives: Callable[..., Array] | None = None,
        initial_value=None,
    ):
        if not name:
            raise ConfigurationError("Additional equations need a non-empty name")
        overridden = type(self).compute_derivatives is not AdditionalEquations.compute_derivatives
        if derivatives is None and not overridden:
            raise ConfigurationError(
                f"Additional equations '{name}' need a derivatives function"
            )
        self.name = name
        self._size = int(size)
        self._derivatives = derivatives
        self._initial_value = None
        if initial_value is not None:
            value = np.array(initial_value, dtype=np.float64).reshape(-1)
            if value.shape[0] != self._size:
                raise ConfigurationError(
                    f"Initial value of '{name}' has {value.shape[0]} components, "
                    f"expected {self._size}"
                )
            self._initial_value = value

    def dimension(self) -> int:
        """Number of components of the additional state."""
        return self._size

    def sensitivity_info(self) -> SensitivityInfo | None:
        """Shape of the sensitivity block, for equations that produce one."""
        return None

    def initial_value(self, state: SpacecraftState) -> np.ndarray:
        """Return the block value at the start of a run.

        Raises:
            MissingData: If neither ``state`` nor the equations provide one.
        """
        if state.has_additional(self.name):
            return state.get_additional(self.name)
        if self._initial_value is None:
            raise MissingData(
                f"No initial value for additional state '{self.name}': the "
                f"initial state does not carry it and none was configured"
            )
        return self._initial_value

    def compute_derivatives(self, t, state, state_dot, block, params) -> Array:
        """Time derivative of the block.

        Args:
            t: Seconds since the start epoch of the run.
            state: Primary state vector.
            state_dot: Time derivative of the primary state.
            block: Current value of the block.
            params: Parameter vector of the propagator.

        Returns:
            jax.Array: Derivative of the block, same shape as ``block``.
        """
        return self._derivatives(t, state, state_dot, block)

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, size={self._size})"


class AdditionalStateRegistry:
    """Ordered registry of additional equations.

    Blocks are laid out in the integration vector in registration order.
    """

    def __init__(self):
        self._entries: dict[str, AdditionalEquations] = {}
        self._frozen = False

    def register(self, equations: AdditionalEquations) -> None:
        """Register a set of additional equations.

        Raises:
            ConfigurationError: If the name is already registered or the
                registry is frozen by a running propagation.
        """
        if self._frozen:
            raise ConfigurationError(
                f"Cannot register '{equations.name}' while a propagation is running"
            )
        if equations.name in self._entries:
            raise ConfigurationError(
                f"Additional state '{equations.name}' is already registered"
            )
        self._entries[equations.name] = equations

    def get(self, name: str) -> AdditionalEquations:
        try:
            return self._entries[name]
        except KeyError:
            raise UnknownAdditionalState(name, self._entries) from None

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._entries)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def unfreeze(self) -> None:
        self._frozen = False

    def __contains__(self, name) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[AdditionalEquations]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def build_layout(self, has_mass: bool) -> StateLayout:
        """Snapshot the registry into an immutable layout.

        Args:
            has_mass: Whether the primary state carries mass.

        Raises:
            ConfigurationError: If more than one set of equations produces
                sensitivities, or a block is inconsistent with the layout.
        """
        blocks = []
        sensitivities = None
        for equations in self._entries.values():
            blocks.append((equations.name, equations.dimension()))
            info = equations.sensitivity_info()
            if info is not None:
                if sensitivities is not None:
                    raise ConfigurationError(
                        f"Both '{sensitivities.name}' and '{info.name}' produce "
                        f"sensitivities; only one variational block is allowed"
                    )
                sensitivities = info
        return StateLayout(has_mass=has_mass, blocks=tuple(blocks),
                           sensitivities=sensitivities)
