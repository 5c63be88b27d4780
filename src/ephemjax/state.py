"""Spacecraft state value type.

A :class:`SpacecraftState` bundles everything known about the spacecraft
at one instant: the epoch, the Cartesian position and velocity, the
optional mass and a read-only mapping of named additional states (for
example the flattened state-transition matrix produced by the
variational equations).

States are host-side values. Arrays are stored as read-only ``float64``
NumPy arrays so that a state returned by an ephemeris can be shared
between threads without copying.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import numpy as np

from ephemjax.epoch import Epoch
from ephemjax.errors import MissingData, PhysicallyInvalidState


def _frozen_array(values, name, size=None):
    arr = np.array(values, dtype=np.float64).reshape(-1)
    if size is not None and arr.shape[0] != size:
        raise ValueError(f"{name} must have {size} components, got {arr.shape[0]}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class SpacecraftState:
    """State of a spacecraft at a given epoch.

    Args:
        epoch: Instant the state refers to.
        position: Position vector [m], shape ``(3,)``.
        velocity: Velocity vector [m/s], shape ``(3,)``.
        mass: Spacecraft mass [kg], or ``None`` when mass is not
            modelled.
        additional: Named additional states, each a 1-D array.

    Raises:
        PhysicallyInvalidState: If ``mass`` is negative.

    Examples:
        ```python
        from ephemjax import Epoch, SpacecraftState
        state = SpacecraftState(
            Epoch(2024, 1, 1),
            [7.0e6, 1.0e6, 4.0e6],
            [-500.0, 8000.0, 1000.0],
            mass=1000.0,
        )
        state.pv.shape  # (6,)
        ```
    """

    epoch: Epoch
    position: np.ndarray
    velocity: np.ndarray
    mass: float | None = None
    additional: Mapping[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.epoch, Epoch):
            raise TypeError(f"epoch must be an Epoch, got {type(self.epoch)}")
        object.__setattr__(self, "position", _frozen_array(self.position, "position", 3))
        object.__setattr__(self, "velocity", _frozen_array(self.velocity, "velocity", 3))
        if self.mass is not None:
            mass = float(self.mass)
            if mass < 0.0:
                raise PhysicallyInvalidState(f"Negative spacecraft mass: {mass} kg")
            object.__setattr__(self, "mass", mass)
        blocks = {
            str(name): _frozen_array(value, f"additional state '{name}'")
            for name, value in self.additional.items()
        }
        object.__setattr__(self, "additional", MappingProxyType(blocks))

    @property
    def pv(self) -> np.ndarray:
        """Concatenated position and velocity, shape ``(6,)``."""
        return np.concatenate([self.position, self.velocity])

    @property
    def has_mass(self) -> bool:
        return self.mass is not None

    def has_additional(self, name: str) -> bool:
        return name in self.additional

    def get_additional(self, name: str) -> np.ndarray:
        """Return the additional state ``name``.

        Raises:
            MissingData: If the state carries no such additional state.
        """
        try:
            return self.additional[name]
        except KeyError:
            raise MissingData(
                f"State at {self.epoch} has no additional state '{name}'. "
                f"Available: {list(self.additional)}"
            ) from None

    def with_additional(self, name: str, value) -> SpacecraftState:
        """Return a copy of this state with one additional state added or replaced."""
        blocks = dict(self.additional)
        blocks[name] = value
        return SpacecraftState(self.epoch, self.position, self.velocity,
                               self.mass, blocks)

    def __repr__(self):
        extra = f", mass={self.mass}" if self.mass is not None else ""
        names = f", additional={list(self.additional)}" if self.additional else ""
        return (f"SpacecraftState(epoch={self.epoch}, position={self.position.tolist()}, "
                f"velocity={self.velocity.tolist()}{extra}{names})")
