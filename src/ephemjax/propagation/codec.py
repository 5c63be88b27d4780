"""Flat state vector layout and the codec between states and vectors.

The integrator works on a single flat vector.  :class:`StateLayout`
describes how that vector is laid out:

- position (3) and velocity (3),
- mass (1), only when the layout has mass,
- the registered additional blocks, in registration order.

One block may be flagged as the sensitivity block produced by the
variational equations.  It holds the flattened ``n x (n + p)`` matrix
``[Phi | S]`` (row-major), so its size is ``n * (n + p)`` with ``n`` the
state dimension (6 or 7) and ``p`` the number of estimated parameters.
Vectors encoded without sensitivities simply omit that block.

:class:`StateVectorCodec` converts between :class:`~ephemjax.state.SpacecraftState`
instances and such vectors.  Encoding is total and deterministic for a
fixed layout, and ``decode(encode(s), s.epoch)`` reproduces ``s``.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ephemjax.epoch import Epoch
from ephemjax.errors import (
    ConfigurationError,
    MissingData,
    PhysicallyInvalidState,
    UnknownAdditionalState,
)
from ephemjax.state import SpacecraftState

PV_DIM = 6


@dataclass(frozen=True)
class SensitivityInfo:
    """Shape of the sensitivity block.

    Args:
        name: Name of the additional state holding the block.
        state_dim: Dimension ``n`` of the state-transition matrix (6 or 7).
        param_count: Number ``p`` of estimated parameters.
        param_names: Names of the estimated parameters, in column order.
    """

    name: str
    state_dim: int
    param_count: int
    param_names: tuple[str, ...] = ()

    @property
    def size(self) -> int:
        return self.state_dim * (self.state_dim + self.param_count)


@dataclass(frozen=True)
class StateLayout:
    """Fixed layout of the flat integration vector.

    Args:
        has_mass: Whether a mass component follows the velocity.
        blocks: ``(name, size)`` pairs of the additional blocks, in
            vector order.
        sensitivities: Shape of the sensitivity block, whose name must
            appear in ``blocks``.  ``None`` when the variational equations
            are not active.

    Raises:
        ConfigurationError: On duplicate block names, non-positive block
            sizes or an inconsistent sensitivity block.
    """

    has_mass: bool = False
    blocks: tuple[tuple[str, int], ...] = ()
    sensitivities: SensitivityInfo | None = None

    def __post_init__(self):
        names = [name for name, _ in self.blocks]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate additional state names in {names}")
        for name, size in self.blocks:
            if size <= 0:
                raise ConfigurationError(
                    f"Additional state '{name}' must have a positive size, got {size}"
                )
        if self.sensitivities is not None:
            sizes = dict(self.blocks)
            name = self.sensitivities.name
            if name not in sizes:
                raise ConfigurationError(f"Sensitivity block '{name}' is not in the layout")
            if sizes[name] != self.sensitivities.size:
                raise ConfigurationError(
                    f"Sensitivity block '{name}' has size {sizes[name]}, "
                    f"expected {self.sensitivities.size}"
                )
            if self.sensitivities.state_dim == 7 and not self.has_mass:
                raise ConfigurationError("A 7x7 state-transition matrix requires mass")

    @property
    def primary_dim(self) -> int:
        """Size of the position/velocity/mass part."""
        return PV_DIM + (1 if self.has_mass else 0)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.blocks)

    def dimension(self, with_sensitivities: bool = True) -> int:
        """Total length of an encoded vector."""
        total = self.primary_dim + sum(size for _, size in self.blocks)
        if not with_sensitivities and self.sensitivities is not None:
            total -= self.sensitivities.size
        return total

    def block_slice(self, name: str, with_sensitivities: bool = True) -> slice:
        """Return the slice of block ``name`` in an encoded vector.

        Raises:
            UnknownAdditionalState: If ``name`` is not part of the layout.
            MissingData: If ``name`` is the sensitivity block and the
                vector is encoded without sensitivities.
        """
        start = self.primary_dim
        for block_name, size in self.blocks:
            skipped = (not with_sensitivities and self.sensitivities is not None
                       and block_name == self.sensitivities.name)
            if block_name == name:
                if skipped:
                    raise MissingData(
                        f"Block '{name}' is absent from vectors encoded "
                        f"without sensitivities"
                    )
                return slice(start, start + size)
            if not skipped:
                start += size
        raise UnknownAdditionalState(name, self.names)

    def size_of(self, name: str) -> int:
        for block_name, size in self.blocks:
            if block_name == name:
                return size
        raise UnknownAdditionalState(name, self.names)


class StateVectorCodec:
    """Encode spacecraft states to flat vectors and back.

    Args:
        layout: Layout of the vectors.

    Examples:
        ```python
        from ephemjax import Epoch, SpacecraftState
        from ephemjax.propagation import StateLayout, StateVectorCodec
        codec = StateVectorCodec(StateLayout(has_mass=True))
        state = SpacecraftState(Epoch(2024, 1, 1), [7e6, 0, 0], [0, 7.5e3, 0], 500.0)
        y = codec.encode(state)  # shape (7,)
        codec.decode(y, state.epoch).mass  # 500.0
        ```
    """

    def __init__(self, layout: StateLayout):
        self.layout = layout

    def encode(self, state: SpacecraftState, with_sensitivities: bool = True) -> np.ndarray:
        """Encode ``state`` into a flat vector.

        Args:
            state: State to encode.
            with_sensitivities: Whether to include the sensitivity block.

        Returns:
            np.ndarray: Vector of length ``layout.dimension(with_sensitivities)``.

        Raises:
            ConfigurationError: If the presence of mass in ``state`` does
                not match the layout.
            MissingData: If a block of the layout is absent from ``state``.
        """
        layout = self.layout
        if state.has_mass != layout.has_mass:
            raise ConfigurationError(
                f"State {'has' if state.has_mass else 'has no'} mass but the "
                f"layout expects {'a' if layout.has_mass else 'no'} mass component"
            )

        parts = [state.position, state.velocity]
        if layout.has_mass:
            parts.append(np.array([state.mass]))

        for name, size in layout.blocks:
            if (not with_sensitivities and layout.sensitivities is not None
                    and name == layout.sensitivities.name):
                continue
            value = state.get_additional(name)
            if value.shape[0] != size:
                raise ConfigurationError(
                    f"Additional state '{name}' has {value.shape[0]} components, "
                    f"the layout expects {size}"
                )
            parts.append(value)

        return np.concatenate(parts)

    def decode(self, vector, epoch: Epoch, with_sensitivities: bool = True) -> SpacecraftState:
        """Decode a flat vector into a state at ``epoch``.

        Args:
            vector: Flat vector laid out as :attr:`layout`.
            epoch: Epoch of the decoded state.
            with_sensitivities: Whether the sensitivity block should be
                decoded.

        Returns:
            SpacecraftState: Decoded state with every additional block
                attached.

        Raises:
            MissingData: If sensitivities are requested from a vector
                encoded without them.
            ConfigurationError: If the vector length does not match the
                layout.
            PhysicallyInvalidState: If the mass component is negative.
        """
        layout = self.layout
        vector = np.asarray(vector, dtype=np.float64)
        n = vector.shape[0]

        full = layout.dimension(True)
        reduced = layout.dimension(False)
        if layout.sensitivities is not None and n == reduced:
            if with_sensitivities:
                raise MissingData(
                    f"Vector of length {n} was encoded without the "
                    f"'{layout.sensitivities.name}' sensitivity block"
                )
            encoded_with = False
        elif n == full:
            encoded_with = True
        else:
            raise ConfigurationError(
                f"Vector length {n} does not match the layout "
                f"(expected {full} or {reduced})"
            )

        mass = None
        if layout.has_mass:
            mass = float(vector[PV_DIM])
            if mass < 0.0:
                raise PhysicallyInvalidState(f"Negative spacecraft mass {mass} kg at {epoch}")

        additional = {}
        for name, _ in layout.blocks:
            is_sensitivity = (layout.sensitivities is not None
                              and name == layout.sensitivities.name)
            if is_sensitivity and not (encoded_with and with_sensitivities):
                continue
            additional[name] = vector[layout.block_slice(name, encoded_with)]

        return SpacecraftState(epoch, vector[0:3], vector[3:6], mass, additional)
