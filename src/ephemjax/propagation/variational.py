"""Variational equations for state-transition and parameter Jacobians.

Augments the integration vector with the state-transition matrix
``Phi = dY/dY0`` and the parameter sensitivity matrix ``S = dY/dP``.
They obey

.. math::

    \\dot{\\Phi} = J_x \\Phi, \\qquad \\dot{S} = J_x S + J_p

where ``J_x = df/dx`` and ``J_p = df/dp`` are the Jacobians of the
dynamics with respect to the state and to the selected parameters.  The
Jacobians come either from a caller-supplied function or from
``jax.jacfwd`` applied to the dynamics, so no hand-derived partials are
needed.

Both matrices are stored together as the row-major flattening of the
``n x (n + p)`` matrix ``[Phi | S]`` in one additional state.  With
``n = 6`` and no parameters the block therefore has 36 components.

The error control of the integrator only looks at the primary state, so
enabling the variational equations does not change the step sequence.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array

from ephemjax.errors import ConfigurationError, StateJacobianNotInitialized
from ephemjax.propagation.additional import AdditionalEquations
from ephemjax.propagation.codec import PV_DIM, SensitivityInfo
from ephemjax.state import SpacecraftState

if TYPE_CHECKING:
    from ephemjax.propagation.numerical import NumericalPropagator


class JacobiansMapper:
    """Extract Jacobian matrices from the sensitivity block of a state.

    Args:
        info: Shape of the sensitivity block.
    """

    def __init__(self, info: SensitivityInfo):
        self.info = info

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def state_dimension(self) -> int:
        return self.info.state_dim

    @property
    def parameters(self) -> int:
        return self.info.param_count

    def _matrix(self, state: SpacecraftState) -> np.ndarray:
        if not state.has_additional(self.info.name):
            raise StateJacobianNotInitialized(
                f"State at {state.epoch} carries no '{self.info.name}' Jacobian block"
            )
        block = state.get_additional(self.info.name)
        n = self.info.state_dim
        return block.reshape(n, n + self.info.param_count)

    def get_state_jacobian(self, state: SpacecraftState) -> np.ndarray:
        """Return ``dY/dY0``, shape ``(n, n)``.

        Raises:
            StateJacobianNotInitialized: If ``state`` has no Jacobian block.
        """
        return self._matrix(state)[:, : self.info.state_dim]

    def get_parameters_jacobian(self, state: SpacecraftState) -> np.ndarray:
        """Return ``dY/dP``, shape ``(n, p)``.

        Raises:
            StateJacobianNotInitialized: If ``state`` has no Jacobian block.
        """
        return self._matrix(state)[:, self.info.state_dim:]


class PartialDerivativesEquations(AdditionalEquations):
    """Variational equations of a numerical propagator.

    The equations register themselves with ``propagator`` on construction.
    They must then be initialised with :meth:`set_initial_jacobians`
    before the propagator runs.

    Args:
        name: Name of the additional state holding the Jacobians.
        propagator: Propagator whose dynamics are differentiated.
        jacobian_fn: Optional function ``jacobian_fn(t, state, params) ->
            (J_x, J_p)`` returning the Jacobians of the dynamics with
            respect to the full primary state (shape ``(m, m)``) and to
            all propagator parameters (shape ``(m, n_params)``), with
            ``m`` the primary state size.  Defaults to ``jax.jacfwd`` of
            the dynamics.

    Examples:
        ```python
        from ephemjax.propagation import NumericalPropagator, PartialDerivativesEquations
        propagator = NumericalPropagator(dynamics)
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.set_initial_jacobians(6, 0)
        propagator.set_initial_state(state0)
        final = propagator.propagate(target)
        phi = pde.get_mapper().get_state_jacobian(final)  # (6, 6)
        ```
    """

    def __init__(
        self,
        name: str,
        propagator: NumericalPropagator,
        jacobian_fn: Callable[..., tuple[Array, Array]] | None = None,
    ):
        super().__init__(name, 0)
        self._propagator = propagator
        self._jacobian_fn = jacobian_fn
        self._selected: tuple[str, ...] = ()
        self._state_dim: int | None = None
        self._param_count = 0
        self._seed: np.ndarray | None = None
        propagator.add_additional_equations(self)

    # Setup

    def _check_not_running(self, what):
        if self._propagator.is_running:
            raise ConfigurationError(
                f"Cannot {what} on '{self.name}' while a propagation is running"
            )

    def select_parameters(self, *names: str) -> None:
        """Choose the parameters whose sensitivities are computed.

        Args:
            *names: Names among the propagator parameters, in the order
                of the columns of ``dY/dP``.

        Raises:
            ConfigurationError: On unknown or duplicated names, or while
                a propagation is running.
        """
        self._check_not_running("select parameters")
        known = self._propagator.parameter_names
        for param in names:
            if param not in known:
                raise ConfigurationError(
                    f"Unknown parameter '{param}'. Propagator parameters: {list(known)}"
                )
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicated parameter in {list(names)}")
        self._selected = tuple(names)

    @property
    def selected_parameters(self) -> tuple[str, ...]:
        return self._selected

    def set_initial_jacobians(
        self,
        state_dim: int,
        param_count: int,
        dYdY0=None,
        dYdP=None,
    ) -> None:
        """Enable the variational equations and set their initial value.

        Args:
            state_dim: Dimension of the state-transition matrix, 6
                (position and velocity) or 7 (with mass).
            param_count: Number of estimated parameters.  Must equal the
                number of parameters chosen with :meth:`select_parameters`.
            dYdY0: Initial state-transition matrix, shape
                ``(state_dim, state_dim)``.  Defaults to the identity.
            dYdP: Initial parameter Jacobian, shape
                ``(state_dim, param_count)``.  Defaults to zero.

        Raises:
            ConfigurationError: On invalid dimensions, mismatched seed
                shapes, or when called while a propagation is running.
        """
        self._check_not_running("set initial Jacobians")
        if state_dim not in (PV_DIM, PV_DIM + 1):
            raise ConfigurationError(f"state_dim must be 6 or 7, got {state_dim}")
        if param_count != len(self._selected):
            raise ConfigurationError(
                f"param_count is {param_count} but {len(self._selected)} "
                f"parameters are selected: {list(self._selected)}"
            )

        if dYdY0 is None:
            phi0 = np.eye(state_dim)
        else:
            phi0 = np.asarray(dYdY0, dtype=np.float64)
            if phi0.shape != (state_dim, state_dim):
                raise ConfigurationError(
                    f"dYdY0 must have shape ({state_dim}, {state_dim}), got {phi0.shape}"
                )

        if dYdP is None:
            s0 = np.zeros((state_dim, param_count))
        else:
            s0 = np.asarray(dYdP, dtype=np.float64)
            if s0.shape != (state_dim, param_count):
                raise ConfigurationError(
                    f"dYdP must have shape ({state_dim}, {param_count}), got {s0.shape}"
                )

        self._state_dim = state_dim
        self._param_count = param_count
        self._seed = np.concatenate([phi0, s0], axis=1).reshape(-1)
        self._seed.setflags(write=False)

    @property
    def is_initialized(self) -> bool:
        return self._state_dim is not None

    def _require_initialized(self):
        if self._state_dim is None:
            raise StateJacobianNotInitialized(
                f"set_initial_jacobians was never called on '{self.name}'"
            )

    # AdditionalEquations interface

    def dimension(self) -> int:
        self._require_initialized()
        return self._state_dim * (self._state_dim + self._param_count)

    def sensitivity_info(self) -> SensitivityInfo:
        self._require_initialized()
        if self._param_count != len(self._selected):
            raise ConfigurationError(
                f"{len(self._selected)} parameters are selected but the Jacobians "
                f"of '{self.name}' were initialised for {self._param_count}"
            )
        return SensitivityInfo(self.name, self._state_dim, self._param_count,
                               self._selected)

    def initial_value(self, state: SpacecraftState) -> np.ndarray:
        self._require_initialized()
        if self._state_dim == PV_DIM + 1 and not state.has_mass:
            raise ConfigurationError(
                f"'{self.name}' uses a 7x7 state-transition matrix but the "
                f"initial state has no mass"
            )
        if state.has_additional(self.name):
            return state.get_additional(self.name)
        return self._seed

    def compute_derivatives(self, t, state, state_dot, block, params) -> Array:
        n = self._state_dim
        p = self._param_count
        dynamics = self._propagator.dynamics
        indices = jnp.asarray(
            [self._propagator.parameter_names.index(name) for name in self._selected],
            dtype=jnp.int32,
        )

        if self._jacobian_fn is not None:
            jx_full, jp_full = self._jacobian_fn(t, state, params)
            jx = jnp.asarray(jx_full)[:n, :n]
            jp = jnp.asarray(jp_full)[:n][:, indices] if p > 0 else None
        else:
            def f_state(x_head):
                x = jnp.concatenate([x_head, state[n:]])
                return dynamics(t, x, params)[:n]

            jx = jax.jacfwd(f_state)(state[:n])

            jp = None
            if p > 0:
                def f_params(q):
                    return dynamics(t, state, params.at[indices].set(q))[:n]

                jp = jax.jacfwd(f_params)(params[indices])

        m = block.reshape(n, n + p)
        m_dot = jx @ m
        if p > 0:
            m_dot = m_dot.at[:, n:].add(jp)
        return m_dot.reshape(-1)

    # Access

    def get_mapper(self) -> JacobiansMapper:
        """Return a mapper for the Jacobian block of this equations set.

        Raises:
            StateJacobianNotInitialized: If :meth:`set_initial_jacobians`
                was never called.
        """
        return JacobiansMapper(self.sensitivity_info())
