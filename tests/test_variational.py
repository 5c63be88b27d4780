"""Tests for the variational equations and Jacobian extraction."""

import jax.numpy as jnp
import numpy as np
import pytest

from ephemjax.constants import GM_EARTH, GM_EARTH_EIGEN5C
from ephemjax.dynamics import TwoBodyConfig, create_two_body_dynamics
from ephemjax.epoch import J2000_EPOCH, Epoch
from ephemjax.errors import ConfigurationError, StateJacobianNotInitialized
from ephemjax.integrators import AdaptiveConfig
from ephemjax.propagation import (
    JacobiansMapper,
    NumericalPropagator,
    PartialDerivativesEquations,
    SensitivityInfo,
)
from ephemjax.state import SpacecraftState

_EPOCH = Epoch(2024, 1, 1)
_POS = np.array([7.0e6, 1.0e6, 4.0e6])
_VEL = np.array([-500.0, 8000.0, 1000.0])
_TIGHT = AdaptiveConfig(abs_tol=1e-11, rel_tol=1e-11, max_step=300.0)


def _state(pv=None, epoch=_EPOCH):
    pv = np.concatenate([_POS, _VEL]) if pv is None else np.asarray(pv)
    return SpacecraftState(epoch, pv[:3], pv[3:6])


def _final_pv(pv, duration, propagator=None):
    if propagator is None:
        propagator = NumericalPropagator(create_two_body_dynamics(), _TIGHT)
    propagator.set_initial_state(_state(pv))
    return propagator.propagate(_EPOCH + duration).pv


def _relative_column_error(actual, expected):
    return np.linalg.norm(actual - expected, axis=0) / np.linalg.norm(expected, axis=0)


# ──────────────────────────────────────────────
# Setup
# ──────────────────────────────────────────────


class TestSetup:
    def test_registers_itself(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        pde = PartialDerivativesEquations("derivatives", propagator)
        assert propagator.get_additional_equations("derivatives") is pde

    def test_duplicate_name(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        PartialDerivativesEquations("derivatives", propagator)
        with pytest.raises(ConfigurationError):
            PartialDerivativesEquations("derivatives", propagator)

    def test_block_dimension(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        pde = PartialDerivativesEquations("derivatives", propagator)
        assert not pde.is_initialized
        pde.set_initial_jacobians(6, 0)
        assert pde.is_initialized
        assert pde.dimension() == 36

    def test_block_dimension_with_parameters(self):
        propagator = NumericalPropagator(create_two_body_dynamics(parametric=True),
                                         parameters={"gm": GM_EARTH})
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.select_parameters("gm")
        pde.set_initial_jacobians(6, 1)
        assert pde.dimension() == 42
        assert pde.get_mapper().parameters == 1

    def test_invalid_state_dimension(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        pde = PartialDerivativesEquations("derivatives", propagator)
        with pytest.raises(ConfigurationError):
            pde.set_initial_jacobians(5, 0)

    def test_param_count_mismatch(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        pde = PartialDerivativesEquations("derivatives", propagator)
        with pytest.raises(ConfigurationError):
            pde.set_initial_jacobians(6, 2)

    def test_unknown_parameter(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        pde = PartialDerivativesEquations("derivatives", propagator)
        with pytest.raises(ConfigurationError, match="Unknown parameter"):
            pde.select_parameters("drag_coefficient")

    def test_seed_shape_checked(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        pde = PartialDerivativesEquations("derivatives", propagator)
        with pytest.raises(ConfigurationError, match="dYdY0"):
            pde.set_initial_jacobians(6, 0, dYdY0=np.eye(5))

    def test_mapper_before_initialization(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        pde = PartialDerivativesEquations("derivatives", propagator)
        with pytest.raises(StateJacobianNotInitialized):
            pde.get_mapper()

    def test_run_without_initialization(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        PartialDerivativesEquations("derivatives", propagator)
        propagator.set_initial_state(_state())
        with pytest.raises(StateJacobianNotInitialized):
            propagator.propagate(_EPOCH + 60.0)
        assert not propagator.is_running

    def test_seven_by_seven_without_mass(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.set_initial_jacobians(7, 0)
        propagator.set_initial_state(_state())
        with pytest.raises(ConfigurationError):
            propagator.propagate(_EPOCH + 60.0)

    def test_set_initial_jacobians_while_running(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.set_initial_jacobians(6, 0)
        propagator.set_initial_state(_state())

        def handler(interpolator, is_last):
            pde.set_initial_jacobians(6, 0)

        propagator.set_master_mode(handler)
        with pytest.raises(ConfigurationError, match="running"):
            propagator.propagate(_EPOCH + 600.0)
        assert not propagator.is_running


# ──────────────────────────────────────────────
# JacobiansMapper
# ──────────────────────────────────────────────


class TestJacobiansMapper:
    def test_split(self):
        info = SensitivityInfo("derivatives", 6, 2)
        matrix = np.arange(48, dtype=float).reshape(6, 8)
        state = _state().with_additional("derivatives", matrix.reshape(-1))
        mapper = JacobiansMapper(info)
        np.testing.assert_array_equal(mapper.get_state_jacobian(state), matrix[:, :6])
        np.testing.assert_array_equal(mapper.get_parameters_jacobian(state), matrix[:, 6:])

    def test_missing_block(self):
        mapper = JacobiansMapper(SensitivityInfo("derivatives", 6, 0))
        with pytest.raises(StateJacobianNotInitialized):
            mapper.get_state_jacobian(_state())


# ──────────────────────────────────────────────
# Integrated Jacobians
# ──────────────────────────────────────────────


class TestStateTransitionMatrix:
    def test_identity_at_start(self):
        propagator = NumericalPropagator(create_two_body_dynamics(), _TIGHT)
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.set_initial_jacobians(6, 0)
        propagator.set_initial_state(_state())
        propagator.set_ephemeris_mode()
        propagator.propagate(_EPOCH + 600.0)
        ephemeris = propagator.get_generated_ephemeris()
        np.testing.assert_allclose(ephemeris.get_state_jacobian(_EPOCH), np.eye(6), atol=1e-12)

    def test_matches_finite_differences(self):
        duration = 3600.0
        propagator = NumericalPropagator(create_two_body_dynamics(), _TIGHT)
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.set_initial_jacobians(6, 0)
        propagator.set_initial_state(_state())
        final = propagator.propagate(_EPOCH + duration)
        phi = pde.get_mapper().get_state_jacobian(final)
        assert phi.shape == (6, 6)

        pv0 = np.concatenate([_POS, _VEL])
        deltas = [10.0] * 3 + [0.01] * 3
        plain = NumericalPropagator(create_two_body_dynamics(), _TIGHT)
        fd = np.zeros((6, 6))
        for j, delta in enumerate(deltas):
            plus = pv0.copy()
            minus = pv0.copy()
            plus[j] += delta
            minus[j] -= delta
            fd[:, j] = (_final_pv(plus, duration, plain) - _final_pv(minus, duration, plain)) / (2.0 * delta)

        assert np.all(_relative_column_error(phi, fd) < 1e-4)

    def test_primary_state_unchanged(self):
        duration = 3600.0
        plain = _final_pv(None, duration)

        propagator = NumericalPropagator(create_two_body_dynamics(), _TIGHT)
        PartialDerivativesEquations("derivatives", propagator).set_initial_jacobians(6, 0)
        propagator.set_initial_state(_state())
        with_jacobians = propagator.propagate(_EPOCH + duration).pv
        np.testing.assert_allclose(with_jacobians, plain, rtol=1e-9, atol=1e-6)

    def test_custom_seed(self):
        seed = 2.0 * np.eye(6)
        propagator = NumericalPropagator(create_two_body_dynamics(), _TIGHT)
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.set_initial_jacobians(6, 0, dYdY0=seed)
        propagator.set_initial_state(_state())
        final = propagator.propagate(_EPOCH + 600.0)
        phi2 = pde.get_mapper().get_state_jacobian(final)

        reference = NumericalPropagator(create_two_body_dynamics(), _TIGHT)
        pde_ref = PartialDerivativesEquations("derivatives", reference)
        pde_ref.set_initial_jacobians(6, 0)
        reference.set_initial_state(_state())
        phi = pde_ref.get_mapper().get_state_jacobian(reference.propagate(_EPOCH + 600.0))
        np.testing.assert_allclose(phi2, 2.0 * phi, rtol=1e-8, atol=1e-10)

    def test_custom_jacobian_function(self):
        def jacobian_fn(t, x, params):
            r = x[:3]
            rn = jnp.linalg.norm(r)
            dadr = -GM_EARTH / rn**3 * (jnp.eye(3) - 3.0 * jnp.outer(r, r) / rn**2)
            jx = jnp.block([[jnp.zeros((3, 3)), jnp.eye(3)],
                            [dadr, jnp.zeros((3, 3))]])
            return jx, jnp.zeros((6, 0))

        phis = []
        for fn in (None, jacobian_fn):
            propagator = NumericalPropagator(create_two_body_dynamics(), _TIGHT)
            pde = PartialDerivativesEquations("derivatives", propagator, jacobian_fn=fn)
            pde.set_initial_jacobians(6, 0)
            propagator.set_initial_state(_state())
            phis.append(pde.get_mapper().get_state_jacobian(propagator.propagate(_EPOCH + 1800.0)))
        np.testing.assert_allclose(phis[1], phis[0], rtol=1e-8, atol=1e-10)

    def test_with_mass(self):
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10, max_step=300.0)
        dynamics = create_two_body_dynamics(TwoBodyConfig(with_mass=True, thrust=1.0))
        propagator = NumericalPropagator(dynamics, config)
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.set_initial_jacobians(7, 0)
        propagator.set_initial_state(SpacecraftState(_EPOCH, _POS, _VEL, mass=1000.0))
        final = propagator.propagate(_EPOCH + 600.0)
        phi = pde.get_mapper().get_state_jacobian(final)
        assert phi.shape == (7, 7)
        # Mass does not depend on the orbit and the flow rate is constant
        np.testing.assert_allclose(phi[6], np.eye(7)[6], atol=1e-12)
        # Thrust acceleration shrinks as mass grows
        assert phi[3:6, 6].any()


class TestParameterJacobian:
    def test_gm_sensitivity_matches_finite_differences(self):
        duration = 3600.0
        dynamics = create_two_body_dynamics(parametric=True)
        propagator = NumericalPropagator(dynamics, _TIGHT, parameters={"gm": GM_EARTH})
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.select_parameters("gm")
        pde.set_initial_jacobians(6, 1)
        propagator.set_initial_state(_state())
        final = propagator.propagate(_EPOCH + duration)
        dydp = pde.get_mapper().get_parameters_jacobian(final)
        assert dydp.shape == (6, 1)

        delta = GM_EARTH * 1e-6
        fd_propagator = NumericalPropagator(dynamics, _TIGHT, parameters={"gm": GM_EARTH})
        finals = []
        for gm in (GM_EARTH + delta, GM_EARTH - delta):
            fd_propagator.set_parameter("gm", gm)
            fd_propagator.set_initial_state(_state())
            finals.append(fd_propagator.propagate(_EPOCH + duration).pv)
        fd = ((finals[0] - finals[1]) / (2.0 * delta)).reshape(6, 1)

        assert np.all(_relative_column_error(dydp, fd) < 1e-4)


# ──────────────────────────────────────────────
# Ephemeris sweep with Jacobians
# ──────────────────────────────────────────────


class TestJacobianEphemeris:
    def test_master_mode_sweep_carries_jacobians(self):
        dynamics = create_two_body_dynamics(TwoBodyConfig(gm=GM_EARTH_EIGEN5C))
        propagator = NumericalPropagator(dynamics, AdaptiveConfig(abs_tol=1e-9, rel_tol=1e-9))
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.set_initial_jacobians(6, 0)

        epoch0 = J2000_EPOCH + 584.0
        propagator.set_initial_state(SpacecraftState(epoch0, _POS, _VEL))
        propagator.set_ephemeris_mode()
        propagator.propagate(epoch0 + 3600.0)
        ephemeris = propagator.get_generated_ephemeris()

        seen = []

        def handler(interpolator, is_last):
            block = interpolator.get_interpolated_additional_state("derivatives")
            seen.append((block.shape, is_last))

        ephemeris.set_master_mode(handler)
        state = ephemeris.propagate(epoch0 + 1800.0)

        assert seen
        assert all(shape == (36,) for shape, _ in seen)
        assert [last for _, last in seen] == [False] * (len(seen) - 1) + [True]
        assert state.get_additional("derivatives").shape == (36,)
        assert ephemeris.get_state_jacobian(epoch0 + 1800.0).shape == (6, 6)
        assert ephemeris.get_parameters_jacobian(epoch0 + 1800.0).shape == (6, 0)

    def test_jacobian_without_variational_equations(self):
        propagator = NumericalPropagator(create_two_body_dynamics())
        propagator.set_initial_state(_state())
        propagator.set_ephemeris_mode()
        propagator.propagate(_EPOCH + 600.0)
        with pytest.raises(StateJacobianNotInitialized):
            propagator.get_generated_ephemeris().get_state_jacobian(_EPOCH + 300.0)
