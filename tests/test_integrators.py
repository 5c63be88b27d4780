"""Tests for the ephemjax.integrators module.

Tests cover:
- Exponential decay and harmonic oscillator with known solutions
- Two-body orbital mechanics
- Backward integration
- Adaptive step-size behaviour and error control restricted to a prefix
- Dense output: end-point consistency and interpolation accuracy
- Dormand-Prince 8(5,3) steps and their 7th-order interpolant
- Starting step heuristic
- JIT and vmap compatibility
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from ephemjax.constants import GM_EARTH, R_EARTH
from ephemjax.integrators import (
    STAGES_PER_ATTEMPT,
    AdaptiveConfig,
    DenseStepResult,
    StepResult,
    compute_error_norm,
    compute_next_step_size,
    dop853_dense_step,
    dop853_error_norm,
    dop853_interpolate,
    dp54_dense_step,
    dp54_interpolate,
    dp54_step,
    get_dense_method,
    initial_step_size,
)

# ──────────────────────────────────────────────
# Helper dynamics functions
# ──────────────────────────────────────────────


def _exponential_decay(t, x):
    """dx/dt = -x. Solution: x(t) = x0 * exp(-t)."""
    return -x


def _harmonic_oscillator(t, x):
    """d^2q/dt^2 = -q. State: [q, dq/dt]. Solution: [cos(t), -sin(t)]."""
    return jnp.array([x[1], -x[0]])


def _two_body(t, state):
    """Two-body gravitational dynamics. State: [rx, ry, rz, vx, vy, vz]."""
    r = state[:3]
    v = state[3:]
    r_norm = jnp.linalg.norm(r)
    a = -GM_EARTH * r / r_norm**3
    return jnp.concatenate([v, a])


def _circular_orbit_state(sma):
    """Create a circular equatorial orbit state [x, y, z, vx, vy, vz]."""
    v_circ = jnp.sqrt(GM_EARTH / sma)
    return jnp.array([sma, 0.0, 0.0, 0.0, v_circ, 0.0])


# ──────────────────────────────────────────────
# Types
# ──────────────────────────────────────────────


class TestTypes:
    def test_adaptive_config_defaults(self):
        config = AdaptiveConfig()
        assert config.abs_tol == 1e-6
        assert config.rel_tol == 1e-3
        assert config.safety_factor == 0.9
        assert config.max_step_attempts == 10
        assert config.initial_step is None

    def test_adaptive_config_vector_tolerances(self):
        config = AdaptiveConfig(abs_tol=(1.0,) * 3 + (1e-3,) * 3, rel_tol=1e-9)
        assert len(config.abs_tol) == 6

    def test_adaptive_config_is_hashable(self):
        assert hash(AdaptiveConfig(abs_tol=(1.0, 2.0))) == hash(AdaptiveConfig(abs_tol=(1.0, 2.0)))


# ──────────────────────────────────────────────
# Step-size control
# ──────────────────────────────────────────────


class TestStepControl:
    def test_error_norm_scalar_tolerance(self):
        err = compute_error_norm(
            jnp.array([1e-6, 0.0]), jnp.array([1.0, 1.0]), jnp.array([1.0, 1.0]), 1e-6, 0.0
        )
        assert float(err) == pytest.approx(1.0)

    def test_error_norm_vector_tolerance(self):
        err = compute_error_norm(
            jnp.array([1e-3, 1e-3]), jnp.zeros(2), jnp.zeros(2),
            jnp.array([1e-3, 1e-2]), 0.0,
        )
        assert float(err) == pytest.approx(1.0)

    def test_next_step_grows_on_small_error(self):
        h = compute_next_step_size(1e-6, 10.0, 4.0, 0.9, 0.2, 10.0, 1e-12, 1e6)
        assert float(h) == pytest.approx(100.0)

    def test_next_step_keeps_sign(self):
        h = compute_next_step_size(4.0, -10.0, 4.0, 0.9, 0.2, 10.0, 1e-12, 1e6)
        assert float(h) < 0.0
        assert abs(float(h)) < 10.0

    def test_next_step_clamped_to_max_step(self):
        h = compute_next_step_size(1e-12, 100.0, 4.0, 0.9, 0.2, 10.0, 1e-12, 300.0)
        assert float(h) == pytest.approx(300.0)


# ──────────────────────────────────────────────
# DP54 plain step
# ──────────────────────────────────────────────


class TestDP54:
    def test_exponential_decay(self):
        x0 = jnp.array([1.0])
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10)
        result = dp54_step(_exponential_decay, 0.0, x0, 0.1, config)
        t = float(result.dt_used)
        assert isinstance(result, StepResult)
        assert jnp.allclose(result.state, jnp.exp(-t), atol=1e-9)

    def test_harmonic_oscillator_multi_step(self):
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10)
        state = jnp.array([1.0, 0.0])
        t = 0.0
        dt = 0.5
        while t < 10.0 - 1e-12:
            result = dp54_step(_harmonic_oscillator, t, state, min(dt, 10.0 - t), config)
            t += float(result.dt_used)
            state = result.state
            dt = float(result.dt_next)
        assert jnp.allclose(state, jnp.array([jnp.cos(t), -jnp.sin(t)]), atol=1e-7)

    def test_rejects_large_step(self):
        config = AdaptiveConfig(abs_tol=1e-12, rel_tol=1e-12)
        x0 = _circular_orbit_state(R_EARTH + 500e3)
        result = dp54_step(_two_body, 0.0, x0, 2000.0, config)
        assert float(result.dt_used) < 2000.0

    def test_backward_integration(self):
        config = AdaptiveConfig(abs_tol=1e-12, rel_tol=1e-12)
        x0 = jnp.array([1.0, 0.0])
        fwd = dp54_step(_harmonic_oscillator, 0.0, x0, 0.2, config)
        bwd = dp54_step(_harmonic_oscillator, float(fwd.dt_used), fwd.state,
                        -float(fwd.dt_used), config)
        assert float(bwd.dt_used) < 0.0
        assert jnp.allclose(bwd.state, x0, atol=1e-10)

    def test_control_input(self):
        # dx/dt = -x + 1. Solution: x(t) = 1 - exp(-t) for x(0)=0
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10)
        result = dp54_step(_exponential_decay, 0.0, jnp.array([0.0]), 0.1, config,
                           control=lambda t, x: jnp.ones_like(x))
        t = float(result.dt_used)
        assert jnp.allclose(result.state, 1.0 - jnp.exp(-t), atol=1e-9)


# ──────────────────────────────────────────────
# DP54 dense step
# ──────────────────────────────────────────────


class TestDP54Dense:
    def test_result_fields(self):
        result = dp54_dense_step(_harmonic_oscillator, 0.0, jnp.array([1.0, 0.0]), 0.1)
        assert isinstance(result, DenseStepResult)
        assert result.stages.shape == (STAGES_PER_ATTEMPT, 2)
        assert bool(result.accepted)
        assert int(result.attempts) == 1

    def test_matches_plain_step(self):
        config = AdaptiveConfig(abs_tol=1e-9, rel_tol=1e-9)
        x0 = _circular_orbit_state(R_EARTH + 500e3)
        plain = dp54_step(_two_body, 0.0, x0, 60.0, config)
        dense = dp54_dense_step(_two_body, 0.0, x0, 60.0, config)
        assert float(dense.dt_used) == pytest.approx(float(plain.dt_used), rel=1e-12)
        assert jnp.allclose(plain.state, dense.state, rtol=1e-14, atol=1e-9)

    def test_retry_reports_attempts(self):
        config = AdaptiveConfig(abs_tol=1e-12, rel_tol=1e-12)
        x0 = _circular_orbit_state(R_EARTH + 500e3)
        result = dp54_dense_step(_two_body, 0.0, x0, 3000.0, config)
        assert int(result.attempts) > 1
        assert abs(float(result.dt_used)) < 3000.0

    def test_not_accepted_when_attempts_exhausted(self):
        config = AdaptiveConfig(abs_tol=1e-14, rel_tol=1e-14, max_step_attempts=1)
        x0 = _circular_orbit_state(R_EARTH + 500e3)
        result = dp54_dense_step(_two_body, 0.0, x0, 3000.0, config)
        assert not bool(result.accepted)
        assert abs(float(result.dt_next)) < 3000.0

    def test_error_dim_ignores_trailing_components(self):
        """Components past error_dim do not influence the step sequence."""
        config = AdaptiveConfig(abs_tol=1e-8, rel_tol=1e-8)
        x0 = _circular_orbit_state(R_EARTH + 500e3)

        def augmented(t, y):
            # Fast oscillating trailing component would force tiny steps
            return jnp.concatenate([_two_body(t, y[:6]), 1e9 * jnp.cos(1e3 * t) * jnp.ones(1)])

        y0 = jnp.concatenate([x0, jnp.array([1.0])])
        base = dp54_dense_step(_two_body, 0.0, x0, 120.0, config)
        aug = dp54_dense_step(augmented, 0.0, y0, 120.0, config, error_dim=6)
        assert float(aug.dt_used) == pytest.approx(float(base.dt_used), rel=1e-12)
        assert float(aug.dt_next) == pytest.approx(float(base.dt_next), rel=1e-12)
        assert jnp.allclose(base.state, aug.state[:6], rtol=1e-14, atol=1e-9)


# ──────────────────────────────────────────────
# Dense output
# ──────────────────────────────────────────────


class TestDenseOutput:
    def test_endpoints(self):
        x0 = jnp.array([1.0, 0.0])
        result = dp54_dense_step(_harmonic_oscillator, 0.0, x0, 0.3)
        h = float(result.dt_used)
        assert jnp.array_equal(dp54_interpolate(x0, result.stages, h, 0.0), x0)
        assert jnp.allclose(dp54_interpolate(x0, result.stages, h, 1.0), result.state,
                            rtol=0.0, atol=1e-14)

    def test_interior_accuracy(self):
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10)
        x0 = jnp.array([1.0, 0.0])
        result = dp54_dense_step(_harmonic_oscillator, 0.0, x0, 0.2, config)
        h = float(result.dt_used)
        for theta in (0.1, 0.37, 0.5, 0.81):
            t = theta * h
            y = dp54_interpolate(x0, result.stages, h, theta)
            assert jnp.allclose(y, jnp.array([jnp.cos(t), -jnp.sin(t)]), atol=1e-8)

    def test_backward_step_interpolation(self):
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10)
        x0 = jnp.array([1.0])
        result = dp54_dense_step(_exponential_decay, 0.0, x0, -0.2, config)
        h = float(result.dt_used)
        y = dp54_interpolate(x0, result.stages, h, 0.5)
        assert jnp.allclose(y, jnp.exp(-0.5 * h), atol=1e-8)

    def test_orbit_interpolation(self):
        config = AdaptiveConfig(abs_tol=1e-9, rel_tol=1e-12)
        sma = R_EARTH + 500e3
        x0 = _circular_orbit_state(sma)
        result = dp54_dense_step(_two_body, 0.0, x0, 30.0, config)
        h = float(result.dt_used)
        n = np.sqrt(GM_EARTH / sma**3)
        t = 0.4 * h
        y = np.asarray(dp54_interpolate(x0, result.stages, h, 0.4))
        expected = sma * np.array([np.cos(n * t), np.sin(n * t), 0.0])
        assert np.linalg.norm(y[:3] - expected) < 1e-4


# ──────────────────────────────────────────────
# DOP853 dense step
# ──────────────────────────────────────────────


def _integrate_orbit(step_fn, x0, duration, h0):
    """Step ``x0`` over ``duration`` seconds, returning the state and step count."""
    t, x, h, steps = 0.0, x0, h0, 0
    while t < duration - 1e-9:
        result = step_fn(x, min(h, duration - t))
        h = float(result.dt_next)
        if bool(result.accepted):
            t += float(result.dt_used)
            x = result.state
            steps += 1
    return x, steps


class TestDOP853:
    def test_result_fields(self):
        result = dop853_dense_step(_harmonic_oscillator, 0.0, jnp.array([1.0, 0.0]), 0.1)
        assert isinstance(result, DenseStepResult)
        assert result.stages.shape == (7, 2)
        assert bool(result.accepted)
        assert int(result.attempts) == 1

    def test_single_step_accuracy(self):
        config = AdaptiveConfig(abs_tol=1e-12, rel_tol=1e-12)
        result = dop853_dense_step(_harmonic_oscillator, 0.0, jnp.array([1.0, 0.0]), 0.5,
                                   config)
        t = float(result.dt_used)
        assert bool(result.accepted)
        assert jnp.allclose(result.state, jnp.array([jnp.cos(t), -jnp.sin(t)]), atol=1e-11)

    def test_one_orbit(self):
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10)
        sma = R_EARTH + 500e3
        period = 2.0 * np.pi * np.sqrt(sma**3 / GM_EARTH)
        step = jax.jit(lambda x, h: dop853_dense_step(_two_body, 0.0, x, h, config))
        x, _ = _integrate_orbit(step, _circular_orbit_state(sma), period, 60.0)
        np.testing.assert_allclose(np.asarray(x[:3]), [sma, 0.0, 0.0], atol=1.0)

    def test_fewer_steps_than_dp54(self):
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10)
        x0 = _circular_orbit_state(R_EARTH + 500e3)
        high = jax.jit(lambda x, h: dop853_dense_step(_two_body, 0.0, x, h, config))
        low = jax.jit(lambda x, h: dp54_dense_step(_two_body, 0.0, x, h, config))
        _, high_steps = _integrate_orbit(high, x0, 3000.0, 60.0)
        _, low_steps = _integrate_orbit(low, x0, 3000.0, 60.0)
        assert high_steps < low_steps

    def test_rejects_large_step(self):
        config = AdaptiveConfig(abs_tol=1e-12, rel_tol=1e-12)
        x0 = _circular_orbit_state(R_EARTH + 500e3)
        result = dop853_dense_step(_two_body, 0.0, x0, 3000.0, config)
        assert int(result.attempts) > 1
        assert abs(float(result.dt_used)) < 3000.0

    def test_not_accepted_when_attempts_exhausted(self):
        config = AdaptiveConfig(abs_tol=1e-14, rel_tol=1e-14, max_step_attempts=1)
        x0 = _circular_orbit_state(R_EARTH + 500e3)
        result = dop853_dense_step(_two_body, 0.0, x0, 3000.0, config)
        assert not bool(result.accepted)
        assert abs(float(result.dt_next)) < 3000.0

    def test_error_dim_ignores_trailing_components(self):
        config = AdaptiveConfig(abs_tol=1e-8, rel_tol=1e-8)
        x0 = _circular_orbit_state(R_EARTH + 500e3)

        def augmented(t, y):
            return jnp.concatenate([_two_body(t, y[:6]), 1e9 * jnp.cos(1e3 * t) * jnp.ones(1)])

        y0 = jnp.concatenate([x0, jnp.array([1.0])])
        base = dop853_dense_step(_two_body, 0.0, x0, 300.0, config)
        aug = dop853_dense_step(augmented, 0.0, y0, 300.0, config, error_dim=6)
        assert float(aug.dt_used) == pytest.approx(float(base.dt_used), rel=1e-12)
        assert jnp.allclose(base.state, aug.state[:6], rtol=1e-14, atol=1e-9)

    def test_zero_error(self):
        zero = jnp.zeros(3)
        error = dop853_error_norm(zero, zero, 10.0, jnp.ones(3), jnp.ones(3), 1e-8, 1e-8)
        assert float(error) == 0.0


class TestDOP853DenseOutput:
    def test_endpoints(self):
        x0 = jnp.array([1.0, 0.0])
        result = dop853_dense_step(_harmonic_oscillator, 0.0, x0, 0.3)
        h = float(result.dt_used)
        assert jnp.array_equal(dop853_interpolate(x0, result.stages, h, 0.0), x0)
        assert jnp.allclose(dop853_interpolate(x0, result.stages, h, 1.0), result.state,
                            rtol=0.0, atol=1e-14)

    def test_interior_accuracy(self):
        config = AdaptiveConfig(abs_tol=1e-12, rel_tol=1e-12)
        x0 = jnp.array([1.0, 0.0])
        result = dop853_dense_step(_harmonic_oscillator, 0.0, x0, 0.5, config)
        h = float(result.dt_used)
        for theta in (0.1, 0.37, 0.5, 0.81):
            t = theta * h
            y = dop853_interpolate(x0, result.stages, h, theta)
            assert jnp.allclose(y, jnp.array([jnp.cos(t), -jnp.sin(t)]), atol=1e-9)

    def test_backward_step_interpolation(self):
        config = AdaptiveConfig(abs_tol=1e-12, rel_tol=1e-12)
        x0 = jnp.array([1.0])
        result = dop853_dense_step(_exponential_decay, 0.0, x0, -0.4, config)
        h = float(result.dt_used)
        y = dop853_interpolate(x0, result.stages, h, 0.5)
        assert jnp.allclose(y, jnp.exp(-0.5 * h), atol=1e-9)

    def test_orbit_interpolation(self):
        config = AdaptiveConfig(abs_tol=1e-9, rel_tol=1e-12)
        sma = R_EARTH + 500e3
        x0 = _circular_orbit_state(sma)
        result = dop853_dense_step(_two_body, 0.0, x0, 120.0, config)
        h = float(result.dt_used)
        n = np.sqrt(GM_EARTH / sma**3)
        t = 0.4 * h
        y = np.asarray(dop853_interpolate(x0, result.stages, h, 0.4))
        expected = sma * np.array([np.cos(n * t), np.sin(n * t), 0.0])
        assert np.linalg.norm(y[:3] - expected) < 1e-3


class TestDenseMethods:
    def test_lookup(self):
        assert get_dense_method("dop853").dense_step is dop853_dense_step
        assert get_dense_method("dp54").interpolate is dp54_interpolate

    def test_costs(self):
        dop853 = get_dense_method("dop853")
        assert dop853.stages_per_attempt == 12
        assert dop853.dense_evaluations == 4
        assert dop853.error_order == 7.0
        assert get_dense_method("dp54").stages_per_attempt == STAGES_PER_ATTEMPT

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown integration method"):
            get_dense_method("rk4")


# ──────────────────────────────────────────────
# Starting step
# ──────────────────────────────────────────────


class TestInitialStep:
    def test_positive_for_forward(self):
        x0 = _circular_orbit_state(R_EARTH + 500e3)
        h = initial_step_size(_two_body, 0.0, x0, 1.0, 4.0, 1e-8, 1e-8, 900.0)
        assert 0.0 < float(h) <= 900.0

    def test_negative_for_backward(self):
        x0 = _circular_orbit_state(R_EARTH + 500e3)
        h = initial_step_size(_two_body, 0.0, x0, -1.0, 4.0, 1e-8, 1e-8, 900.0)
        assert -900.0 <= float(h) < 0.0

    def test_capped_by_max_step(self):
        h = initial_step_size(_exponential_decay, 0.0, jnp.array([1.0]), 1.0, 4.0,
                              1e-3, 1e-3, 0.05)
        assert float(h) == pytest.approx(0.05)

    def test_smaller_for_tighter_tolerance(self):
        x0 = jnp.array([1.0])
        loose = initial_step_size(_exponential_decay, 0.0, x0, 1.0, 4.0, 1e-3, 1e-3, 1e4)
        tight = initial_step_size(_exponential_decay, 0.0, x0, 1.0, 4.0, 1e-12, 1e-12, 1e4)
        assert float(tight) < float(loose)


# ──────────────────────────────────────────────
# JAX compatibility
# ──────────────────────────────────────────────


class TestJAXCompatibility:
    def test_jit_dense_step(self):
        config = AdaptiveConfig(abs_tol=1e-9, rel_tol=1e-9)

        @jax.jit
        def step(x, h):
            return dp54_dense_step(_two_body, 0.0, x, h, config, error_dim=6)

        x0 = _circular_orbit_state(R_EARTH + 500e3)
        jitted = step(x0, 60.0)
        eager = dp54_dense_step(_two_body, 0.0, x0, 60.0, config, error_dim=6)
        assert jnp.allclose(jitted.state, eager.state, rtol=0.0, atol=1e-8)

    def test_vmap_dense_step(self):
        x0 = jnp.stack([
            _circular_orbit_state(R_EARTH + 500e3),
            _circular_orbit_state(R_EARTH + 800e3),
        ])
        results = jax.vmap(lambda x: dp54_dense_step(_two_body, 0.0, x, 30.0))(x0)
        assert results.state.shape == (2, 6)
        assert results.stages.shape == (2, STAGES_PER_ATTEMPT, 6)

    def test_vmap_dop853_step(self):
        x0 = jnp.stack([
            _circular_orbit_state(R_EARTH + 500e3),
            _circular_orbit_state(R_EARTH + 800e3),
        ])
        results = jax.vmap(lambda x: dop853_dense_step(_two_body, 0.0, x, 30.0))(x0)
        assert results.state.shape == (2, 6)
        assert results.stages.shape == (2, 7, 6)
