"""Tests for the state value type, the vector layout and the codec."""

import numpy as np
import pytest

from ephemjax.epoch import Epoch
from ephemjax.errors import (
    ConfigurationError,
    MissingData,
    PhysicallyInvalidState,
    UnknownAdditionalState,
)
from ephemjax.propagation import (
    AdditionalEquations,
    AdditionalStateRegistry,
    SensitivityInfo,
    StateLayout,
    StateVectorCodec,
)
from ephemjax.state import SpacecraftState

_EPOCH = Epoch(2024, 1, 1)
_POS = [7.0e6, 1.0e6, 4.0e6]
_VEL = [-500.0, 8000.0, 1000.0]


def _constant(t, x, xdot, block):
    return block * 0.0


def _jacobian_layout(has_mass=False, state_dim=6, params=0):
    info = SensitivityInfo("derivatives", state_dim, params)
    return StateLayout(has_mass, (("cost", 2), ("derivatives", info.size)), info)


def _state_with_blocks(layout, mass=None):
    additional = {name: np.arange(size, dtype=float) + 0.5 for name, size in layout.blocks}
    return SpacecraftState(_EPOCH, _POS, _VEL, mass, additional)


# ──────────────────────────────────────────────
# SpacecraftState
# ──────────────────────────────────────────────


class TestSpacecraftState:
    def test_arrays_are_read_only(self):
        state = SpacecraftState(_EPOCH, _POS, _VEL)
        with pytest.raises(ValueError):
            state.position[0] = 0.0

    def test_pv(self):
        state = SpacecraftState(_EPOCH, _POS, _VEL)
        np.testing.assert_array_equal(state.pv, np.array(_POS + _VEL))

    def test_negative_mass(self):
        with pytest.raises(PhysicallyInvalidState):
            SpacecraftState(_EPOCH, _POS, _VEL, mass=-1.0)

    def test_wrong_position_size(self):
        with pytest.raises(ValueError, match="position"):
            SpacecraftState(_EPOCH, [1.0, 2.0], _VEL)

    def test_missing_additional(self):
        state = SpacecraftState(_EPOCH, _POS, _VEL)
        with pytest.raises(MissingData):
            state.get_additional("derivatives")

    def test_with_additional(self):
        state = SpacecraftState(_EPOCH, _POS, _VEL).with_additional("cost", [1.0, 2.0])
        assert state.has_additional("cost")
        np.testing.assert_array_equal(state.get_additional("cost"), [1.0, 2.0])

    def test_additional_mapping_is_read_only(self):
        state = SpacecraftState(_EPOCH, _POS, _VEL, additional={"cost": [1.0]})
        with pytest.raises(TypeError):
            state.additional["cost"] = np.zeros(1)


# ──────────────────────────────────────────────
# StateLayout
# ──────────────────────────────────────────────


class TestStateLayout:
    def test_base_dimension(self):
        assert StateLayout().dimension() == 6
        assert StateLayout(has_mass=True).dimension() == 7

    @pytest.mark.parametrize("state_dim, params", [(6, 0), (6, 2), (7, 0), (7, 3)])
    def test_sensitivity_dimension(self, state_dim, params):
        has_mass = state_dim == 7
        layout = _jacobian_layout(has_mass, state_dim, params)
        base = state_dim + 2
        assert layout.dimension(with_sensitivities=False) == base
        assert layout.dimension() == base + state_dim * (state_dim + params)

    def test_block_slices_in_registration_order(self):
        layout = _jacobian_layout()
        assert layout.block_slice("cost") == slice(6, 8)
        assert layout.block_slice("derivatives") == slice(8, 44)

    def test_sensitivity_block_absent_without_sensitivities(self):
        layout = StateLayout(False, (("derivatives", 36), ("cost", 2)),
                             SensitivityInfo("derivatives", 6, 0))
        assert layout.block_slice("cost", with_sensitivities=False) == slice(6, 8)
        with pytest.raises(MissingData):
            layout.block_slice("derivatives", with_sensitivities=False)

    def test_unknown_block(self):
        with pytest.raises(UnknownAdditionalState, match="nope"):
            StateLayout().block_slice("nope")

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            StateLayout(False, (("a", 1), ("a", 2)))

    def test_seven_by_seven_requires_mass(self):
        with pytest.raises(ConfigurationError, match="mass"):
            _jacobian_layout(has_mass=False, state_dim=7)

    def test_wrong_sensitivity_size(self):
        with pytest.raises(ConfigurationError):
            StateLayout(False, (("derivatives", 35),), SensitivityInfo("derivatives", 6, 0))


# ──────────────────────────────────────────────
# StateVectorCodec
# ──────────────────────────────────────────────


class TestCodec:
    def test_roundtrip_plain(self):
        codec = StateVectorCodec(StateLayout())
        state = SpacecraftState(_EPOCH, _POS, _VEL)
        decoded = codec.decode(codec.encode(state), state.epoch)
        np.testing.assert_array_equal(decoded.pv, state.pv)
        assert decoded.mass is None
        assert decoded.epoch == state.epoch

    @pytest.mark.parametrize("has_mass", [False, True])
    def test_roundtrip_with_blocks(self, has_mass):
        layout = _jacobian_layout(has_mass)
        codec = StateVectorCodec(layout)
        state = _state_with_blocks(layout, mass=1000.0 if has_mass else None)
        vector = codec.encode(state)
        assert vector.shape == (layout.dimension(),)

        decoded = codec.decode(vector, state.epoch)
        np.testing.assert_array_equal(decoded.position, state.position)
        np.testing.assert_array_equal(decoded.velocity, state.velocity)
        assert decoded.mass == state.mass
        assert set(decoded.additional) == set(state.additional)
        for name in state.additional:
            np.testing.assert_array_equal(decoded.get_additional(name),
                                          state.get_additional(name))

    def test_encode_is_deterministic(self):
        layout = _jacobian_layout()
        codec = StateVectorCodec(layout)
        state = _state_with_blocks(layout)
        np.testing.assert_array_equal(codec.encode(state), codec.encode(state))

    def test_encode_without_sensitivities(self):
        layout = _jacobian_layout()
        codec = StateVectorCodec(layout)
        state = _state_with_blocks(layout)
        vector = codec.encode(state, with_sensitivities=False)
        assert vector.shape == (8,)

        decoded = codec.decode(vector, _EPOCH, with_sensitivities=False)
        assert not decoded.has_additional("derivatives")
        np.testing.assert_array_equal(decoded.get_additional("cost"), [0.5, 1.5])

    def test_decode_missing_sensitivities(self):
        layout = _jacobian_layout()
        codec = StateVectorCodec(layout)
        vector = codec.encode(_state_with_blocks(layout), with_sensitivities=False)
        with pytest.raises(MissingData, match="derivatives"):
            codec.decode(vector, _EPOCH)

    def test_decode_drops_sensitivities_on_request(self):
        layout = _jacobian_layout()
        codec = StateVectorCodec(layout)
        decoded = codec.decode(codec.encode(_state_with_blocks(layout)), _EPOCH,
                               with_sensitivities=False)
        assert not decoded.has_additional("derivatives")
        assert decoded.has_additional("cost")

    def test_decode_negative_mass(self):
        codec = StateVectorCodec(StateLayout(has_mass=True))
        vector = np.array(_POS + _VEL + [-1e-3])
        with pytest.raises(PhysicallyInvalidState):
            codec.decode(vector, _EPOCH)

    def test_decode_wrong_length(self):
        codec = StateVectorCodec(StateLayout())
        with pytest.raises(ConfigurationError, match="length"):
            codec.decode(np.zeros(7), _EPOCH)

    def test_encode_missing_block(self):
        codec = StateVectorCodec(_jacobian_layout())
        with pytest.raises(MissingData):
            codec.encode(SpacecraftState(_EPOCH, _POS, _VEL))

    def test_encode_mass_mismatch(self):
        codec = StateVectorCodec(StateLayout(has_mass=True))
        with pytest.raises(ConfigurationError, match="mass"):
            codec.encode(SpacecraftState(_EPOCH, _POS, _VEL))


# ──────────────────────────────────────────────
# AdditionalStateRegistry
# ──────────────────────────────────────────────


class TestRegistry:
    def test_registration_order(self):
        registry = AdditionalStateRegistry()
        registry.register(AdditionalEquations("b", 2, _constant))
        registry.register(AdditionalEquations("a", 1, _constant))
        layout = registry.build_layout(has_mass=False)
        assert layout.names == ("b", "a")
        assert layout.dimension() == 9

    def test_duplicate_name(self):
        registry = AdditionalStateRegistry()
        registry.register(AdditionalEquations("cost", 1, _constant))
        with pytest.raises(ConfigurationError, match="already registered"):
            registry.register(AdditionalEquations("cost", 3, _constant))

    def test_frozen_registry(self):
        registry = AdditionalStateRegistry()
        registry.freeze()
        with pytest.raises(ConfigurationError, match="running"):
            registry.register(AdditionalEquations("cost", 1, _constant))
        registry.unfreeze()
        registry.register(AdditionalEquations("cost", 1, _constant))
        assert "cost" in registry

    def test_unknown_name(self):
        with pytest.raises(UnknownAdditionalState):
            AdditionalStateRegistry().get("cost")

    def test_initial_value_size_checked(self):
        with pytest.raises(ConfigurationError):
            AdditionalEquations("cost", 2, _constant, initial_value=[0.0])

    def test_initial_value_missing(self):
        equations = AdditionalEquations("cost", 1, _constant)
        with pytest.raises(MissingData):
            equations.initial_value(SpacecraftState(_EPOCH, _POS, _VEL))

    def test_derivatives_required(self):
        with pytest.raises(ConfigurationError, match="derivatives"):
            AdditionalEquations("cost", 1)

    def test_subclass_provides_derivatives(self):
        class Cost(AdditionalEquations):
            def compute_derivatives(self, t, state, state_dot, block, params):
                return block * 0.0

        assert Cost("cost", 1).dimension() == 1
