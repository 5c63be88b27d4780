import jax.numpy as jnp
import pytest

from ephemjax.config import set_dtype


@pytest.fixture(autouse=True)
def _ensure_float64():
    """Set float64 precision before every test.

    test_config.py switches the dtype to float32; this fixture restores
    float64 so that every other test runs at full precision regardless of
    ordering.
    """
    set_dtype(jnp.float64)
