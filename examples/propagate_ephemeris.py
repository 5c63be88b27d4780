# /// script
# requires-python = ">=3.11"
# dependencies = ["typer>=0.9.0", "ephemjax"]
#
# [tool.uv.sources]
# ephemjax = { path = ".." }
# ///
"""Generate a bounded ephemeris with numerical propagation and query it.

Propagates a spacecraft with adaptive Dormand-Prince 8(5,3) integration in
ephemeris mode, optionally integrating the state-transition matrix, then
evaluates the generated ephemeris at arbitrary epochs without integrating
again.  Compares interpolated states against direct propagation and
optionally writes a sampled table to CSV or Parquet.

Requires ephemjax to be installed (``uv pip install -e .`` from the repo root).

Usage:
    uv run examples/propagate_ephemeris.py [OPTIONS]

Examples:
    # One day forward with default tolerances
    uv run examples/propagate_ephemeris.py

    # Backward propagation with the state-transition matrix
    uv run examples/propagate_ephemeris.py --duration -0.5 --stm

    # Tolerances derived from a 1 cm position error, table written to disk
    uv run examples/propagate_ephemeris.py --position-error 0.01 --output ephemeris.parquet
"""

import logging
import time
from pathlib import Path
from typing import Annotated

import jax.numpy as jnp
import numpy as np
import typer

from ephemjax import set_dtype
from ephemjax.constants import GM_EARTH, R_EARTH
from ephemjax.dynamics import create_two_body_dynamics
from ephemjax.epoch import Epoch
from ephemjax.integrators import AdaptiveConfig
from ephemjax.propagation import (
    NumericalPropagator,
    PartialDerivativesEquations,
    cartesian_tolerances,
)
from ephemjax.state import SpacecraftState

set_dtype(jnp.float64)  # Must be before any JIT compilation


def main(
    epoch: Annotated[str, typer.Option(help="Initial epoch (ISO 8601)")] = "2024-01-01T00:00:00Z",
    duration: Annotated[
        float, typer.Option(help="Propagation duration in days (negative for backward)")
    ] = 1.0,
    position_error: Annotated[
        float, typer.Option(help="Target position error in meters, sets the tolerances")
    ] = 0.1,
    max_step: Annotated[float, typer.Option(help="Maximum integration step in seconds")] = 600.0,
    stm: Annotated[bool, typer.Option(help="Integrate the state-transition matrix")] = False,
    queries: Annotated[int, typer.Option(help="Number of random ephemeris queries")] = 1000,
    samples: Annotated[int, typer.Option(help="Rows of the sampled table")] = 200,
    output: Annotated[
        Path | None, typer.Option(help="Write the sampled table (.csv or .parquet)")
    ] = None,
    verbose: Annotated[bool, typer.Option(help="Show propagator log messages")] = False,
) -> None:
    """Generate an ephemeris and evaluate it at arbitrary epochs."""
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)

    # ── Stage 1: Initial state ───────────────────────────────────────────
    print("── Stage 1: Initial state ──")
    epoch_0 = Epoch(epoch)
    state_0 = SpacecraftState(epoch_0, [7.0e6, 1.0e6, 4.0e6], [-500.0, 8000.0, 1000.0])
    alt_km = (np.linalg.norm(state_0.position) - R_EARTH) / 1e3
    print(f"  Epoch: {epoch_0}")
    print(f"  Altitude: {alt_km:.1f} km")

    abs_tol, rel_tol = cartesian_tolerances(position_error, state_0, GM_EARTH)
    config = AdaptiveConfig(abs_tol=abs_tol, rel_tol=rel_tol, max_step=max_step)
    print(f"  Position error target: {position_error} m "
          f"(velocity tolerance {abs_tol[3]:.3e} m/s, relative {rel_tol[0]:.3e})")

    # ── Stage 2: Ephemeris generation ────────────────────────────────────
    print("\n── Stage 2: Ephemeris generation ──")
    propagator = NumericalPropagator(create_two_body_dynamics(), config)
    if stm:
        pde = PartialDerivativesEquations("derivatives", propagator)
        pde.set_initial_jacobians(6, 0)
    propagator.set_initial_state(state_0)
    propagator.set_ephemeris_mode()

    target = epoch_0 + duration * 86400.0
    t0 = time.perf_counter()
    final = propagator.propagate(target)
    elapsed = time.perf_counter() - t0
    ephemeris = propagator.get_generated_ephemeris()

    print(f"  Propagated to {final.epoch} in {elapsed:.2f}s "
          f"(includes XLA compilation)")
    print(f"  Steps: {len(ephemeris)}, dynamics evaluations: {propagator.evaluations}")
    print(f"  Validity: [{ephemeris.min_date}, {ephemeris.max_date}]")

    # ── Stage 3: Random-access queries ───────────────────────────────────
    print("\n── Stage 3: Random-access queries ──")
    rng = np.random.default_rng(42)
    span = ephemeris.max_date - ephemeris.min_date
    offsets = rng.uniform(0.0, span, queries)

    t0 = time.perf_counter()
    for offset in offsets:
        ephemeris.propagate(ephemeris.min_date + float(offset))
    elapsed = time.perf_counter() - t0
    print(f"  {queries} queries in {elapsed:.2f}s ({elapsed / max(queries, 1) * 1e6:.0f} us/query)")

    # ── Stage 4: Comparison with direct propagation ──────────────────────
    print("\n── Stage 4: Comparison with direct propagation ──")
    check = epoch_0 + 0.48 * duration * 86400.0
    direct_propagator = NumericalPropagator(create_two_body_dynamics(), config)
    direct_propagator.set_initial_state(state_0)
    direct = direct_propagator.propagate(check)
    interpolated = ephemeris.propagate(check)
    dr = np.linalg.norm(interpolated.position - direct.position)
    dv = np.linalg.norm(interpolated.velocity - direct.velocity)
    print(f"  At {check}: |dr| = {dr:.3e} m, |dv| = {dv:.3e} m/s")

    if stm:
        phi = ephemeris.get_state_jacobian(target)
        print(f"  det(Phi) at target: {np.linalg.det(phi):.12f} (1 for Hamiltonian flows)")

    # ── Stage 5: Sampled table ───────────────────────────────────────────
    print("\n── Stage 5: Sampled table ──")
    df = ephemeris.to_dataframe(n_points=samples)
    print(df.head(5))
    if output is not None:
        if output.suffix == ".parquet":
            df.write_parquet(output)
        else:
            df.write_csv(output)
        print(f"  Wrote {df.height} rows to {output}")

    print("\nDone.")


if __name__ == "__main__":
    typer.run(main)
