"""Numerical propagation to bounded ephemerides.

Provides the numerical propagator, the flat state vector codec, additional
and variational equations, the step recorder and the bounded ephemeris
built from a run, plus step handlers and event detectors.
"""

from ephemjax.propagation.additional import AdditionalEquations, AdditionalStateRegistry
from ephemjax.propagation.codec import SensitivityInfo, StateLayout, StateVectorCodec
from ephemjax.propagation.ephemeris import BoundedEphemeris
from ephemjax.propagation.events import (
    Action,
    DateDetector,
    EventDetector,
    FunctionalDetector,
)
from ephemjax.propagation.numerical import NumericalPropagator, PropagatorMode
from ephemjax.propagation.recorder import RecorderState, StepRecorder
from ephemjax.propagation.sampling import (
    FixedStepHandler,
    StepHandler,
    StepInterpolator,
    StepModel,
    StepNormalizer,
)
from ephemjax.propagation.tolerances import cartesian_tolerances
from ephemjax.propagation.variational import JacobiansMapper, PartialDerivativesEquations

__all__ = [
    "AdditionalEquations",
    "AdditionalStateRegistry",
    "SensitivityInfo",
    "StateLayout",
    "StateVectorCodec",
    "BoundedEphemeris",
    "Action",
    "DateDetector",
    "EventDetector",
    "FunctionalDetector",
    "NumericalPropagator",
    "PropagatorMode",
    "RecorderState",
    "StepRecorder",
    "FixedStepHandler",
    "StepHandler",
    "StepInterpolator",
    "StepModel",
    "StepNormalizer",
    "cartesian_tolerances",
    "JacobiansMapper",
    "PartialDerivativesEquations",
]
