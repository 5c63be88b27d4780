"""
ephemjax is a numerical orbit propagation library implemented in JAX that records its integration steps into queryable bounded ephemerides.
"""

from .constants import (
    JD_MJD_OFFSET,
    MJD2000,
    JD2000,
    SECONDS_PER_DAY,
    R_EARTH,
    GM_EARTH,
)

from .config import set_dtype, get_dtype
from .epoch import Epoch, J2000_EPOCH
from .state import SpacecraftState

from .errors import (
    PropagationError,
    ConfigurationError,
    PhysicallyInvalidState,
    OutOfRange,
    MissingData,
    NotInEphemerisMode,
    StateJacobianNotInitialized,
    UnknownAdditionalState,
    PropagationAborted,
    MaxEvaluationsExceeded,
)

from .integrators import AdaptiveConfig

from .propagation import (
    NumericalPropagator,
    BoundedEphemeris,
    PartialDerivativesEquations,
    AdditionalEquations,
    StepHandler,
    StepNormalizer,
)
