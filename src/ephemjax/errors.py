"""Exception hierarchy for propagation and ephemeris queries.

Every failure raised by ephemjax derives from :class:`PropagationError`.
Exceptions that represent bad input also derive from the matching
built-in (``ValueError``, ``LookupError``) so that generic handlers keep
working.

- :class:`ConfigurationError`: invalid setup detected before or at the
  first step (duplicate additional state, Jacobian dimension mismatch,
  variational equations changed mid-run).  Fatal, never retried.
- :class:`PhysicallyInvalidState`: the integrated state left the
  physical domain (negative mass).  Terminates the current run.
- :class:`OutOfRange`: query epoch outside an ephemeris validity
  interval.  The ephemeris itself stays usable.
- :class:`MissingData`: a requested block is absent from a state or
  vector.
- :class:`NotInEphemerisMode`: a generated ephemeris was requested from
  a propagator that never recorded one.
- :class:`StateJacobianNotInitialized`: a Jacobian was requested but the
  variational equations were never enabled.
- :class:`UnknownAdditionalState`: a name that the state layout does not
  define.
- :class:`PropagationAborted`: the run was cancelled or hit a terminal
  failure of the integrator; no ephemeris is produced.
- :class:`MaxEvaluationsExceeded`: the right-hand side evaluation budget
  was exhausted.  A :class:`PropagationAborted` subtype.
"""

from __future__ import annotations


class PropagationError(Exception):
    """Base class of all ephemjax errors."""


class ConfigurationError(PropagationError, ValueError):
    """Invalid propagator, layout or variational equations setup."""


class PhysicallyInvalidState(PropagationError):
    """The integrated state is outside its physical domain."""


class OutOfRange(PropagationError, ValueError):
    """Epoch outside the validity interval of an ephemeris or step."""

    def __init__(self, epoch, min_date, max_date):
        self.epoch = epoch
        self.min_date = min_date
        self.max_date = max_date
        super().__init__(
            f"Epoch {epoch} is outside the validity interval "
            f"[{min_date}, {max_date}]"
        )


class MissingData(PropagationError, ValueError):
    """Data required to complete the operation is not available."""


class NotInEphemerisMode(PropagationError, RuntimeError):
    """Ephemeris generation was never requested on this propagator."""


class StateJacobianNotInitialized(PropagationError, RuntimeError):
    """The variational equations were never initialised."""


class UnknownAdditionalState(PropagationError, LookupError):
    """The additional state name is not registered in the layout."""

    def __init__(self, name, known=()):
        self.name = name
        super().__init__(
            f"Unknown additional state '{name}'. "
            f"Registered names: {list(known)}"
        )


class PropagationAborted(PropagationError, RuntimeError):
    """The propagation run was aborted and produced no ephemeris."""


class MaxEvaluationsExceeded(PropagationAborted):
    """The right-hand side evaluation budget of a run was exhausted."""
