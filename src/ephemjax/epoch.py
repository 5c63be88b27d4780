"""Host-side epochs with compensated arithmetic.

An :class:`Epoch` stores an integer Julian Day number, the seconds elapsed
since the start of that day (noon), and a running Kahan compensator.  The
compensator absorbs the rounding error of each shift, so walking through
thousands of ephemeris step boundaries leaves the epoch within a few ulps
of the exact sum instead of drifting linearly with the number of shifts.

Epochs never enter JIT-compiled code.  Propagators convert them to offsets
in seconds from a reference epoch before handing anything to the
integrator, and the split day/seconds representation keeps those offsets
free of cancellation over multi-century spans.
"""

from __future__ import annotations

import math
import re

from .config import get_epoch_eq_tolerance
from .constants import JD2000, JD_MJD_OFFSET, SECONDS_PER_DAY
from .time import caldate_to_mjd_day, jdn_to_caldate

# Date, optionally followed by a UTC time of day with fractional seconds
_ISO_EPOCH = re.compile(
    r'^(?P<date>\d{4}-\d{2}-\d{2})'
    r'(?:T(?P<hh>\d{2}):(?P<mm>\d{2}):(?P<ss>\d{2}(?:\.\d+)?)Z)?$'
)


def _parse_iso(text: str) -> tuple[int, int, int, int, int, float]:
    match = _ISO_EPOCH.match(text)
    if match is None:
        raise ValueError(f'Cannot parse epoch "{text}": expected ISO 8601 '
                         'YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS[.f]Z')
    year, month, day = (int(part) for part in match['date'].split('-'))
    if match['hh'] is None:
        return year, month, day, 0, 0, 0.0
    return year, month, day, int(match['hh']), int(match['mm']), float(match['ss'])


class Epoch:
    """An immutable instant in time.

    ``epoch + dt`` and :meth:`shifted_by` return new epochs, and
    ``epoch_a - epoch_b`` gives the elapsed seconds.  Equality holds within
    the epoch tolerance from
    :func:`ephemjax.config.get_epoch_eq_tolerance`.

    Constructors:
        Epoch(2024, 1, 1)
        Epoch(2024, 1, 1, 6, 30, 12.5)
        Epoch("2024-01-01T06:30:12.5Z")
        Epoch(other)
    """

    __slots__ = ('_jd', '_seconds', '_kahan_c')

    def __init__(self, *args: int | float | str | Epoch) -> None:
        if len(args) == 1 and isinstance(args[0], Epoch):
            src = args[0]
            self._jd, self._seconds, self._kahan_c = src._jd, src._seconds, src._kahan_c
            return
        if len(args) == 1 and isinstance(args[0], str):
            args = _parse_iso(args[0])
        elif not 3 <= len(args) <= 6:
            raise ValueError(
                f"Epoch takes 3 to 6 calendar components, an ISO 8601 string "
                f"or another Epoch, got {args!r}"
            )
        self._set_calendar(*args)

    @classmethod
    def _from_internal(cls, jd, seconds, kahan_c):
        obj = object.__new__(cls)
        obj._jd = int(jd)
        obj._seconds = float(seconds)
        obj._kahan_c = float(kahan_c)
        obj._normalize()
        return obj

    def _set_calendar(self, year, month, day, hour=0, minute=0, second=0.0):
        mjd = caldate_to_mjd_day(int(year), int(month), int(day))

        # MJD 0h is JD x.5, i.e. 43200 s into Julian day (mjd + 2400000)
        self._jd = mjd + int(JD_MJD_OFFSET - 0.5)
        self._seconds = (SECONDS_PER_DAY / 2.0
                         + hour * 3600.0 + minute * 60.0 + float(second))
        self._kahan_c = 0.0
        self._normalize()

    def _normalize(self):
        """Fold ``_seconds`` into [0, 86400), carrying whole days into ``_jd``."""
        day_offset = math.floor(self._seconds / SECONDS_PER_DAY)
        self._seconds -= day_offset * SECONDS_PER_DAY
        self._jd += day_offset
        if self._seconds >= SECONDS_PER_DAY:
            self._seconds -= SECONDS_PER_DAY
            self._jd += 1

    def _compensated_seconds(self):
        return self._seconds - self._kahan_c

    # Arithmetic

    def shifted_by(self, delta: float) -> Epoch:
        """Return the epoch ``delta`` seconds later (earlier if negative).

        Each shift is one step of Kahan summation, carrying the compensator
        into the new epoch.
        """
        y = float(delta) - self._kahan_c
        t = self._seconds + y
        return Epoch._from_internal(self._jd, t, (t - self._seconds) - y)

    def __add__(self, delta: float) -> Epoch:
        if isinstance(delta, Epoch):
            return NotImplemented
        return self.shifted_by(delta)

    def __sub__(self, other: Epoch | float) -> Epoch | float:
        """Elapsed seconds between two epochs, or the epoch shifted back by ``other`` seconds."""
        if isinstance(other, Epoch):
            return ((self._jd - other._jd) * SECONDS_PER_DAY
                    + (self._compensated_seconds()
                       - other._compensated_seconds()))
        return self.shifted_by(-float(other))

    def duration_from(self, other: Epoch) -> float:
        """Return the seconds elapsed from ``other`` to this epoch."""
        return self - other

    # Comparison operators

    def _key(self):
        return (self._jd, self._compensated_seconds())

    def __eq__(self, other):
        if not isinstance(other, Epoch):
            return NotImplemented
        return abs(self - other) < get_epoch_eq_tolerance()

    def __ne__(self, other):
        if not isinstance(other, Epoch):
            return NotImplemented
        return not self.__eq__(other)

    def __lt__(self, other):
        if not isinstance(other, Epoch):
            return NotImplemented
        return self._key() < other._key()

    def __le__(self, other):
        if not isinstance(other, Epoch):
            return NotImplemented
        return self.__lt__(other) or self.__eq__(other)

    def __gt__(self, other):
        if not isinstance(other, Epoch):
            return NotImplemented
        return self._key() > other._key()

    def __ge__(self, other):
        if not isinstance(other, Epoch):
            return NotImplemented
        return self.__gt__(other) or self.__eq__(other)

    # Time properties

    def caldate(self) -> tuple[int, int, int, int, int, float]:
        """Return the calendar date components.

        Returns:
            tuple: (year, month, day, hour, minute, second) where second
                includes fractional part.
        """
        comp_seconds = self._compensated_seconds()

        # JD day starts at noon, so shift by 43200s to get civil time of day.
        civil = comp_seconds + SECONDS_PER_DAY / 2.0
        jdn = self._jd + (1 if civil >= SECONDS_PER_DAY else 0)
        civil_time = civil % SECONDS_PER_DAY

        year, month, day = jdn_to_caldate(jdn)

        hour = int(civil_time // 3600)
        civil_time -= hour * 3600
        minute = int(civil_time // 60)
        second = civil_time - minute * 60

        return year, month, day, hour, minute, second

    def jd(self) -> float:
        """Return the Julian Date as a single float.

        Note:
            A single float64 near typical JD values (~2.45M) resolves about
            40 microseconds.  Use epoch subtraction for precise intervals.

        Returns:
            float: Julian Date.
        """
        return self._jd + self._compensated_seconds() / SECONDS_PER_DAY

    def mjd(self) -> float:
        """Return the Modified Julian Date as a single float.

        Returns:
            float: Modified Julian Date.
        """
        return (self._jd - JD_MJD_OFFSET) + self._compensated_seconds() / SECONDS_PER_DAY

    def seconds_since_j2000(self) -> float:
        """Return the seconds elapsed since the J2000.0 epoch."""
        return ((self._jd - JD2000) * SECONDS_PER_DAY
                + self._compensated_seconds())

    # String representations

    def isoformat(self) -> str:
        """Return the epoch as an ISO 8601 string with microseconds."""
        year, month, day, hour, minute, second = self.caldate()
        return (f'{year:04d}-{month:02d}-{day:02d}T'
                f'{hour:02d}:{minute:02d}:{second:09.6f}Z')

    def __str__(self):
        year, month, day, hour, minute, second = self.caldate()
        return (f'{year:04d}-{month:02d}-{day:02d}T'
                f'{hour:02d}:{minute:02d}:{second:06.3f}Z')

    def __repr__(self):
        return (f'Epoch(_jd={self._jd}, _seconds={self._seconds!r}, '
                f'_kahan_c={self._kahan_c!r})')

    def __hash__(self):
        return hash((self._jd, round(self._compensated_seconds(), 3)))


J2000_EPOCH = Epoch(2000, 1, 1, 12, 0, 0.0)
"""The J2000.0 reference epoch, 2000-01-01T12:00:00."""
