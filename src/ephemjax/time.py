"""Calendar and Julian Date conversions.

These helpers run on the host with Python integers so that the split
(day number + seconds) representation used by :class:`~ephemjax.epoch.Epoch`
stays exact.  Time-scale offsets (leap seconds, TT-TAI) are not handled
here; all epochs are assumed to be expressed in a single uniform scale.
"""

from __future__ import annotations

import math

from .constants import JD_MJD_OFFSET


def caldate_to_mjd_day(year: int, month: int, day: int) -> int:
    """Return the integer Modified Julian Date of 00:00 on a calendar date.

    Algorithm is only valid for Gregorian dates (year 1583 onward).

    Args:
        year (int): Year of the calendar date.
        month (int): Month of the calendar date.
        day (int): Day of the calendar date.

    Returns:
        int: Modified Julian Date of the start of the day.

    References:

        1. Montenbruck, O., & Gill, E. (2012). *Satellite Orbits: Models, Methods and Applications*. Springer Science & Business Media.
    """
    if month <= 2:
        year -= 1
        month += 12

    b = year // 400 - year // 100 + year // 4

    return 365 * year - 679004 + b + int(30.6001 * (month + 1)) + day


def caldate_to_mjd(
    year: int,
    month: int,
    day: int,
    hour: int = 0,
    minute: int = 0,
    second: float = 0.0,
) -> float:
    """Convert a calendar date to Modified Julian Date.

    Args:
        year (int): Year of the calendar date.
        month (int): Month of the calendar date.
        day (int): Day of the calendar date.
        hour (int): Hour of the calendar date. Default: ``0``
        minute (int): Minute of the calendar date. Default: ``0``
        second (float): Second of the calendar date. Default: ``0.0``

    Returns:
        float: Modified Julian Date.
    """
    frac_day = (hour + (minute + second / 60.0) / 60.0) / 24.0
    return caldate_to_mjd_day(year, month, day) + frac_day


def caldate_to_jd(
    year: int,
    month: int,
    day: int,
    hour: int = 0,
    minute: int = 0,
    second: float = 0.0,
) -> float:
    """Convert a calendar date to Julian Date.

    Args:
        year (int): Year of the calendar date.
        month (int): Month of the calendar date.
        day (int): Day of the calendar date.
        hour (int): Hour of the calendar date. Default: ``0``
        minute (int): Minute of the calendar date. Default: ``0``
        second (float): Second of the calendar date. Default: ``0.0``

    Returns:
        float: Julian Date.
    """
    return caldate_to_mjd(year, month, day, hour, minute, second) + JD_MJD_OFFSET


def jd_to_mjd(jd: float) -> float:
    """Convert Julian Date to Modified Julian Date."""
    return jd - JD_MJD_OFFSET


def mjd_to_jd(mjd: float) -> float:
    """Convert Modified Julian Date to Julian Date."""
    return mjd + JD_MJD_OFFSET


def jdn_to_caldate(jdn: int) -> tuple[int, int, int]:
    """Convert a Julian Day Number to a Gregorian calendar date.

    The Julian Day Number labels the day whose noon falls at the integer
    Julian Date ``jdn``.  Uses the integer algorithm of Fliegel and
    Van Flandern, exact for all non-negative day numbers.

    Args:
        jdn (int): Julian Day Number.

    Returns:
        tuple[int, int, int]: (year, month, day).

    References:

        1. H. F. Fliegel and T. C. Van Flandern, *A Machine Algorithm for
           Processing Calendar Dates*, Communications of the ACM 11, 1968.
    """
    ell = jdn + 68569
    n = 4 * ell // 146097
    ell = ell - (146097 * n + 3) // 4
    i = 4000 * (ell + 1) // 1461001
    ell = ell - 1461 * i // 4 + 31
    j = 80 * ell // 2447
    day = ell - 2447 * j // 80
    ell = j // 11
    month = j + 2 - 12 * ell
    year = 100 * (n - 49) + i + ell
    return year, month, day


def jd_to_caldate(jd: float) -> tuple[int, int, int, int, int, float]:
    """Convert Julian Date to calendar date.

    Args:
        jd (float): Julian Date.

    Returns:
        tuple: (year, month, day, hour, minute, second) where second
            includes the fractional part.
    """
    jd_shifted = jd + 0.5
    jdn = int(math.floor(jd_shifted))
    year, month, day = jdn_to_caldate(jdn)

    # Decompose fractional day via integer microseconds to avoid
    # truncation artifacts from floating-point precision limits
    total_us = int(round((jd_shifted - jdn) * 86400e6))
    hour, total_us = divmod(total_us, 3600 * 10**6)
    minute, total_us = divmod(total_us, 60 * 10**6)
    second = total_us / 1e6

    return year, month, day, hour, minute, second


def mjd_to_caldate(mjd: float) -> tuple[int, int, int, int, int, float]:
    """Convert Modified Julian Date to calendar date.

    Args:
        mjd (float): Modified Julian Date.

    Returns:
        tuple: (year, month, day, hour, minute, second).
    """
    return jd_to_caldate(mjd + JD_MJD_OFFSET)
