"""
Time and physical constants shared by the epoch arithmetic, the built-in
dynamics and the tests.  All values are SI.
"""

# Time Constants

"""
Offset between Julian Date and Modified Julian Date. Units: *days*
"""
JD_MJD_OFFSET = 2400000.5

"""
Modified Julian Date of the J2000.0 epoch (2000-01-01 12:00:00 TT). Units: *days*
"""
MJD2000 = 51544.5

"""
Julian Day number of the J2000.0 epoch (2000-01-01 12:00:00). Units: *days*
"""
JD2000 = 2451545

"""
Number of seconds in a Julian day. Units: *s*
"""
SECONDS_PER_DAY = 86400.0

# Earth Constants
"""
Earth's equatorial radius. [m]

References:

1. GGM05s Gravity Model
"""
R_EARTH = 6.378136300e6  # [m] GGM05s Value

"""
Earth's Gravitational constant [m^3/s^2]

References:

1. O. Montenbruck, and E. Gill, *Satellite Orbits: Models, Methods and
Applications*, 2012.
"""
GM_EARTH = 3.986004415e14  # [m^3/s^2] GGM05s Value

"""
Earth's Gravitational constant as used by the EIGEN-5C gravity field [m^3/s^2]
"""
GM_EARTH_EIGEN5C = 3.9860047e14

# Propulsion Constants
"""
Standard gravity used to convert specific impulse to exhaust velocity. [m/s^2]
"""
G0_STANDARD = 9.80665
