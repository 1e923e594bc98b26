"""CrimeWatch: community crime reporting backend with hotspot aggregation."""

__version__ = "1.0.0"
