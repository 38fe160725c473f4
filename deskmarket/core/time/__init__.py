"""
Time utilities

Usage:
    from deskmarket.core.time import utc_now, iso_z

    started = utc_now()  # aware UTC datetime
"""

from .clock import elapsed_ms, iso_z, utc_now, utc_now_iso

__all__ = [
    'utc_now',
    'utc_now_iso',
    'iso_z',
    'elapsed_ms',
]
