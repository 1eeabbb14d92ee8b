"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import (
    as_utc,
    format_datetime,
    from_epoch_ms,
    parse_datetime,
    utc_now,
)

__all__ = ["as_utc", "format_datetime", "from_epoch_ms", "parse_datetime", "utc_now"]
