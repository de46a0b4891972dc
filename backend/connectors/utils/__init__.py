"""Utility functions for the connectors service."""

from connectors.utils.timestamps import (
    as_utc,
    from_epoch_ms,
    parse_rfc3339,
    to_epoch_ms,
    utc_now,
)

__all__ = [
    "as_utc",
    "from_epoch_ms",
    "parse_rfc3339",
    "to_epoch_ms",
    "utc_now",
]
