"""Utility helpers."""
from .identity import UNKNOWN_CLIENT, client_identity, forwarded_address  # noqa: F401
from .time import bucket_start, epoch_ms, format_reset, seconds_until  # noqa: F401
