"""
cvarchitect/core/clock.py

UTC clock helper shared by the plan, entitlement and ledger code.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def normalize_now(now: Optional[Any] = None) -> datetime:
    """Return `now` as an aware UTC datetime; naive values are taken as UTC."""
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now
