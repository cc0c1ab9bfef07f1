# utils.py
from datetime import datetime, timezone


def utc_now():
    # Naive UTC "now", matching how timestamps are stored
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_utc_naive(dt):
    # Ensure DB writes are stored as naive UTC (consistent with the models)
    # Accepts naive (assumed UTC) or aware; returns naive UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        # Already naive: assume UTC by convention
        return dt

    # Convert to UTC then drop tzinfo
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat_utc(dt):
    if dt is None:
        return None
    return ensure_utc_naive(dt).replace(tzinfo=timezone.utc).isoformat()
