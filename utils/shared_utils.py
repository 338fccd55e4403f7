"""
Shared utility functions for routers and services
"""
import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

from config.settings import settings

logger = logging.getLogger(__name__)


def log_endpoint_event(endpoint: str, user_id: Optional[str] = None, result: str = "success", details: Optional[dict] = None):
    """Log endpoint execution to app.log"""
    logger.info(f"{endpoint} | user={user_id or 'none'} | {result} | {json.dumps(details or {}, default=str)}")


def app_link(path: str) -> str:
    """Absolute URL of a web app page; the pages are served from APP_URL, not this API."""
    return f"{settings.app_url.rstrip('/')}{path}"


def safe_number(value: Any, fallback: Optional[float] = None) -> Optional[float]:
    """
    Coerce a loosely-typed JSON value into a finite float.

    Args:
        value: Number, numeric string, or anything else
        fallback: Value returned for None, "" and non-numeric input

    Returns:
        Finite float or ``fallback``
    """
    if value is None or value == "" or isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def safe_div(numerator: Optional[float], denominator: Optional[float]) -> Optional[float]:
    if numerator is None or denominator is None or denominator == 0:
        return None
    result = numerator / denominator
    return result if math.isfinite(result) else None


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def safe_hostname(url: Optional[str]) -> Optional[str]:
    """
    Extract a hostname from a user-supplied listing URL.

    Bare domains ("bizbuysell.com/listing/1") are treated as https.
    Returns None when nothing usable can be parsed.
    """
    if not url:
        return None
    candidate = url if url.startswith("http") else f"https://{url}"
    try:
        return urlparse(candidate).hostname or None
    except ValueError:
        return None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; every stored value is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat().replace("+00:00", "Z") if value else None


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
