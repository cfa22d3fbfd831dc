from __future__ import annotations

import copy
import datetime as dt
import email.utils
import logging
import re
import socket
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests


LOGGER = logging.getLogger("catalog-sync")

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def now_epoch() -> int:
    return int(time.time())


def to_iso(ts: int) -> str:
    return dt.datetime.fromtimestamp(ts, dt.timezone.utc).astimezone().strftime(
        "%d-%m-%y %H:%M:%S"
    )


def utc_date(ts: int) -> str:
    return dt.datetime.fromtimestamp(int(ts), dt.timezone.utc).strftime("%Y-%m-%d")


def years_before(ts: int, years: int) -> str:
    """Calendar date `years` before `ts`, formatted like upstream `ended` values."""
    day = dt.datetime.fromtimestamp(int(ts), dt.timezone.utc).date()
    try:
        shifted = day.replace(year=day.year - years)
    except ValueError:
        # Feb 29 on a non-leap target year.
        shifted = day.replace(year=day.year - years, day=28)
    return shifted.isoformat()


def parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(str(value).strip().replace(",", ""))
    except (TypeError, ValueError):
        return None


def slugify(value: Optional[str]) -> str:
    lowered = str(value or "").lower()
    return _SLUG_RE.sub("-", lowered).strip("-")


def parse_retry_after(value: Optional[str], default_seconds: float = 5) -> float:
    if not value:
        return default_seconds

    stripped = value.strip()
    as_int = parse_int(stripped)
    if as_int is not None:
        return max(1, as_int)

    try:
        dt_value = email.utils.parsedate_to_datetime(stripped)
        if dt_value.tzinfo is None:
            dt_value = dt_value.replace(tzinfo=dt.timezone.utc)
        delta = int((dt_value - dt.datetime.now(dt.timezone.utc)).total_seconds())
        return max(1, delta)
    except (TypeError, ValueError, IndexError):
        return default_seconds


def sanitize_url_for_logs(url: str) -> str:
    sensitive_keys = {
        "api_key",
        "apikey",
        "token",
        "access_token",
        "auth",
        "authorization",
        "key",
    }
    try:
        parts = urlsplit(url)
        if not parts.query:
            return url
        sanitized_query = []
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            if key.lower() in sensitive_keys:
                sanitized_query.append((key, "***"))
            else:
                sanitized_query.append((key, value))
        return urlunsplit(
            (
                parts.scheme,
                parts.netloc,
                parts.path,
                urlencode(sanitized_query, doseq=True),
                parts.fragment,
            )
        )
    except ValueError:
        return url


def is_network_unavailable_error(exc: requests.RequestException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    marker_text = str(exc).lower()
    markers = (
        "nameresolutionerror",
        "failed to resolve",
        "temporary failure in name resolution",
        "nodename nor servname provided",
        "network is unreachable",
        "no route to host",
        "connection refused",
        "connection reset",
    )
    if any(marker in marker_text for marker in markers):
        return True
    cause = getattr(exc, "__cause__", None)
    if isinstance(cause, (socket.gaierror, TimeoutError, OSError)):
        return True
    return False


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result
