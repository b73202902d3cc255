# app/core/jobs/validators.py
"""
Input validators for job creation and proof submission.

Everything here is pure: no I/O, no settings access.  The coordinator
passes limits in explicitly so tests can exercise edge cases directly.
"""
from __future__ import annotations

import math
import re
import uuid
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit

from app.core.jobs.domain import JobLocation, Task, Urgency
from app.core.jobs.errors import ValidationError

__all__ = [
    "sanitize_text",
    "validate_price",
    "validate_location",
    "validate_urgency",
    "sanitize_tasks",
    "filter_proof_urls",
    "MAX_TASKS", "MAX_PROOF_URLS",
]


# ---------------------------------------------------------------------------
# Text sanitisation
# ---------------------------------------------------------------------------

_HTML_TAG_RE = re.compile(r"<[^>]{1,200}>")
_SCRIPT_URI_RE = re.compile(r"(?:javascript|vbscript|data)\s*:", re.IGNORECASE)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_MULTI_SPACE_RE = re.compile(r"[ \t]{2,}")

MAX_TASKS = 50
MAX_PROOF_URLS = 20
_MAX_TASK_NAME_LEN = 120
_MAX_TASK_DESCRIPTION_LEN = 1000
_MAX_ADDRESS_LEN = 300
_MAX_URL_LEN = 2048


def sanitize_text(s: Optional[str], max_length: int) -> str:
    """Strip HTML tags, script URIs and control characters; collapse spaces; truncate."""
    t = (s or "").strip()
    if not t:
        return ""
    t = _HTML_TAG_RE.sub("", t)
    t = _SCRIPT_URI_RE.sub("", t)
    t = _CONTROL_RE.sub("", t)
    t = _MULTI_SPACE_RE.sub(" ", t).strip()
    return t[:max_length]


# ---------------------------------------------------------------------------
# Job creation
# ---------------------------------------------------------------------------

def validate_price(price_amount: Any, min_amount: int) -> int:
    # bool is an int subclass; True is not a price
    if isinstance(price_amount, bool) or not isinstance(price_amount, int):
        raise ValidationError("price_amount must be an integer amount in minor units")
    if price_amount < min_amount:
        raise ValidationError(f"price_amount must be at least {min_amount}")
    return price_amount


def validate_location(lat: Any, lng: Any, address: Optional[str]) -> JobLocation:
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise ValidationError("location coordinates must be numbers") from None

    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise ValidationError("location coordinates must be finite")
    if not -90.0 <= lat_f <= 90.0:
        raise ValidationError("latitude must be between -90 and 90")
    if not -180.0 <= lng_f <= 180.0:
        raise ValidationError("longitude must be between -180 and 180")

    clean_address = sanitize_text(address, _MAX_ADDRESS_LEN)
    if not clean_address:
        raise ValidationError("location address is required")

    return JobLocation(lat=lat_f, lng=lng_f, address=clean_address)


def validate_urgency(value: Any) -> Urgency:
    if isinstance(value, Urgency):
        return value
    try:
        return Urgency(str(value).upper())
    except ValueError:
        raise ValidationError("urgency must be one of LOW, NORMAL, HIGH") from None


def sanitize_tasks(tasks: Optional[Iterable[Any]]) -> list[Task]:
    """Normalize task descriptors, keeping their order.

    Accepts ``Task`` instances or dicts with ``name`` (required),
    ``id`` and ``description``.  Tasks whose name is empty after
    sanitising are dropped; at least one must remain.
    """
    result: list[Task] = []
    for raw in tasks or []:
        if isinstance(raw, Task):
            name, task_id, description = raw.name, raw.id, raw.description
        elif isinstance(raw, dict):
            name = raw.get("name")
            task_id = raw.get("id")
            description = raw.get("description")
        else:
            raise ValidationError("each task must be an object with a name")

        clean_name = sanitize_text(name, _MAX_TASK_NAME_LEN)
        if not clean_name:
            continue
        clean_description = sanitize_text(description, _MAX_TASK_DESCRIPTION_LEN) or None
        clean_id = sanitize_text(str(task_id), 64) if task_id else ""

        result.append(Task(
            id=clean_id or str(uuid.uuid4()),
            name=clean_name,
            description=clean_description,
        ))

    if not result:
        raise ValidationError("at least one task is required")
    if len(result) > MAX_TASKS:
        raise ValidationError(f"at most {MAX_TASKS} tasks are allowed")
    return result


# ---------------------------------------------------------------------------
# Proof of work
# ---------------------------------------------------------------------------

def _is_absolute_http_url(value: str) -> bool:
    if len(value) > _MAX_URL_LEN or any(ch.isspace() for ch in value):
        return False
    try:
        parts = urlsplit(value)
        # .port raises on garbage like "https://host:99999"
        parts.port
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def filter_proof_urls(urls: Optional[Iterable[Any]]) -> list[str]:
    """Keep well-formed absolute http(s) URLs, in order, without duplicates.

    Malformed entries are dropped silently instead of failing the whole
    submission.
    """
    kept: list[str] = []
    seen: set[str] = set()
    for raw in urls or []:
        if not isinstance(raw, str):
            continue
        candidate = raw.strip()
        if not _is_absolute_http_url(candidate) or candidate in seen:
            continue
        seen.add(candidate)
        kept.append(candidate)
        if len(kept) >= MAX_PROOF_URLS:
            break
    return kept
