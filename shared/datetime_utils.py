from __future__ import annotations

import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

__all__ = ["parse_to_utc", "to_iso_utc", "now_iso", "later_iso", "STRICT_Z_ISO_PATTERN"]

# Canonical wire form for every timestamp the pipeline writes: YYYY-MM-DDTHH:MM:SSZ
STRICT_Z_ISO_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")


def _normalize_candidate(s: str) -> str:
    """
    Smooth over the forms sensors and feeds actually send:
      - space between date and time -> 'T'
      - '+HHMM' -> '+HH:MM'
      - trailing 'Z'/'z' -> '+00:00' for fromisoformat
    """
    s = s.strip()
    s = re.sub(r"^(\d{4}-\d{2}-\d{2})\s+(\d{2}:\d{2})", r"\1T\2", s, count=1)
    s = re.sub(r"\s*([+-]\d{2})(\d{2})$", r"\1:\2", s)
    if s[-1:] in ("Z", "z"):
        s = s[:-1] + "+00:00"
    return s


def parse_to_utc(value: str | datetime) -> datetime:
    """
    Parse an ISO-8601 (or RFC-2822, as threat feeds use) timestamp into an
    aware UTC datetime. Naive values are taken as UTC.

    Raises ValueError("missing") or ValueError("unparseable").
    """
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value or "").strip()
        if not raw:
            raise ValueError("missing")
        try:
            dt = datetime.fromisoformat(_normalize_candidate(raw))
        except ValueError:
            try:
                dt = parsedate_to_datetime(raw)
            except (TypeError, ValueError):
                raise ValueError("unparseable")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso_utc(dt: datetime) -> str:
    """Strict ISO with trailing 'Z' and no fractions. Naive input is UTC."""
    return parse_to_utc(dt).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def now_iso() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def later_iso(a: str, b: str) -> str:
    """Return whichever of two canonical timestamps is later."""
    return a if parse_to_utc(a) >= parse_to_utc(b) else b
