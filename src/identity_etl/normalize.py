"""Normalization functions for CSV identity ingestion.

All functions accept str | None and return the appropriate type or None.
Unparseable values become None rather than raising.
"""

from __future__ import annotations

import re
from datetime import datetime

# Tried in order before falling back to ISO-8601 parsing.
DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%d/%m/%Y",
    "%d/%m/%Y %H:%M:%S",
)

TRUE_LITERALS = frozenset({"true", "1", "yes", "y"})
FALSE_LITERALS = frozenset({"false", "0", "no", "n"})

_ROLE_SPLIT_RE = re.compile(r"[,;|]")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_key  (Identity-style NormalizedName / NormalizedEmail)
# ---------------------------------------------------------------------------

def normalize_key(value: str | None) -> str | None:
    """Trim and uppercase.  Mirrors the UPPER-invariant Identity normalizer."""
    v = trim(value)
    if v is None:
        return None
    return v.upper()


# ---------------------------------------------------------------------------
# Rule 3: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool | None:
    """Accept true/false, 1/0, yes/no, y/n (case-insensitive)."""
    v = trim(value)
    if v is None:
        return None
    v = v.lower()
    if v in TRUE_LITERALS:
        return True
    if v in FALSE_LITERALS:
        return False
    return None


# ---------------------------------------------------------------------------
# Rule 4: parse_datetime
# ---------------------------------------------------------------------------

def parse_datetime(value: str | None) -> datetime | None:
    """Try DATETIME_FORMATS in order, then ISO-8601; None when nothing parses.

    Ambiguous day/month values resolve month-first because the US formats
    are tried before the day-first ones.
    """
    v = trim(value)
    if v is None:
        return None
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(v, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(v)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 5: parse_small_int
# ---------------------------------------------------------------------------

def parse_small_int(value: str | None) -> int | None:
    """Parse an unsigned byte (0-255); anything else → None."""
    v = trim(value)
    if v is None:
        return None
    try:
        n = int(v)
    except ValueError:
        return None
    return n if 0 <= n <= 255 else None


# ---------------------------------------------------------------------------
# Helper: split_role_names
# ---------------------------------------------------------------------------

def split_role_names(value: str | None) -> list[str]:
    """Split a ',' ';' or '|' delimited role list; blanks are dropped.

    "Admin;Finance | Ops" → ["Admin", "Finance", "Ops"]
    """
    v = trim(value)
    if v is None:
        return []
    names: list[str] = []
    for token in _ROLE_SPLIT_RE.split(v):
        t = trim(token)
        if t:
            names.append(t)
    return names
