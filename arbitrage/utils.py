"""Shared utility functions used across arbitrage modules."""
from __future__ import annotations

import json
import re
from typing import Any

_MISSING = object()

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def slugify(name: str) -> str:
    """URL-safe slug: lowercase, runs of non-alphanumerics become one hyphen."""
    return _SLUG_RE.sub("-", name.lower()).strip("-")
