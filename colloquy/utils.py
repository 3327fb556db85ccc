"""Shared utility functions for Colloquy."""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from typing import Any

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def loads_or_default(raw: str | None, default: Any, expect: type | None = None) -> Any:
    """Decode a JSON text column, falling back to ``default``.

    Rows written by older versions (or by hand) may hold anything, so
    undecodable text and values of the wrong shape never raise.
    """
    if raw is None or raw == "":
        return default
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Undecodable JSON column, using default: %.80r", raw)
        return default
    if expect is not None and not isinstance(value, expect):
        logger.warning("JSON column has type %s, expected %s", type(value).__name__, expect.__name__)
        return default
    return value


def slugify(value: str) -> str:
    """Lowercase ASCII slug: accents folded, runs of other characters become '-'.

    Returns an empty string when nothing slug-worthy remains.
    """
    folded = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return _NON_ALNUM.sub("-", folded.lower()).strip("-")
