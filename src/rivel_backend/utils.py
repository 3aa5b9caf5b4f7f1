"""
Utility functions for coercing loosely-typed form fields.

This module provides helper functions for:
- Parsing numeric form values with defaults and clamping
- Interpreting boolean-ish flags sent by the web client
- Choosing the output encoding for image endpoints
"""

from __future__ import annotations

import math
from typing import Any, NamedTuple, Optional

TRUTHY = {"1", "true", "yes"}
FALSY = {"0", "false", "no"}
FITS = ("contain", "cover", "fill")


class OutputFormat(NamedTuple):
    fmt: str
    mime: str
    ext: str


PNG = OutputFormat("png", "image/png", "png")
JPEG = OutputFormat("jpeg", "image/jpeg", "jpg")
WEBP = OutputFormat("webp", "image/webp", "webp")


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _clamp(number, lo, hi):
    if lo is not None and number < lo:
        return lo
    if hi is not None and number > hi:
        return hi
    return number


def safe_int(value: Any, default: Optional[int], lo: Optional[int] = None, hi: Optional[int] = None) -> Optional[int]:
    """
    Parse an integer form field, truncating fractions and clamping to a range.

    Args:
        value: Raw field value (string, number or None)
        default: Returned as-is when the value is missing or not numeric
        lo: Inclusive lower bound, or None
        hi: Inclusive upper bound, or None

    Returns:
        The clamped integer or the default

    Example:
        >>> safe_int("120.7", 85, 10, 95)
        95
        >>> safe_int("abc", 85, 10, 95)
        85
    """
    number = _to_number(value)
    if number is None:
        return default
    return _clamp(math.trunc(number), lo, hi)


def safe_float(value: Any, default: float, lo: Optional[float] = None, hi: Optional[float] = None) -> float:
    number = _to_number(value)
    if number is None:
        return default
    return _clamp(number, lo, hi)


def coerce_keep_aspect(value: Any, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    text = str(value).strip().lower()
    if text in TRUTHY:
        return True
    if text in FALSY:
        return False
    return default


def coerce_fit(value: Any, default: str = "contain", keep_aspect: bool = True) -> str:
    """Resolve the resize fit mode; stretching is forced when aspect is not kept."""
    if not keep_aspect:
        return "fill"
    text = str(value or default).strip().lower()
    return text if text in FITS else "contain"


def pick_output_format(out_format: Any, input_mime: Optional[str]) -> OutputFormat:
    """
    Choose the encoding for an image response.

    Args:
        out_format: keep | png | jpg | jpeg | webp (anything else means keep)
        input_mime: MIME type of the upload, used when keeping the format

    Returns:
        OutputFormat with Pillow format name, MIME type and file extension
    """
    requested = str(out_format or "keep").strip().lower()
    if requested == "png":
        return PNG
    if requested in ("jpg", "jpeg"):
        return JPEG
    if requested == "webp":
        return WEBP

    if input_mime == "image/png":
        return PNG
    if input_mime == "image/webp":
        return WEBP
    return JPEG
