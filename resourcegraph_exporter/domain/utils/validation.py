"""
Validation and coercion utilities for result cells and metric names.

Resource Graph returns loosely typed cells (strings, numbers, booleans,
nulls, nested objects). These helpers turn them into the two shapes the
exposition format accepts: label strings and float sample values, and keep
metric and label names inside the Prometheus character set.
"""

import json
import math
import re
from typing import Any, Optional

METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_INVALID_METRIC_CHARS = re.compile(r"[^a-zA-Z0-9_:]")


def is_valid_metric_name(name: str) -> bool:
    """
    Check whether ``name`` is a valid Prometheus metric name.

    Examples
    --------
    >>> is_valid_metric_name("azure_vm_count")
    True
    >>> is_valid_metric_name("1st")
    False
    """
    return bool(METRIC_NAME_RE.match(name))


def is_valid_label_name(name: str) -> bool:
    """
    Check whether ``name`` may be used as a user-defined label name.

    Names starting with ``__`` are reserved by Prometheus.

    Examples
    --------
    >>> is_valid_label_name("location")
    True
    >>> is_valid_label_name("__name__")
    False
    """
    return bool(LABEL_NAME_RE.match(name)) and not name.startswith("__")


def sanitize_metric_name(name: str) -> Optional[str]:
    """
    Turn an arbitrary string into a valid metric name, or None if impossible.

    Invalid characters become ``_``, runs of ``_`` are collapsed and a name
    starting with a digit is prefixed with ``_``.

    Examples
    --------
    >>> sanitize_metric_name("azure_microsoft.compute/virtualmachines")
    'azure_microsoft_compute_virtualmachines'
    >>> sanitize_metric_name("") is None
    True
    """
    cleaned = _INVALID_METRIC_CHARS.sub("_", name.strip())
    cleaned = re.sub(r"_{2,}", "_", cleaned)
    if not cleaned.strip("_"):
        return None
    if cleaned[0].isdigit():
        cleaned = "_" + cleaned
    return cleaned


def format_label_value(value: Any) -> str:
    """
    Render a result cell as a label value.

    Booleans become ``"true"``/``"false"``, integral floats are printed
    without a fractional part, nested objects are rendered as compact JSON
    and null becomes the empty string.

    Examples
    --------
    >>> format_label_value(True)
    'true'
    >>> format_label_value(3.0)
    '3'
    >>> format_label_value(None)
    ''
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return str(value)


def coerce_value(value: Any) -> Optional[float]:
    """
    Coerce a result cell into a sample value.

    Returns None when the cell is null or not numeric. Booleans map to
    ``1.0``/``0.0``; numeric strings (including ``"NaN"`` and ``"+Inf"``)
    are parsed.

    Examples
    --------
    >>> coerce_value(5)
    5.0
    >>> coerce_value("2.5")
    2.5
    >>> coerce_value(False)
    0.0
    >>> coerce_value("westeurope") is None
    True
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lower() == "true":
            return 1.0
        if text.lower() == "false":
            return 0.0
        try:
            return float(text)
        except ValueError:
            return None
    return None
