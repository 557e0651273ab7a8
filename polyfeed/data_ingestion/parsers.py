"""
Tolerant normalizers for venue REST payloads.

The venue's APIs disagree on field names (``bids``/``buys``, ``price``/``p``)
and sometimes JSON-encode arrays inside strings. These helpers accept every
shape seen in practice and return plain Python values.
"""

import json
import math
from typing import Any, Iterable, List, Optional, Tuple


def as_number(value: Any) -> Optional[float]:
    """Convert numbers and numeric strings to float; anything else to None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def first_present(record: dict, *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def normalize_levels(levels: Any) -> List[Tuple[float, float]]:
    """
    Normalize ``[[price, size], ...]`` or ``[{"price":..,"size":..}, ...]``.

    Levels with a missing, zero price or zero size are dropped.
    """
    if not isinstance(levels, list):
        return []

    result = []
    for level in levels:
        if isinstance(level, (list, tuple)) and len(level) >= 2:
            price, size = as_number(level[0]), as_number(level[1])
        elif isinstance(level, dict):
            price = as_number(first_present(level, 'price', 'p', 'rate'))
            size = as_number(first_present(level, 'size', 's', 'amount', 'quantity'))
        else:
            continue
        if price is None or size is None or price == 0 or size <= 0:
            continue
        result.append((price, size))
    return result


def extract_history(payload: Any) -> List[Tuple[float, float]]:
    """``{"history": [{"t":..., "p":...}]}`` (or ``prices``/``data``) to [(t, p)]"""
    if isinstance(payload, list):
        raw = payload
    elif isinstance(payload, dict):
        raw = first_present(payload, 'history', 'prices', 'data') or []
    else:
        return []

    points = []
    for point in raw:
        if not isinstance(point, dict):
            continue
        t = as_number(first_present(point, 't', 'time', 'timestamp'))
        p = as_number(first_present(point, 'p', 'price', 'value', 'close'))
        if t is not None and p is not None:
            points.append((t, p))
    return points


def extract_midpoint(payload: Any) -> Optional[float]:
    if not isinstance(payload, dict):
        return as_number(payload)
    return as_number(first_present(payload, 'mid', 'midpoint', 'midpoint_price', 'price', 'value'))


def parse_maybe_json_array(value: Any) -> Optional[list]:
    """Gamma returns some arrays as JSON strings (``'["Yes","No"]'``)"""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text.startswith('['):
            return None
        try:
            parsed = json.loads(text)
        except ValueError:
            return None
        return parsed if isinstance(parsed, list) else None
    return None


def as_str_list(values: Iterable[Any]) -> List[str]:
    return [str(value) for value in values if value is not None and str(value)]
