"""Attribute bags as a tagged union over a fixed set of scalar kinds.

Every signal carries a mapping of string keys to one of:

- str
- bool
- int
- float
- tuple[str, ...]  (string arrays; lists are normalized to tuples)

Keeping the set closed keeps serialization and truncation exhaustive: the
wire encoder and the truncation processor each handle exactly these cases.
Values of any other kind are dropped from the bag (logged at debug level),
never raised to the caller.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, TypeAlias

logger = logging.getLogger(__name__)

AttributeValue: TypeAlias = str | bool | int | float | tuple[str, ...]
Attributes: TypeAlias = Mapping[str, AttributeValue]

EMPTY_ATTRIBUTES: Attributes = MappingProxyType({})


def normalize_value(value: Any) -> AttributeValue | None:
    """Coerce a value into the attribute union, or None if unsupported.

    bool is checked before int because bool is a subclass of int and must
    keep its own wire type.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        # NaN/Infinity are valid OTLP doubles but useless as attributes
        return value if math.isfinite(value) else None
    if isinstance(value, (list, tuple)):
        if all(isinstance(item, str) for item in value):
            return tuple(value)
        return None
    return None


def clean_attributes(attributes: Mapping[str, Any] | None) -> dict[str, AttributeValue]:
    """Validate an incoming attribute mapping.

    Args:
        attributes: Caller-supplied mapping (may be None)

    Returns:
        New dict with only valid keys and normalized values.
    """
    if not attributes:
        return {}
    result: dict[str, AttributeValue] = {}
    for key, value in attributes.items():
        if not isinstance(key, str) or key == "":
            logger.debug("Dropping attribute with invalid key %r", key)
            continue
        normalized = normalize_value(value)
        if normalized is None:
            logger.debug("Dropping attribute %s with unsupported value type %s", key, type(value).__name__)
            continue
        result[key] = normalized
    return result


def freeze_attributes(attributes: Mapping[str, AttributeValue] | None) -> Attributes:
    """Return a read-only view of an attribute mapping."""
    if not attributes:
        return EMPTY_ATTRIBUTES
    return MappingProxyType(dict(attributes))
