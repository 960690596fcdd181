"""Attribute diffing with semantic normalization.

Compares the attributes last applied for a resource with its desired
attributes, ignoring differences that are syntactically different but
semantically equivalent:

1. Empty list, empty mapping, None and a missing key are equivalent
2. Unordered list attributes (security group ids, subnet ids) are compared
   as multisets
3. Computed attributes (ids, ARNs) are never compared

Each detected change records whether it forces replacement of the resource.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .references import UNKNOWN, contains_unknown, schema_default
from .schemas import KIND_SCHEMAS


@dataclass(frozen=True)
class AttributeChange:
    """A single attribute difference."""

    attribute: str
    before: Any
    after: Any
    force_new: bool = False

    @property
    def after_unknown(self) -> bool:
        return contains_unknown(self.after)


def _is_empty(value: Any) -> bool:
    return value is None or value == [] or value == {} or value == ()


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def normalize(value: Any, unordered: bool = False) -> Any:
    """Normalize a value for semantic comparison."""
    if _is_empty(value):
        return None
    if isinstance(value, Mapping):
        normalized = {key: normalize(item) for key, item in value.items()}
        return {key: item for key, item in normalized.items() if item is not None} or None
    if isinstance(value, (list, tuple)):
        items = [normalize(item) for item in value]
        if unordered:
            items.sort(key=_sort_key)
        return items
    return value


def values_equal(before: Any, after: Any, unordered: bool = False) -> bool:
    if contains_unknown(after):
        return False
    return normalize(before, unordered) == normalize(after, unordered)


def diff_attributes(
    kind: str, prior: Mapping[str, Any], desired: Mapping[str, Any]
) -> list[AttributeChange]:
    """Compute attribute changes between applied and desired attributes.

    Args:
        kind: Resource kind, selects the equality rules.
        prior: Resolved attributes last applied.
        desired: Resolved desired attributes (may contain UNKNOWN).

    Returns:
        Changes sorted by attribute name.
    """
    schema = KIND_SCHEMAS.get(kind)
    computed = schema.computed if schema else frozenset()
    force_new = schema.force_new if schema else frozenset()
    unordered = schema.unordered if schema else frozenset()

    changes: list[AttributeChange] = []
    for attribute in sorted(set(prior) | set(desired)):
        if attribute in computed:
            continue

        before = prior.get(attribute)
        if attribute in desired:
            after = desired[attribute]
        else:
            # Attribute dropped from configuration: it reverts to the default
            _, after = schema_default(kind, attribute)

        if values_equal(before, after, unordered=attribute in unordered):
            continue

        changes.append(
            AttributeChange(
                attribute=attribute,
                before=before,
                after=after,
                force_new=attribute in force_new,
            )
        )
    return changes


def requires_replacement(changes: list[AttributeChange]) -> bool:
    return any(change.force_new for change in changes)


def render_value(value: Any) -> str:
    """Human-readable rendering of an attribute value."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if contains_unknown(value):
        return json.dumps(value, default=repr, sort_keys=True)
    if isinstance(value, str):
        return json.dumps(value)
    return json.dumps(value, sort_keys=True, default=str)
