"""Reference checking and resolution.

References are typed values (`Reference(kind, name, attribute)`) created when
configuration is loaded. They are checked once, before planning:

- the target must be declared in the desired state
- the attribute must be declared on the target, computed by the target's
  kind (ids, ARNs, DNS names), or present in the target's applied state

Actual values are substituted later. At plan time a value may still be
unknown (the target will only be created during apply); such values are
represented by the `UNKNOWN` sentinel. At apply time every dependency has
already been applied, so resolution reads the state store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from .models import DesiredState, Reference, ResourceId, UnresolvedReferenceError
from .schemas import KIND_SCHEMAS
from .state import AppliedState

logger = logging.getLogger(__name__)


class _Unknown:
    """Placeholder for a value only known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unknown:
        return self


UNKNOWN = _Unknown()

Lookup = Callable[[Reference], Any]


def check_references(desired: DesiredState, applied: AppliedState | None = None) -> None:
    """Verify that every reference in the desired state can be resolved.

    Raises:
        UnresolvedReferenceError: Listing every dangling reference.
    """
    problems: list[str] = []

    for resource in desired:
        for ref in resource.references():
            target = desired.get(ref.target)
            if target is None:
                problems.append(f"{resource.address}: '{ref}' targets undeclared {ref.target}")
                continue

            schema = KIND_SCHEMAS.get(target.kind)
            if schema is not None and ref.attribute in schema.known_attributes():
                continue
            if ref.attribute in target.attributes:
                continue
            if applied is not None:
                record = applied.get(ref.target)
                if record is not None and record.lookup(ref.attribute)[0]:
                    continue
            problems.append(
                f"{resource.address}: '{ref}' names unknown attribute "
                f"'{ref.attribute}' of {target.kind}"
            )

    if problems:
        raise UnresolvedReferenceError(
            "Unresolved references:\n  - " + "\n  - ".join(problems)
        )

    logger.debug("All references resolved", extra={"resource_count": len(desired)})


def schema_default(kind: str, attribute: str) -> tuple[bool, Any]:
    """Default value a kind's schema assigns to an omitted attribute.

    Returns:
        Tuple of (has_default, value).
    """
    schema = KIND_SCHEMAS.get(kind)
    if schema is None or attribute not in schema.model_fields:
        return False, None
    info = schema.model_fields[attribute]
    if info.is_required():
        return False, None
    return True, info.get_default(call_default_factory=True)


def resolve_value(value: Any, lookup: Lookup) -> Any:
    """Recursively substitute References inside a value."""
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Mapping):
        return {key: resolve_value(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, lookup) for item in value]
    return value


def resolve_attributes(attributes: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    return {key: resolve_value(value, lookup) for key, value in attributes.items()}


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, Mapping):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(item) for item in value)
    return False


def state_lookup(applied: AppliedState) -> Lookup:
    """Lookup resolving references against applied state.

    Used at apply time, when every dependency has already been applied.

    Raises:
        UnresolvedReferenceError: If the target or attribute is missing.
    """

    def lookup(ref: Reference) -> Any:
        record = applied.get(ref.target)
        if record is None:
            raise UnresolvedReferenceError(f"'{ref}' targets {ref.target}, which is not applied")
        found, value = record.lookup(ref.attribute)
        if found:
            return value
        has_default, default = schema_default(ref.kind, ref.attribute)
        if has_default:
            return default
        raise UnresolvedReferenceError(
            f"'{ref}': attribute '{ref.attribute}' is not known for {ref.target}"
        )

    return lookup


def planning_lookup(
    applied: AppliedState,
    resolved: Mapping[ResourceId, Mapping[str, Any]],
    pending_creation: set[ResourceId],
) -> Lookup:
    """Lookup used while planning.

    Args:
        applied: Applied state snapshot.
        resolved: Already-resolved desired attributes of planned resources.
        pending_creation: Identities that will be (re)created during apply.
            Their computed attributes are not known yet.
    """

    def lookup(ref: Reference) -> Any:
        declared = resolved.get(ref.target, {})
        if ref.attribute in declared:
            return declared[ref.attribute]
        if ref.target in pending_creation:
            has_default, default = schema_default(ref.kind, ref.attribute)
            return default if has_default else UNKNOWN
        record = applied.get(ref.target)
        if record is not None:
            found, value = record.lookup(ref.attribute)
            if found:
                return value
        has_default, default = schema_default(ref.kind, ref.attribute)
        return default if has_default else UNKNOWN

    return lookup
