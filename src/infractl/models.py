"""Core resource model.

These models provide:
1. Stable resource identity (kind, name)
2. Typed references between resources instead of string interpolation
3. The immutable desired state consumed by the graph builder and planner
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Identity patterns. Names expanded from `count` carry an index suffix.
VALID_KIND_PATTERN = r"^[a-z][a-z0-9_]*$"
VALID_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_\-]*(\[\d+\])?$"
REFERENCE_PATTERN = re.compile(
    r"^(?P<kind>[a-z][a-z0-9_]*)\.(?P<name>[A-Za-z_][A-Za-z0-9_\-]*(\[\d+\])?)"
    r"\.(?P<attribute>[A-Za-z_][A-Za-z0-9_]*)$"
)


class InfractlError(Exception):
    """Base class for all reconciliation errors."""

    pass


class SchemaError(InfractlError):
    """Raised when a resource declaration violates its kind's schema."""

    pass


class UnresolvedReferenceError(InfractlError):
    """Raised when a reference points at an undeclared resource or unknown attribute."""

    pass


@dataclass(frozen=True, order=True)
class ResourceId:
    """Stable identity of a resource: (kind, name)."""

    kind: str
    name: str

    @property
    def address(self) -> str:
        """Dotted address, e.g. 'subnet.public[0]'."""
        return f"{self.kind}.{self.name}"

    @classmethod
    def parse(cls, address: str) -> ResourceId:
        """Parse a 'kind.name' address.

        Raises:
            SchemaError: If the address is malformed.
        """
        kind, sep, name = address.partition(".")
        if not sep or not re.match(VALID_KIND_PATTERN, kind) or not re.match(
            VALID_NAME_PATTERN, name
        ):
            raise SchemaError(f"Invalid resource address '{address}', expected 'kind.name'")
        return cls(kind=kind, name=name)

    def __str__(self) -> str:
        return self.address


class Reference(BaseModel):
    """A typed pointer to another resource's attribute.

    Declared in configuration as ``{"$ref": "kind.name.attribute"}``.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    attribute: str

    @property
    def target(self) -> ResourceId:
        """Identity of the referenced resource."""
        return ResourceId(kind=self.kind, name=self.name)

    @classmethod
    def parse(cls, expression: str) -> Reference:
        """Parse a 'kind.name.attribute' reference expression.

        Raises:
            SchemaError: If the expression is malformed.
        """
        match = REFERENCE_PATTERN.match(expression)
        if match is None:
            raise SchemaError(
                f"Invalid reference '{expression}', expected 'kind.name.attribute'"
            )
        return cls(
            kind=match.group("kind"),
            name=match.group("name"),
            attribute=match.group("attribute"),
        )

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}.{self.attribute}"


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested anywhere inside an attribute value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


class Resource(BaseModel):
    """A single declared infrastructure object.

    Resources are pure data describing desired state. Providers know how
    to create, update and destroy them.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str = Field(pattern=VALID_KIND_PATTERN)
    name: str = Field(pattern=VALID_NAME_PATTERN)
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Implicit ordering requirements with no attribute reference,
    # e.g. an elastic IP that must wait for the internet gateway.
    depends_on: frozenset[ResourceId] = Field(default_factory=frozenset)

    @field_validator("depends_on", mode="before")
    @classmethod
    def parse_depends_on(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple, set, frozenset)):
            return frozenset(
                ResourceId.parse(item) if isinstance(item, str) else item for item in v
            )
        return v

    @property
    def id(self) -> ResourceId:
        """Identity of this resource."""
        return ResourceId(kind=self.kind, name=self.name)

    @property
    def address(self) -> str:
        return self.id.address

    def references(self) -> list[Reference]:
        """All references found in this resource's attributes."""
        return list(iter_references(self.attributes))

    def dependencies(self) -> set[ResourceId]:
        """Identities this resource must be ordered after."""
        deps = {ref.target for ref in self.references()}
        deps.update(self.depends_on)
        return deps


@dataclass(frozen=True)
class DesiredState:
    """Immutable snapshot of every resource declared for one run."""

    resources: Mapping[ResourceId, Resource] = field(
        default_factory=lambda: MappingProxyType({})
    )
    variables: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_resources(
        cls,
        resources: Iterable[Resource],
        variables: Mapping[str, Any] | None = None,
    ) -> DesiredState:
        """Build a desired state, rejecting duplicate identities.

        Raises:
            SchemaError: If two resources share the same (kind, name).
        """
        by_id: dict[ResourceId, Resource] = {}
        for resource in resources:
            if resource.id in by_id:
                raise SchemaError(f"Duplicate resource declaration: {resource.address}")
            by_id[resource.id] = resource
        return cls(
            resources=MappingProxyType(dict(sorted(by_id.items()))),
            variables=MappingProxyType(dict(variables or {})),
        )

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.resources

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources.values())

    def __len__(self) -> int:
        return len(self.resources)

    def get(self, resource_id: ResourceId) -> Resource | None:
        return self.resources.get(resource_id)

    def ids(self) -> list[ResourceId]:
        return sorted(self.resources)
