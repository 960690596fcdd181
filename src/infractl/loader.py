"""Configuration loading with validation.

A configuration directory holds `*.yaml` / `*.yml` files. Each file may
declare variables and resources:

    variables:
      environment:
        default: dev
        description: Deployment environment
      web_count:
        type: number
        default: 2

    resources:
      - kind: subnet
        name: public
        count: {"$var": web_count}
        attributes:
          vpc_id: {"$ref": "vpc.main.id"}
          cidr_block: {"$format": "10.0.{index}.0/24"}
          tags:
            Name: {"$format": "{environment}-public-{index}"}

Value markers, each a single-key mapping:
- {"$var": name}: variable value
- {"$ref": "kind.name.attribute"}: typed Reference. The expression may use
  `{index}` and variables, and `name[*]` expands to a list of references to
  every instance of a counted resource.
- {"$index": offset}: count index plus offset
- {"$format": template}: `str.format` over variables and `index`

Variable precedence: `--var` overrides, then the values file, then the
declared default. A variable left without a value is an error.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES, MAX_CONFIG_FILES, MAX_COUNT_PER_RESOURCE
from .models import DesiredState, InfractlError, Reference, Resource

logger = logging.getLogger(__name__)


class ConfigLoadError(InfractlError):
    """Raised when configuration loading or validation fails."""

    pass


CONFIG_FILE_SUFFIXES = (".yaml", ".yml")
TOP_LEVEL_KEYS = frozenset({"variables", "resources"})
RESOURCE_KEYS = frozenset({"kind", "name", "count", "depends_on", "attributes"})
VARIABLE_KEYS = frozenset({"default", "description", "type"})
MARKERS = frozenset({"$var", "$ref", "$index", "$format"})

# Declared variable types and the Python types they accept
VARIABLE_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "bool": (bool,),
    "list": (list,),
    "map": (dict,),
}

_MISSING = object()


# =============================================================================
# File Reading
# =============================================================================


def _read_yaml(path: Path) -> Any:
    """Read a YAML file with a size limit."""
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigLoadError(f"Failed to stat config file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigLoadError(
            f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigLoadError(f"Failed to read config file {path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML in {path}: {e}") from e


def config_files(config_dir: Path) -> list[Path]:
    """List configuration files in a directory, sorted by name.

    Raises:
        ConfigLoadError: If the directory is missing, empty or too large.
    """
    if not config_dir.is_dir():
        raise ConfigLoadError(f"Config directory not found: {config_dir}")

    files = sorted(
        path
        for path in config_dir.iterdir()
        if path.is_file() and path.suffix in CONFIG_FILE_SUFFIXES
    )
    if not files:
        raise ConfigLoadError(f"No configuration files (*.yaml, *.yml) in {config_dir}")
    if len(files) > MAX_CONFIG_FILES:
        raise ConfigLoadError(
            f"Too many configuration files in {config_dir}: "
            f"{len(files)} (maximum {MAX_CONFIG_FILES})"
        )
    return files


def load_var_file(path: Path) -> dict[str, Any]:
    """Load an environment values file (a YAML mapping of name to value).

    Raises:
        ConfigLoadError: If the file cannot be read or is not a mapping.
    """
    data = _read_yaml(path)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Variables file must contain a YAML mapping: {path}")
    return data


def parse_var_overrides(items: Iterable[str]) -> dict[str, Any]:
    """Parse `name=value` command line overrides.

    Values are parsed as YAML scalars, so `count=3` yields an int and
    `enabled=true` a bool.

    Raises:
        ConfigLoadError: If an item is not of the form name=value.
    """
    overrides: dict[str, Any] = {}
    for item in items:
        name, sep, raw = item.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ConfigLoadError(f"Invalid variable override '{item}', expected name=value")
        try:
            overrides[name] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            overrides[name] = raw
    return overrides


# =============================================================================
# Variables
# =============================================================================


def _collect_declarations(
    documents: list[tuple[Path, dict[str, Any]]],
) -> dict[str, dict[str, Any]]:
    declarations: dict[str, dict[str, Any]] = {}
    for path, document in documents:
        variables = document.get("variables") or {}
        if not isinstance(variables, dict):
            raise ConfigLoadError(f"'variables' must be a mapping in {path}")

        for name, declaration in variables.items():
            if name in declarations:
                raise ConfigLoadError(f"Variable '{name}' declared more than once ({path})")
            declaration = declaration if declaration is not None else {}
            if not isinstance(declaration, dict):
                raise ConfigLoadError(f"Variable '{name}' must be a mapping in {path}")
            unknown = set(declaration) - VARIABLE_KEYS
            if unknown:
                raise ConfigLoadError(
                    f"Variable '{name}' has unknown keys {sorted(unknown)} in {path}"
                )
            if "type" in declaration and declaration["type"] not in VARIABLE_TYPES:
                raise ConfigLoadError(
                    f"Variable '{name}' has invalid type '{declaration['type']}', "
                    f"expected one of {sorted(VARIABLE_TYPES)}"
                )
            declarations[name] = declaration
    return declarations


def resolve_variables(
    declarations: Mapping[str, Mapping[str, Any]],
    var_values: Mapping[str, Any] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Assign a value to every declared variable.

    Raises:
        ConfigLoadError: On values for undeclared variables, missing values
            or type mismatches.
    """
    var_values = var_values or {}
    overrides = overrides or {}
    errors: list[str] = []

    for source, values in (("values file", var_values), ("override", overrides)):
        for name in sorted(set(values) - set(declarations)):
            errors.append(f"{source} sets undeclared variable '{name}'")

    resolved: dict[str, Any] = {}
    for name, declaration in sorted(declarations.items()):
        value = overrides.get(name, var_values.get(name, declaration.get("default", _MISSING)))
        if value is _MISSING:
            errors.append(f"variable '{name}' has no value")
            continue

        expected = declaration.get("type")
        if expected is not None:
            accepted = VARIABLE_TYPES[expected]
            # bool is an int subclass, keep it out of number
            if not isinstance(value, accepted) or (
                expected == "number" and isinstance(value, bool)
            ):
                errors.append(
                    f"variable '{name}' must be of type {expected}, "
                    f"got {type(value).__name__}"
                )
                continue
        resolved[name] = value

    if errors:
        raise ConfigLoadError("Variable resolution failed:\n  - " + "\n  - ".join(errors))
    return resolved


# =============================================================================
# Value Rendering
# =============================================================================


class _Renderer:
    """Substitutes value markers for one resource instance."""

    def __init__(
        self,
        variables: Mapping[str, Any],
        counts: Mapping[tuple[str, str], int | None],
        index: int | None,
        where: str,
    ) -> None:
        self._variables = variables
        self._counts = counts
        self._index = index
        self._where = where

    def render(self, value: Any) -> Any:
        if isinstance(value, dict):
            markers = MARKERS.intersection(value)
            if markers:
                if len(value) != 1:
                    raise self._error(f"marker {sorted(markers)} must be the only key")
                marker, argument = next(iter(value.items()))
                return self._render_marker(marker, argument)
            return {key: self.render(item) for key, item in value.items()}
        if isinstance(value, list):
            rendered: list[Any] = []
            for item in value:
                result = self.render(item)
                # A splat reference inside a list flattens into it
                if _is_splat(item) and isinstance(result, list):
                    rendered.extend(result)
                else:
                    rendered.append(result)
            return rendered
        return value

    def _render_marker(self, marker: str, argument: Any) -> Any:
        match marker:
            case "$var":
                if argument not in self._variables:
                    raise self._error(f"undeclared variable '{argument}'")
                return self._variables[argument]
            case "$index":
                if self._index is None:
                    raise self._error("'$index' used outside a counted resource")
                if not isinstance(argument, int) or isinstance(argument, bool):
                    raise self._error("'$index' offset must be an integer")
                return self._index + argument
            case "$format":
                if not isinstance(argument, str):
                    raise self._error("'$format' template must be a string")
                return self.format(argument)
            case "$ref":
                if not isinstance(argument, str):
                    raise self._error("'$ref' must be a 'kind.name.attribute' string")
                return self._reference(self.format(argument))
            case _:
                raise self._error(f"unknown marker '{marker}'")

    def format(self, template: str) -> str:
        context = dict(self._variables)
        if self._index is not None:
            context["index"] = self._index
        try:
            return template.format(**context)
        except KeyError as e:
            raise self._error(f"unknown placeholder {e} in '{template}'") from e
        except (IndexError, ValueError) as e:
            raise self._error(f"invalid template '{template}': {e}") from e

    def _reference(self, expression: str) -> Reference | list[Reference]:
        if "[*]" not in expression:
            try:
                return Reference.parse(expression)
            except InfractlError as e:
                raise self._error(str(e)) from e

        kind, _, rest = expression.partition(".")
        name, _, attribute = rest.partition("[*].")
        count = self._counts.get((kind, name))
        if count is None:
            raise self._error(f"'{expression}' expands a resource without count")
        return [Reference.parse(f"{kind}.{name}[{i}].{attribute}") for i in range(count)]

    def _error(self, message: str) -> ConfigLoadError:
        return ConfigLoadError(f"{self._where}: {message}")


def _is_splat(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and set(value) == {"$ref"}
        and isinstance(value["$ref"], str)
        and "[*]" in value["$ref"]
    )


# =============================================================================
# Resources
# =============================================================================


def _resolve_count(raw: Any, variables: Mapping[str, Any], where: str) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, dict) and set(raw) == {"$var"}:
        raw = variables.get(raw["$var"], raw)
    if not isinstance(raw, int) or isinstance(raw, bool):
        raise ConfigLoadError(f"{where}: count must be an integer, got {raw!r}")
    if not 0 <= raw <= MAX_COUNT_PER_RESOURCE:
        raise ConfigLoadError(
            f"{where}: count must be between 0 and {MAX_COUNT_PER_RESOURCE}, got {raw}"
        )
    return raw


def _collect_entries(
    documents: list[tuple[Path, dict[str, Any]]],
) -> list[tuple[str, dict[str, Any]]]:
    entries: list[tuple[str, dict[str, Any]]] = []
    for path, document in documents:
        resources = document.get("resources") or []
        if not isinstance(resources, list):
            raise ConfigLoadError(f"'resources' must be a list in {path}")

        for position, entry in enumerate(resources):
            where = f"{path.name}: resources[{position}]"
            if not isinstance(entry, dict):
                raise ConfigLoadError(f"{where}: resource must be a mapping")
            unknown = set(entry) - RESOURCE_KEYS
            if unknown:
                raise ConfigLoadError(f"{where}: unknown keys {sorted(unknown)}")
            for key in ("kind", "name"):
                if not isinstance(entry.get(key), str):
                    raise ConfigLoadError(f"{where}: '{key}' is required and must be a string")
            entries.append((f"{path.name}: {entry['kind']}.{entry['name']}", entry))
    return entries


def _expand(
    entry: dict[str, Any],
    where: str,
    count: int | None,
    variables: Mapping[str, Any],
    counts: Mapping[tuple[str, str], int | None],
) -> list[Resource]:
    attributes = entry.get("attributes") or {}
    if not isinstance(attributes, dict):
        raise ConfigLoadError(f"{where}: 'attributes' must be a mapping")
    depends_on = entry.get("depends_on") or []
    if not isinstance(depends_on, list):
        raise ConfigLoadError(f"{where}: 'depends_on' must be a list")

    indexes: list[int | None] = [None] if count is None else list(range(count))
    resources: list[Resource] = []
    for index in indexes:
        renderer = _Renderer(variables, counts, index, where)
        name = entry["name"] if index is None else f"{entry['name']}[{index}]"
        deps: list[str] = []
        for item in depends_on:
            if not isinstance(item, str):
                raise ConfigLoadError(f"{where}: depends_on entries must be 'kind.name' strings")
            deps.extend(_expand_address(renderer.format(item), counts, where))
        rendered = renderer.render(attributes)

        try:
            resources.append(
                Resource(kind=entry["kind"], name=name, attributes=rendered, depends_on=deps)
            )
        except ValidationError as e:
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"  - {loc}: {error['msg']}")
            raise ConfigLoadError(
                f"Validation failed for {where}:\n" + "\n".join(errors)
            ) from e
        except InfractlError as e:
            raise ConfigLoadError(f"{where}: {e}") from e
    return resources


def _expand_address(
    address: str, counts: Mapping[tuple[str, str], int | None], where: str
) -> list[str]:
    if not address.endswith("[*]"):
        return [address]
    kind, _, name = address[:-3].partition(".")
    count = counts.get((kind, name))
    if count is None:
        raise ConfigLoadError(f"{where}: '{address}' expands a resource without count")
    return [f"{kind}.{name}[{i}]" for i in range(count)]


# =============================================================================
# Public API
# =============================================================================


def load_desired_state(
    config_dir: Path,
    *,
    var_file: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> DesiredState:
    """Load the desired state from a configuration directory.

    Args:
        config_dir: Directory containing YAML configuration files.
        var_file: Optional environment values file.
        overrides: Variable overrides (highest precedence).

    Returns:
        The immutable DesiredState with `count` already expanded.

    Raises:
        ConfigLoadError: If files, variables or resource entries are invalid.
        SchemaError: If two resources share the same identity.
    """
    documents: list[tuple[Path, dict[str, Any]]] = []
    for path in config_files(config_dir):
        data = _read_yaml(path)
        if data is None:
            continue
        if not isinstance(data, dict):
            raise ConfigLoadError(f"Config file must contain a YAML mapping: {path}")
        unknown = set(data) - TOP_LEVEL_KEYS
        if unknown:
            raise ConfigLoadError(f"Unknown top-level keys {sorted(unknown)} in {path}")
        documents.append((path, data))

    declarations = _collect_declarations(documents)
    var_values = load_var_file(var_file) if var_file is not None else {}
    variables = resolve_variables(declarations, var_values, overrides)

    entries = _collect_entries(documents)
    counts: dict[tuple[str, str], int | None] = {}
    for where, entry in entries:
        counts[(entry["kind"], entry["name"])] = _resolve_count(
            entry.get("count"), variables, where
        )

    resources: list[Resource] = []
    for where, entry in entries:
        count = counts[(entry["kind"], entry["name"])]
        resources.extend(_expand(entry, where, count, variables, counts))

    desired = DesiredState.from_resources(resources, variables)
    logger.info(
        "Loaded %d resources from %d files in %s",
        len(desired),
        len(documents),
        config_dir,
    )
    return desired
