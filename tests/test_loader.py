"""Tests for configuration loading."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from infractl import loader
from infractl.loader import (
    ConfigLoadError,
    load_desired_state,
    parse_var_overrides,
    resolve_variables,
)
from infractl.models import Reference, ResourceId, SchemaError


def write(directory: Path, name: str, content: str) -> Path:
    path = directory / name
    path.write_text(textwrap.dedent(content))
    return path


NETWORK = """
    variables:
      environment:
        default: dev
      subnet_count:
        type: number
        default: 2

    resources:
      - kind: vpc
        name: main
        attributes:
          cidr_block: 10.0.0.0/16
          tags:
            Environment: {$var: environment}

      - kind: subnet
        name: public
        count: {$var: subnet_count}
        attributes:
          vpc_id: {$ref: vpc.main.id}
          cidr_block: {$format: "10.0.{index}.0/24"}
          tags:
            Name: {$format: "{environment}-public-{index}"}
            Position: {$index: 1}
"""


class TestLoadDesiredState:
    """Tests for load_desired_state."""

    def test_loads_resources(self, tmp_path: Path) -> None:
        """Test a directory loads into an immutable desired state."""
        write(tmp_path, "network.yaml", NETWORK)

        desired = load_desired_state(tmp_path)

        assert [r.address for r in desired] == [
            "subnet.public[0]",
            "subnet.public[1]",
            "vpc.main",
        ]
        assert desired.variables == {"environment": "dev", "subnet_count": 2}

    def test_count_expansion(self, tmp_path: Path) -> None:
        """Test counted resources expand with index substitution."""
        write(tmp_path, "network.yaml", NETWORK)

        desired = load_desired_state(tmp_path)

        second = desired.get(ResourceId("subnet", "public[1]"))
        assert second is not None
        assert second.attributes["cidr_block"] == "10.0.1.0/24"
        assert second.attributes["tags"] == {"Name": "dev-public-1", "Position": 2}
        assert second.attributes["vpc_id"] == Reference.parse("vpc.main.id")

    def test_count_zero(self, tmp_path: Path) -> None:
        """Test a count of zero declares no instances."""
        write(tmp_path, "network.yaml", NETWORK)

        desired = load_desired_state(tmp_path, overrides={"subnet_count": 0})

        assert [r.address for r in desired] == ["vpc.main"]

    def test_indexed_reference_and_splat(self, tmp_path: Path) -> None:
        """Test per-index references and [*] expansion in lists and depends_on."""
        write(tmp_path, "network.yaml", NETWORK)
        write(
            tmp_path,
            "routing.yaml",
            """
            resources:
              - kind: route_table_association
                name: public
                count: 2
                attributes:
                  subnet_id: {$ref: "subnet.public[{index}].id"}
                  route_table_id: {$ref: route_table.public.id}
              - kind: route_table
                name: public
                attributes:
                  vpc_id: {$ref: vpc.main.id}
              - kind: lb
                name: web
                depends_on: ["subnet.public[*]"]
                attributes:
                  name: web
                  subnets:
                    - {$ref: "subnet.public[*].id"}
            """,
        )

        desired = load_desired_state(tmp_path)

        association = desired.get(ResourceId("route_table_association", "public[1]"))
        assert association is not None
        assert association.attributes["subnet_id"] == Reference.parse("subnet.public[1].id")

        lb = desired.get(ResourceId("lb", "web"))
        assert lb is not None
        assert lb.attributes["subnets"] == [
            Reference.parse("subnet.public[0].id"),
            Reference.parse("subnet.public[1].id"),
        ]
        assert lb.depends_on == {
            ResourceId("subnet", "public[0]"),
            ResourceId("subnet", "public[1]"),
        }

    def test_splat_of_uncounted_resource(self, tmp_path: Path) -> None:
        """Test [*] on a resource without count is rejected."""
        write(
            tmp_path,
            "main.yaml",
            """
            resources:
              - kind: vpc
                name: main
                attributes: {cidr_block: 10.0.0.0/16}
              - kind: subnet
                name: a
                attributes:
                  vpc_id: {$ref: "vpc.main[*].id"}
            """,
        )
        with pytest.raises(ConfigLoadError, match="expands a resource without count"):
            load_desired_state(tmp_path)

    def test_files_are_merged(self, tmp_path: Path) -> None:
        """Test variables declared in one file are usable in another."""
        write(tmp_path, "a.yaml", "variables:\n  cidr:\n    default: 10.9.0.0/16\n")
        write(
            tmp_path,
            "b.yml",
            """
            resources:
              - kind: vpc
                name: main
                attributes:
                  cidr_block: {$var: cidr}
            """,
        )
        write(tmp_path, "notes.txt", "ignored")

        desired = load_desired_state(tmp_path)

        vpc = desired.get(ResourceId("vpc", "main"))
        assert vpc is not None
        assert vpc.attributes["cidr_block"] == "10.9.0.0/16"

    def test_duplicate_identity_across_files(self, tmp_path: Path) -> None:
        """Test the same identity declared twice is a SchemaError."""
        resource = "resources:\n  - {kind: vpc, name: main, attributes: {cidr_block: 10.0.0.0/16}}\n"
        write(tmp_path, "a.yaml", resource)
        write(tmp_path, "b.yaml", resource)

        with pytest.raises(SchemaError, match="Duplicate resource declaration: vpc.main"):
            load_desired_state(tmp_path)

    def test_no_config_files(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigLoadError, match="No configuration files"):
            load_desired_state(tmp_path)

    def test_empty_file_ignored(self, tmp_path: Path) -> None:
        """Test an empty YAML file contributes nothing."""
        write(tmp_path, "empty.yaml", "")
        assert len(load_desired_state(tmp_path)) == 0

    def test_file_size_limit(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test oversized files are rejected before parsing."""
        monkeypatch.setattr(loader, "MAX_CONFIG_FILE_SIZE_BYTES", 16)
        write(tmp_path, "network.yaml", NETWORK)

        with pytest.raises(ConfigLoadError, match="exceeds maximum size"):
            load_desired_state(tmp_path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        write(tmp_path, "broken.yaml", "resources: [unclosed\n")
        with pytest.raises(ConfigLoadError, match="Invalid YAML"):
            load_desired_state(tmp_path)

    def test_unknown_top_level_key(self, tmp_path: Path) -> None:
        write(tmp_path, "main.yaml", "outputs: {}\n")
        with pytest.raises(ConfigLoadError, match="Unknown top-level keys"):
            load_desired_state(tmp_path)

    def test_unknown_resource_key(self, tmp_path: Path) -> None:
        write(tmp_path, "main.yaml", "resources:\n  - {kind: vpc, name: main, provider: aws}\n")
        with pytest.raises(ConfigLoadError, match=r"unknown keys \['provider'\]"):
            load_desired_state(tmp_path)

    def test_marker_must_be_alone(self, tmp_path: Path) -> None:
        """Test a marker mixed with other keys is rejected."""
        write(
            tmp_path,
            "main.yaml",
            """
            resources:
              - kind: subnet
                name: a
                attributes:
                  vpc_id: {$ref: vpc.main.id, extra: 1}
            """,
        )
        with pytest.raises(ConfigLoadError, match="must be the only key"):
            load_desired_state(tmp_path)

    def test_index_outside_count(self, tmp_path: Path) -> None:
        write(
            tmp_path,
            "main.yaml",
            "resources:\n  - {kind: vpc, name: main, attributes: {x: {$index: 0}}}\n",
        )
        with pytest.raises(ConfigLoadError, match="outside a counted resource"):
            load_desired_state(tmp_path)

    def test_invalid_count(self, tmp_path: Path) -> None:
        write(tmp_path, "main.yaml", "resources:\n  - {kind: vpc, name: main, count: -1}\n")
        with pytest.raises(ConfigLoadError, match="count must be between 0"):
            load_desired_state(tmp_path)

    def test_invalid_identity(self, tmp_path: Path) -> None:
        """Test pydantic identity errors surface as ConfigLoadError."""
        write(tmp_path, "main.yaml", "resources:\n  - {kind: VPC, name: main}\n")
        with pytest.raises(ConfigLoadError, match="Validation failed for main.yaml"):
            load_desired_state(tmp_path)


class TestVariables:
    """Tests for variable precedence and validation."""

    DECLARATIONS = {
        "environment": {"default": "dev"},
        "replicas": {"type": "number"},
    }

    def test_precedence(self) -> None:
        """Test override beats values file beats default."""
        assert resolve_variables(self.DECLARATIONS, {"replicas": 1}) == {
            "environment": "dev",
            "replicas": 1,
        }
        assert resolve_variables(
            self.DECLARATIONS, {"environment": "staging", "replicas": 1}
        )["environment"] == "staging"
        assert resolve_variables(
            self.DECLARATIONS,
            {"environment": "staging", "replicas": 1},
            {"environment": "prod"},
        )["environment"] == "prod"

    def test_missing_value(self) -> None:
        """Test a variable without default or value is an error."""
        with pytest.raises(ConfigLoadError, match="variable 'replicas' has no value"):
            resolve_variables(self.DECLARATIONS)

    def test_type_mismatch(self) -> None:
        with pytest.raises(ConfigLoadError, match="must be of type number, got str"):
            resolve_variables(self.DECLARATIONS, {"replicas": "three"})

    def test_bool_is_not_a_number(self) -> None:
        with pytest.raises(ConfigLoadError, match="must be of type number, got bool"):
            resolve_variables(self.DECLARATIONS, overrides={"replicas": True})

    def test_undeclared_values(self) -> None:
        """Test values for undeclared variables are rejected."""
        with pytest.raises(ConfigLoadError) as exc_info:
            resolve_variables(self.DECLARATIONS, {"replicas": 1, "region": "eu"}, {"zone": "a"})
        assert "values file sets undeclared variable 'region'" in str(exc_info.value)
        assert "override sets undeclared variable 'zone'" in str(exc_info.value)

    def test_var_file_and_overrides_end_to_end(self, tmp_path: Path) -> None:
        """Test a values file and overrides feed resource attributes."""
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        write(config_dir, "network.yaml", NETWORK)
        var_file = write(tmp_path, "staging.yaml", "environment: staging\n")

        desired = load_desired_state(
            config_dir, var_file=var_file, overrides={"subnet_count": 1}
        )

        vpc = desired.get(ResourceId("vpc", "main"))
        assert vpc is not None
        assert vpc.attributes["tags"] == {"Environment": "staging"}
        assert len(desired) == 2

    def test_var_file_must_be_mapping(self, tmp_path: Path) -> None:
        var_file = write(tmp_path, "vars.yaml", "- a\n- b\n")
        with pytest.raises(ConfigLoadError, match="must contain a YAML mapping"):
            loader.load_var_file(var_file)


class TestParseVarOverrides:
    """Tests for parse_var_overrides."""

    def test_values_parsed_as_yaml(self) -> None:
        assert parse_var_overrides(["count=3", "enabled=true", "name=web", "empty="]) == {
            "count": 3,
            "enabled": True,
            "name": "web",
            "empty": "",
        }

    def test_value_may_contain_equals(self) -> None:
        assert parse_var_overrides(["query=a=b"]) == {"query": "a=b"}

    @pytest.mark.parametrize("item", ["novalue", "=value"])
    def test_invalid(self, item: str) -> None:
        with pytest.raises(ConfigLoadError, match="expected name=value"):
            parse_var_overrides([item])
