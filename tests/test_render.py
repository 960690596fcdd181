"""Tests for human-readable output."""

from __future__ import annotations

from infractl.dependency import build_graph
from infractl.executor import ApplyResult, OperationResult, OperationStatus
from infractl.models import DesiredState, Resource
from infractl.planner import ChangeSet, OperationType
from infractl.render import render_apply, render_graph, render_plan, render_state
from infractl.state import AppliedState

from scenarios import applied_state, desired_state, plan_for, record, ref, resource, vpc_network

VPC = resource("vpc", "main", cidr_block="10.0.0.0/16")


def subnet(cidr: str = "10.0.1.0/24") -> Resource:
    return resource("subnet", "public", vpc_id=ref("vpc.main.id"), cidr_block=cidr)


def converged() -> AppliedState:
    return applied_state(
        record("vpc", "main", cidr_block="10.0.0.0/16"),
        record(
            "subnet",
            "public",
            dependencies=["vpc.main"],
            vpc_id="vpc-main",
            cidr_block="10.0.1.0/24",
        ),
    )


def network(*resources: Resource) -> DesiredState:
    return desired_state(*resources)


class TestRenderPlan:
    """Tests for render_plan."""

    def test_empty(self) -> None:
        assert render_plan(ChangeSet()) == "No changes. Infrastructure matches the configuration."

    def test_converged_is_empty(self) -> None:
        assert plan_for(network(VPC, subnet()), converged()).is_empty

    def test_create(self) -> None:
        """Test creates list planned attributes with unknowns marked."""
        lines = render_plan(plan_for(vpc_network())).splitlines()

        assert lines[0] == "+ vpc.main will be created"
        assert '      cidr_block = "10.0.0.0/16"' in lines
        assert "+ subnet.public will be created" in lines
        assert "      vpc_id = (known after apply)" in lines
        assert lines[-1] == "Plan: 5 to add, 0 to change, 0 to destroy, 0 to replace."

    def test_update(self) -> None:
        """Test updates show before and after values with the reason."""
        tagged = resource("vpc", "main", cidr_block="10.0.0.0/16", tags={"Env": "prod"})
        output = render_plan(plan_for(network(tagged, subnet()), converged()))

        assert "~ vpc.main will be updated in-place" in output
        assert "    # tags changed" in output
        assert '      tags: null -> {"Env": "prod"}' in output
        assert output.endswith("Plan: 0 to add, 1 to change, 0 to destroy, 0 to replace.")

    def test_destroy(self) -> None:
        """Test destroys show the prior attributes and why."""
        output = render_plan(plan_for(network(VPC), converged()))

        assert "- subnet.public will be destroyed" in output
        assert "    # no longer declared" in output
        assert '      cidr_block = "10.0.1.0/24"' in output
        assert output.endswith("Plan: 0 to add, 0 to change, 1 to destroy, 0 to replace.")

    def test_replace_shown_once(self) -> None:
        """Test a replacement pair renders as a single -/+ block."""
        output = render_plan(plan_for(network(VPC, subnet("10.0.2.0/24")), converged()))

        assert output.count("subnet.public") == 1
        assert "-/+ subnet.public must be replaced" in output
        assert "    # cidr_block forces replacement" in output
        assert '      cidr_block: "10.0.1.0/24" -> "10.0.2.0/24" # forces replacement' in output
        assert output.endswith("Plan: 0 to add, 0 to change, 0 to destroy, 1 to replace.")


class TestRenderApply:
    """Tests for render_apply."""

    def test_halted_report(self) -> None:
        """Test every operation is listed with its outcome."""
        result = ApplyResult(
            results=[
                OperationResult(
                    key="create:vpc.main",
                    address="vpc.main",
                    action=OperationType.CREATE,
                    status=OperationStatus.SUCCEEDED,
                    attempts=2,
                ),
                OperationResult(
                    key="create:subnet.public",
                    address="subnet.public",
                    action=OperationType.CREATE,
                    status=OperationStatus.FAILED,
                    attempts=1,
                    error="InvalidParameterValue",
                ),
                OperationResult(
                    key="create:route.internet",
                    address="route.internet",
                    action=OperationType.CREATE,
                ),
            ],
            halted=True,
        )

        assert render_apply(result).splitlines() == [
            "  create   vpc.main: succeeded after 2 attempts",
            "  create   subnet.public: FAILED",
            "      InvalidParameterValue",
            "  create   route.internet: not attempted",
            "Apply halted: 1 succeeded, 1 failed, 1 not attempted.",
        ]

    def test_complete(self) -> None:
        result = ApplyResult(
            results=[
                OperationResult(
                    key="destroy:vpc.main",
                    address="vpc.main",
                    action=OperationType.DESTROY,
                    status=OperationStatus.SUCCEEDED,
                    attempts=1,
                )
            ]
        )
        assert render_apply(result).splitlines() == [
            "  destroy  vpc.main: succeeded",
            "Apply complete: 1 succeeded, 0 failed, 0 not attempted.",
        ]

    def test_cancelled(self) -> None:
        result = ApplyResult(cancelled=True)
        assert render_apply(result) == "Apply cancelled: 0 succeeded, 0 failed, 0 not attempted."


class TestRenderState:
    """Tests for render_state."""

    def test_empty(self) -> None:
        assert render_state(applied_state()) == "State is empty."

    def test_records(self) -> None:
        """Test records list attributes, computed outputs and dependencies."""
        state = applied_state(
            record(
                "subnet",
                "public",
                provider_id="subnet-1",
                dependencies=["vpc.main"],
                outputs={"cidr_block": "10.0.1.0/24", "arn": "arn:subnet-1"},
                cidr_block="10.0.1.0/24",
            )
        )
        lines = render_state(state).splitlines()

        assert lines[0].startswith("# serial 0, lineage ")
        assert lines[1:] == [
            "subnet.public (subnet-1)",
            '    cidr_block = "10.0.1.0/24"',
            '    arn = "arn:subnet-1" (computed)',
            "    depends on: vpc.main",
        ]


class TestRenderGraph:
    """Tests for render_graph."""

    def test_edges_and_order(self) -> None:
        assert render_graph(build_graph(vpc_network())).splitlines() == [
            "Edges:",
            "  internet_gateway.main -> vpc.main",
            "  route.internet -> internet_gateway.main",
            "  route.internet -> route_table.public",
            "  route_table.public -> vpc.main",
            "  subnet.public -> vpc.main",
            "Order:",
            "  1. vpc.main",
            "  2. internet_gateway.main",
            "  3. route_table.public",
            "  4. subnet.public",
            "  5. route.internet",
        ]

    def test_no_edges(self) -> None:
        graph = build_graph([resource("s3_bucket", "logs", bucket="logs")])
        assert render_graph(graph).splitlines() == [
            "Edges:",
            "  (none)",
            "Order:",
            "  1. s3_bucket.logs",
        ]


class TestSensitiveValues:
    """Tests for masking secret-bearing attributes."""

    DATABASE = {
        "identifier": "app",
        "engine": "postgres",
        "instance_class": "db.t3.micro",
        "allocated_storage": 20,
        "username": "app",
        "password": "hunter22",
    }

    def test_plan_masks_password(self) -> None:
        database = resource("db_instance", "app", **self.DATABASE)
        output = render_plan(plan_for(desired_state(database)))

        assert "      password = (sensitive)" in output
        assert '      username = "app"' in output
        assert "hunter22" not in output

    def test_update_masks_both_sides(self) -> None:
        """Test a changed secret shows neither the old nor the new value."""
        applied = applied_state(record("db_instance", "app", **self.DATABASE))
        changed = {**self.DATABASE, "password": "correct-horse"}

        output = render_plan(
            plan_for(desired_state(resource("db_instance", "app", **changed)), applied)
        )

        assert "      password: (sensitive) -> (sensitive)" in output
        assert "hunter22" not in output
        assert "correct-horse" not in output

    def test_state_masks_password(self) -> None:
        output = render_state(applied_state(record("db_instance", "app", **self.DATABASE)))

        assert "    password = (sensitive)" in output
        assert "hunter22" not in output
