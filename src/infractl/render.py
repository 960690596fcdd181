"""Human-readable output for plans, apply reports and state.

Plan symbols:
    +    create
    ~    update in place
    -    destroy
    -/+  destroy and then create replacement
"""

from __future__ import annotations

from typing import Any

from .dependency import DependencyGraph
from .diff import render_value
from .executor import ApplyResult, OperationStatus
from .planner import ChangeSet, Operation, OperationType
from .schemas import sensitive_attributes
from .state import AppliedState

SYMBOLS = {
    OperationType.CREATE: "+",
    OperationType.UPDATE: "~",
    OperationType.DESTROY: "-",
}
REPLACE_SYMBOL = "-/+"
SENSITIVE = "(sensitive)"

STATUS_LABELS = {
    OperationStatus.SUCCEEDED: "succeeded",
    OperationStatus.FAILED: "FAILED",
    OperationStatus.PENDING: "not attempted",
}


def _shown(value: Any, attribute: str, sensitive: frozenset[str]) -> str:
    return SENSITIVE if attribute in sensitive else render_value(value)


def _attribute_lines(
    kind: str, attributes: dict[str, Any], indent: str = "      "
) -> list[str]:
    sensitive = sensitive_attributes(kind)
    return [
        f"{indent}{key} = {_shown(value, key, sensitive)}"
        for key, value in sorted(attributes.items())
    ]


def _render_operation(operation: Operation) -> list[str]:
    if operation.replace:
        # The replacement pair is shown once, on its create
        if operation.action == OperationType.DESTROY:
            return []
        symbol = REPLACE_SYMBOL
        header = f"{symbol} {operation.address} must be replaced"
    else:
        symbol = SYMBOLS[operation.action]
        verb = {
            OperationType.CREATE: "will be created",
            OperationType.UPDATE: "will be updated in-place",
            OperationType.DESTROY: "will be destroyed",
        }[operation.action]
        header = f"{symbol} {operation.address} {verb}"

    kind = operation.resource_id.kind
    lines = [header]
    if operation.reasons and (operation.replace or operation.action != OperationType.CREATE):
        lines.append(f"    # {'; '.join(operation.reasons)}")

    if operation.action == OperationType.CREATE and not operation.replace:
        lines.extend(_attribute_lines(kind, operation.planned_attributes or {}))
    elif operation.action == OperationType.DESTROY:
        lines.extend(_attribute_lines(kind, operation.prior_attributes or {}))
    else:
        sensitive = sensitive_attributes(kind)
        for change in operation.changes:
            marker = " # forces replacement" if change.force_new else ""
            before = _shown(change.before, change.attribute, sensitive)
            after = _shown(change.after, change.attribute, sensitive)
            lines.append(f"      {change.attribute}: {before} -> {after}{marker}")
    return lines


def render_plan(change_set: ChangeSet) -> str:
    """Render a ChangeSet as a readable diff."""
    if change_set.is_empty:
        return "No changes. Infrastructure matches the configuration."

    lines: list[str] = []
    for operation in change_set:
        block = _render_operation(operation)
        if block:
            lines.extend(block)
            lines.append("")

    summary = change_set.summary()
    lines.append(
        f"Plan: {summary['create']} to add, {summary['update']} to change, "
        f"{summary['destroy']} to destroy, {summary['replace']} to replace."
    )
    return "\n".join(lines)


def render_apply(result: ApplyResult) -> str:
    """Render an apply report: every operation in dependency order."""
    lines: list[str] = []
    for entry in result.results:
        label = STATUS_LABELS[entry.status]
        line = f"  {entry.action.value:<8} {entry.address}: {label}"
        if entry.attempts > 1:
            line += f" after {entry.attempts} attempts"
        if entry.error:
            line += f"\n      {entry.error}"
        lines.append(line)

    counts = (
        f"{len(result.succeeded)} succeeded, {len(result.failed)} failed, "
        f"{len(result.not_attempted)} not attempted"
    )
    if result.cancelled:
        lines.append(f"Apply cancelled: {counts}.")
    elif result.halted:
        lines.append(f"Apply halted: {counts}.")
    else:
        lines.append(f"Apply complete: {counts}.")
    return "\n".join(lines)


def render_state(applied: AppliedState) -> str:
    """List every resource in applied state."""
    if not len(applied):
        return "State is empty."

    lines = [f"# serial {applied.serial}, lineage {applied.lineage}"]
    for resource_id in applied.ids():
        record = applied.get(resource_id)
        assert record is not None
        lines.append(f"{record.address} ({record.provider_id})")
        lines.extend(_attribute_lines(record.kind, record.attributes, indent="    "))
        outputs = {k: v for k, v in record.outputs.items() if k not in record.attributes}
        for key, value in sorted(outputs.items()):
            shown = _shown(value, key, sensitive_attributes(record.kind))
            lines.append(f"    {key} = {shown} (computed)")
        if record.dependencies:
            lines.append(f"    depends on: {', '.join(sorted(record.dependencies))}")
    return "\n".join(lines)


def render_graph(graph: DependencyGraph) -> str:
    """Dependency edges followed by the creation order."""
    lines = ["Edges:"]
    edges = graph.edges()
    if not edges:
        lines.append("  (none)")
    for source, target in edges:
        lines.append(f"  {source.address} -> {target.address}")
    lines.append("Order:")
    for position, resource_id in enumerate(graph.topological_sort(), start=1):
        lines.append(f"  {position}. {resource_id.address}")
    return "\n".join(lines)
