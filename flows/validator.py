"""
Flow Validator — Structural checks over a flow graph.

validate_flow() runs every pass and reports everything it finds:

  1. Per-node configuration — one rule per NodeType (NODE_RULES)
  2. Identity — duplicate node ids, missing / multiple start nodes
  3. Connection targets — every target_node_id must name a node in the flow
  4. Shape heuristics — start without exits, condition with < 2 exits, end with exits
  5. Reachability — BFS from the start node(s); unvisited nodes are warnings
  6. Cycles — DFS with white/grey/black colouring; back-edges are warnings

Configuration problems and dangling connections are errors. Unreachable
nodes and loops are warnings: a flow with warnings is still saved.
"""
from __future__ import annotations

from collections import deque
from typing import Callable, Optional

from models.schemas import (
    ActionConfig, ConditionConfig, FlowNode, InputType, IntegrationConfig,
    MessageConfig, NodeType, QuestionConfig, Severity, ValidationIssue,
    ValidationResult, Flow,
)


def _error(code: str, message: str, node: FlowNode = None, connection_id: str = None) -> ValidationIssue:
    return ValidationIssue(
        code=code, message=message, severity=Severity.ERROR,
        node_id=node.id if node else None, connection_id=connection_id,
    )


def _warning(code: str, message: str, node: FlowNode = None, connection_id: str = None) -> ValidationIssue:
    return ValidationIssue(
        code=code, message=message, severity=Severity.WARNING,
        node_id=node.id if node else None, connection_id=connection_id,
    )


# ──────────────────────────────────────────────────────────────
#  Per-node-type rules
# ──────────────────────────────────────────────────────────────

def _no_requirements(node: FlowNode) -> list[ValidationIssue]:
    return []


def _check_message(node: FlowNode) -> list[ValidationIssue]:
    config: MessageConfig = node.configuration
    if not config.message_text.strip():
        return [_error("MISSING_MESSAGE_TEXT", f"Message node '{node.name}' has no message text", node)]
    return []


def _check_question(node: FlowNode) -> list[ValidationIssue]:
    config: QuestionConfig = node.configuration
    issues = []
    if not config.question_text.strip():
        issues.append(_error("MISSING_QUESTION_TEXT", f"Question node '{node.name}' has no question text", node))
    if not config.variable_name.strip():
        issues.append(_error("MISSING_VARIABLE_NAME",
                             f"Question node '{node.name}' does not bind its answer to a variable", node))
    if config.input_type == InputType.CHOICE and not config.choices:
        issues.append(_error("MISSING_CHOICES", f"Choice question '{node.name}' has no choices", node))
    return issues


def _check_condition(node: FlowNode) -> list[ValidationIssue]:
    config: ConditionConfig = node.configuration
    if not config.conditions:
        return [_error("MISSING_CONDITIONS", f"Condition node '{node.name}' has no condition clauses", node)]
    return []


def _check_action(node: FlowNode) -> list[ValidationIssue]:
    config: ActionConfig = node.configuration
    if not config.action_type:
        return [_error("MISSING_ACTION_TYPE", f"Action node '{node.name}' has no action type", node)]
    return []


def _check_integration(node: FlowNode) -> list[ValidationIssue]:
    config: IntegrationConfig = node.configuration
    if not config.integration_type:
        return [_error("MISSING_INTEGRATION_TYPE", f"Integration node '{node.name}' has no integration type", node)]
    return []


NODE_RULES: dict[NodeType, Callable[[FlowNode], list[ValidationIssue]]] = {
    NodeType.START: _no_requirements,
    NodeType.MESSAGE: _check_message,
    NodeType.QUESTION: _check_question,
    NodeType.CONDITION: _check_condition,
    NodeType.ACTION: _check_action,
    NodeType.INTEGRATION: _check_integration,
    NodeType.END: _no_requirements,
}

_missing_rules = set(NodeType) - set(NODE_RULES)
if _missing_rules:
    raise RuntimeError(f"No validation rule for node types: {sorted(t.value for t in _missing_rules)}")


def validate_node(node: FlowNode) -> list[ValidationIssue]:
    """Configuration completeness of a single node against its own type."""
    return NODE_RULES[node.type](node)


# ──────────────────────────────────────────────────────────────
#  Graph passes
# ──────────────────────────────────────────────────────────────

def _check_identity(nodes: list[FlowNode]) -> list[ValidationIssue]:
    issues = []
    seen: set[str] = set()
    for node in nodes:
        if node.id in seen:
            issues.append(_error("DUPLICATE_NODE_ID", f"Node id '{node.id}' is used more than once", node))
        seen.add(node.id)

    starts = [n for n in nodes if n.type == NodeType.START]
    if not starts:
        issues.append(_error("MISSING_START_NODE", "Flow has no start node"))
    elif len(starts) > 1:
        issues.append(_error("MULTIPLE_START_NODES",
                             f"Flow has {len(starts)} start nodes; exactly one is allowed"))
    return issues


def _check_connection_targets(nodes: list[FlowNode], node_ids: set[str]) -> list[ValidationIssue]:
    issues = []
    for node in nodes:
        for conn in node.connections:
            if conn.target_node_id not in node_ids:
                issues.append(_error(
                    "INVALID_CONNECTION_TARGET",
                    f"Connection from '{node.name}' targets unknown node '{conn.target_node_id}'",
                    node, conn.id,
                ))
    return issues


def _check_shape(nodes: list[FlowNode]) -> list[ValidationIssue]:
    issues = []
    for node in nodes:
        exits = len(node.connections)
        if node.type == NodeType.START and exits == 0:
            issues.append(_warning("START_NODE_NO_CONNECTIONS", "Start node has no outgoing connections", node))
        elif node.type == NodeType.CONDITION and exits < 2:
            issues.append(_warning(
                "CONDITION_NODE_INSUFFICIENT_CONNECTIONS",
                f"Condition node '{node.name}' should have true and false branches", node,
            ))
        elif node.type == NodeType.END and exits > 0:
            issues.append(_warning("END_NODE_HAS_CONNECTIONS",
                                   f"End node '{node.name}' has outgoing connections", node))
    return issues


def _adjacency(nodes: list[FlowNode], node_ids: set[str]) -> dict[str, list[str]]:
    graph: dict[str, list[str]] = {}
    for node in nodes:
        targets = graph.setdefault(node.id, [])
        for conn in node.connections:
            if conn.target_node_id in node_ids:
                targets.append(conn.target_node_id)
    return graph


def _check_reachability(nodes: list[FlowNode], graph: dict[str, list[str]]) -> list[ValidationIssue]:
    roots = [n.id for n in nodes if n.type == NodeType.START]
    if not roots:
        return []

    visited = set(roots)
    queue = deque(roots)
    while queue:
        current = queue.popleft()
        for target in graph.get(current, []):
            if target not in visited:
                visited.add(target)
                queue.append(target)

    return [
        _warning("UNREACHABLE_NODE", f"Node '{node.name}' cannot be reached from the start node", node)
        for node in nodes
        if node.id not in visited
    ]


_WHITE, _GREY, _BLACK = 0, 1, 2


def _check_cycles(nodes: list[FlowNode], graph: dict[str, list[str]]) -> list[ValidationIssue]:
    by_id = {n.id: n for n in nodes}
    colour = {node_id: _WHITE for node_id in graph}
    issues: list[ValidationIssue] = []

    def visit(root: str):
        colour[root] = _GREY
        stack = [(root, iter(graph.get(root, [])))]
        while stack:
            node_id, targets = stack[-1]
            target = next(targets, None)
            if target is None:
                colour[node_id] = _BLACK
                stack.pop()
            elif colour[target] == _GREY:
                issues.append(_warning(
                    "POTENTIAL_INFINITE_LOOP",
                    f"Loop detected: '{by_id[node_id].name}' leads back to '{by_id[target].name}'",
                    by_id[node_id],
                ))
            elif colour[target] == _WHITE:
                colour[target] = _GREY
                stack.append((target, iter(graph.get(target, []))))

    # Start nodes first so loops are reported along the live path, then any leftover islands.
    ordered = [n.id for n in nodes if n.type == NodeType.START] + [n.id for n in nodes]
    for node_id in ordered:
        if colour[node_id] == _WHITE:
            visit(node_id)
    return issues


# ──────────────────────────────────────────────────────────────
#  Entry point
# ──────────────────────────────────────────────────────────────

def validate_flow(flow: Flow, nodes: Optional[list[FlowNode]] = None) -> ValidationResult:
    """Run every pass over the flow's nodes and collect all findings."""
    nodes = flow.nodes if nodes is None else nodes
    node_ids = {n.id for n in nodes}

    issues: list[ValidationIssue] = []
    for node in nodes:
        issues.extend(validate_node(node))
    issues.extend(_check_identity(nodes))
    issues.extend(_check_connection_targets(nodes, node_ids))
    issues.extend(_check_shape(nodes))

    graph = _adjacency(nodes, node_ids)
    issues.extend(_check_reachability(nodes, graph))
    issues.extend(_check_cycles(nodes, graph))

    errors = [i for i in issues if i.severity == Severity.ERROR]
    warnings = [i for i in issues if i.severity == Severity.WARNING]
    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
