"""
Billing Graph Engine.

Pure functions with deterministic behavior. No I/O.

Derives the readiness view of a case's billing nodes from the node set
alone.  Nothing is cached between calls: every view is recomputed from
the nodes it is given.

Partitions (over active nodes only):
- completed  is_completed
- ready      not completed, every dependency completed
- blocked    not completed, at least one dependency not completed

A dependency that references an inactive or unknown node is never
completed, so its dependant stays blocked.

Usage:
    from billing_engines.billing_graph import build_billing_graph

    view = build_billing_graph(nodes, current_phase=CasePhase.FORMAL_PROCEEDINGS)
    view.ready             # nodes that may be worked/billed now
    view.overall_progress  # 0..100
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from billing_engines.validation import (
    ComplianceCheck,
    StageBillingValidation,
    ValidationIssue,
)
from billing_kernel.domain.billing_node import BillingNode
from billing_kernel.domain.case_phase import CasePhase
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.billing_graph")


# ============================================================================
# Issue codes
# ============================================================================

NO_NODES = "NO_NODES"
DUPLICATE_NODE_ID = "DUPLICATE_NODE_ID"
CASE_MISMATCH = "CASE_MISMATCH"
NAME_REQUIRED = "NAME_REQUIRED"
AMOUNT_NOT_POSITIVE = "AMOUNT_NOT_POSITIVE"
SELF_DEPENDENCY = "SELF_DEPENDENCY"
UNKNOWN_DEPENDENCY = "UNKNOWN_DEPENDENCY"
DEPENDENCY_CYCLE = "DEPENDENCY_CYCLE"
DUPLICATE_ORDER = "DUPLICATE_ORDER"
NO_REQUIREMENTS = "NO_REQUIREMENTS"


def _sort_key(node: BillingNode) -> tuple[int, str]:
    return (node.order, node.id)


def _percent(part: int, whole: int) -> int:
    """Integer percentage, ROUND_HALF_UP."""
    if whole <= 0:
        return 0
    ratio = Decimal(100 * part) / Decimal(whole)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ============================================================================
# Graph view
# ============================================================================


@dataclass(frozen=True)
class BillingGraphView:
    """
    Readiness view of one case's active billing nodes.

    Attributes:
        nodes: Active nodes, sorted by (order, id)
        completed: Completed nodes
        ready: Not completed, all dependencies completed
        blocked: Not completed, some dependency not completed
        overall_progress: round(100 x |completed| / |active|)
        phase_progress: Same ratio per phase present among active nodes
        next_milestone: Lowest-order ready node, else lowest-order blocked
        current_phase: Case phase the view was built for, if known
    """

    nodes: tuple[BillingNode, ...]
    completed: tuple[BillingNode, ...]
    ready: tuple[BillingNode, ...]
    blocked: tuple[BillingNode, ...]
    overall_progress: int
    phase_progress: dict[CasePhase, int]
    next_milestone: BillingNode | None
    current_phase: CasePhase | None = None

    @property
    def pending(self) -> tuple[BillingNode, ...]:
        """Active, not-completed nodes (ready and blocked)."""
        return tuple(sorted(self.ready + self.blocked, key=_sort_key))

    @property
    def completed_ids(self) -> frozenset[str]:
        return frozenset(n.id for n in self.completed)

    @property
    def ready_ids(self) -> frozenset[str]:
        return frozenset(n.id for n in self.ready)

    @property
    def blocked_ids(self) -> frozenset[str]:
        return frozenset(n.id for n in self.blocked)

    @property
    def unbilled_completed(self) -> tuple[BillingNode, ...]:
        """Completed nodes not yet included on any invoice."""
        return tuple(n for n in self.completed if not n.is_billed)

    def nodes_in_phase(self, phase: CasePhase) -> tuple[BillingNode, ...]:
        return tuple(n for n in self.nodes if n.phase == phase)


def build_billing_graph(
    nodes: Iterable[BillingNode],
    current_phase: CasePhase | None = None,
) -> BillingGraphView:
    """
    Partition the active nodes and compute progress.

    Pure function.  Inactive nodes are ignored entirely.  With no active
    nodes, overall progress is 100 when ``current_phase`` is terminal and
    0 otherwise.
    """
    t0 = time.monotonic()
    active = sorted((n for n in nodes if n.is_active), key=_sort_key)
    completed_ids = {n.id for n in active if n.is_completed}

    completed: list[BillingNode] = []
    ready: list[BillingNode] = []
    blocked: list[BillingNode] = []
    for node in active:
        if node.is_completed:
            completed.append(node)
        elif node.dependencies <= completed_ids:
            ready.append(node)
        else:
            blocked.append(node)

    if active:
        overall = _percent(len(completed), len(active))
    elif current_phase is not None and current_phase.is_terminal:
        overall = 100
    else:
        overall = 0

    phase_progress: dict[CasePhase, int] = {}
    for phase in CasePhase:
        in_phase = [n for n in active if n.phase == phase]
        if in_phase:
            done = sum(1 for n in in_phase if n.is_completed)
            phase_progress[phase] = _percent(done, len(in_phase))

    next_milestone = ready[0] if ready else (blocked[0] if blocked else None)

    view = BillingGraphView(
        nodes=tuple(active),
        completed=tuple(completed),
        ready=tuple(ready),
        blocked=tuple(blocked),
        overall_progress=overall,
        phase_progress=phase_progress,
        next_milestone=next_milestone,
        current_phase=current_phase,
    )

    logger.debug("billing_graph_built", extra={
        "active_count": len(active),
        "completed_count": len(completed),
        "ready_count": len(ready),
        "blocked_count": len(blocked),
        "overall_progress": overall,
        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
    })

    return view


def newly_ready(
    before: BillingGraphView,
    after: BillingGraphView,
) -> tuple[BillingNode, ...]:
    """Nodes ready in ``after`` that were not ready in ``before``."""
    previously = before.ready_ids
    return tuple(n for n in after.ready if n.id not in previously)


# ============================================================================
# Cycle detection and node-set validation
# ============================================================================


def find_dependency_cycle(nodes: Sequence[BillingNode]) -> tuple[str, ...] | None:
    """
    Find one dependency cycle among ``nodes``.

    Only edges between nodes of the set are followed; self-dependencies
    are reported separately by ``validate_node_set`` and skipped here.

    Returns:
        The cycle as node ids with the first id repeated at the end
        (``("A", "B", "A")``), or None if the graph is acyclic.
    """
    edges: dict[str, list[str]] = {}
    for node in nodes:
        edges[node.id] = sorted(d for d in node.dependencies if d != node.id)

    white, grey, black = 0, 1, 2
    color = {node_id: white for node_id in edges}
    path: list[str] = []

    def visit(node_id: str) -> tuple[str, ...] | None:
        color[node_id] = grey
        path.append(node_id)
        for dep in edges[node_id]:
            if dep not in color:
                continue
            if color[dep] == grey:
                start = path.index(dep)
                return tuple(path[start:]) + (dep,)
            if color[dep] == white:
                found = visit(dep)
                if found is not None:
                    return found
        path.pop()
        color[node_id] = black
        return None

    for node_id in sorted(edges):
        if color[node_id] == white:
            cycle = visit(node_id)
            if cycle is not None:
                return cycle
    return None


def validate_node_set(
    nodes: Sequence[BillingNode],
    court_approval_threshold: Decimal | None = None,
    case_id: str | None = None,
) -> StageBillingValidation:
    """
    Validate a node set before it is persisted as a case's billing system.

    Errors: empty set, duplicate ids, nodes of another case, empty names,
    non-positive amounts, self-dependencies, unknown dependency
    references, dependency cycles.
    Warnings: duplicate orders, nodes without requirements.
    """
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    recommendations: list[str] = []
    suggestions: list[str] = []

    if not nodes:
        errors.append(ValidationIssue(NO_NODES, "At least one billing node is required"))
        return StageBillingValidation(errors=tuple(errors))

    id_counts = Counter(n.id for n in nodes)
    for node_id, count in sorted(id_counts.items()):
        if count > 1:
            errors.append(ValidationIssue(
                DUPLICATE_NODE_ID, f"Node id {node_id} appears {count} times", node_id,
            ))

    order_counts = Counter(n.order for n in nodes)
    for order, count in sorted(order_counts.items()):
        if count > 1:
            warnings.append(ValidationIssue(
                DUPLICATE_ORDER, f"{count} nodes share order {order}", str(order),
            ))

    known_ids = set(id_counts)
    for node in nodes:
        if case_id is not None and node.case_id != case_id:
            errors.append(ValidationIssue(
                CASE_MISMATCH,
                f"Node {node.id} belongs to case {node.case_id}, not {case_id}",
                node.id,
            ))
        if not node.name.strip():
            errors.append(ValidationIssue(
                NAME_REQUIRED, f"Node {node.id}: name is required", node.id,
            ))
        if node.amount <= 0:
            errors.append(ValidationIssue(
                AMOUNT_NOT_POSITIVE,
                f"Node {node.id}: amount must be greater than 0",
                node.id,
            ))
        if not node.requirements:
            warnings.append(ValidationIssue(
                NO_REQUIREMENTS, f"Node {node.id}: no requirements specified", node.id,
            ))
        if node.id in node.dependencies:
            errors.append(ValidationIssue(
                SELF_DEPENDENCY, f"Node {node.id} cannot depend on itself", node.id,
            ))
        for dep in sorted(node.dependencies - known_ids):
            errors.append(ValidationIssue(
                UNKNOWN_DEPENDENCY,
                f"Node {node.id} depends on unknown node {dep}",
                node.id,
            ))

    cycle = find_dependency_cycle(nodes)
    if cycle is not None:
        errors.append(ValidationIssue(
            DEPENDENCY_CYCLE,
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            cycle[0],
        ))

    if len({n.phase for n in nodes}) > 1:
        recommendations.append(
            "Consider organizing nodes by phase for better clarity"
        )

    total = sum((n.amount for n in nodes), Decimal("0"))
    if court_approval_threshold is not None and total > court_approval_threshold:
        suggestions.append(
            f"Consider court approval for cases over {court_approval_threshold}"
        )

    validation = StageBillingValidation(
        errors=tuple(errors),
        warnings=tuple(warnings),
        recommendations=tuple(recommendations),
        compliance=ComplianceCheck(suggestions=tuple(suggestions)),
    )

    logger.info("node_set_validated", extra={
        "node_count": len(nodes),
        "error_count": len(errors),
        "warning_count": len(warnings),
        "is_valid": validation.is_valid,
    })

    return validation
