"""
Tests for the billing graph engine: readiness partitions, progress,
cycle detection and node-set validation.
"""

from datetime import date
from decimal import Decimal

from billing_engines.billing_graph import (
    AMOUNT_NOT_POSITIVE,
    CASE_MISMATCH,
    DEPENDENCY_CYCLE,
    DUPLICATE_NODE_ID,
    DUPLICATE_ORDER,
    NAME_REQUIRED,
    NO_NODES,
    NO_REQUIREMENTS,
    SELF_DEPENDENCY,
    UNKNOWN_DEPENDENCY,
    build_billing_graph,
    find_dependency_cycle,
    newly_ready,
    validate_node_set,
)
from billing_kernel.domain.case_phase import CasePhase
from tests.factories import make_node, two_node_chain

DONE = date(2024, 2, 1)


# =============================================================================
# Readiness partitions
# =============================================================================


class TestReadiness:

    def test_root_ready_dependant_blocked(self):
        view = build_billing_graph(two_node_chain())

        assert view.ready_ids == {"N1"}
        assert view.blocked_ids == {"N2"}
        assert view.completed_ids == frozenset()
        assert view.overall_progress == 0
        assert view.next_milestone.id == "N1"

    def test_completing_dependency_unblocks_dependant(self):
        n1, n2 = two_node_chain()
        before = build_billing_graph([n1, n2])
        after = build_billing_graph([n1.mark_completed(DONE), n2])

        assert after.ready_ids == {"N2"}
        assert after.overall_progress == 50
        assert [n.id for n in newly_ready(before, after)] == ["N2"]

    def test_partitions_cover_active_nodes_exactly_once(self):
        nodes = [
            make_node("A", order=1, is_completed=True, completion_date=DONE),
            make_node("B", order=2, dependencies=("A",)),
            make_node("C", order=3, dependencies=("B",)),
            make_node("D", order=4, is_active=False),
        ]

        view = build_billing_graph(nodes)

        partitions = [view.completed_ids, view.ready_ids, view.blocked_ids]
        assert frozenset().union(*partitions) == {"A", "B", "C"}
        assert sum(len(p) for p in partitions) == 3

    def test_dependency_on_inactive_node_stays_blocked(self):
        nodes = [
            make_node("OLD", is_active=False, is_completed=True, completion_date=DONE),
            make_node("NEW", dependencies=("OLD",)),
        ]

        view = build_billing_graph(nodes)

        assert view.blocked_ids == {"NEW"}

    def test_unbilled_completed(self):
        nodes = [
            make_node("A", order=1, is_completed=True, completion_date=DONE, is_billed=True),
            make_node("B", order=2, is_completed=True, completion_date=DONE),
        ]

        view = build_billing_graph(nodes)

        assert [n.id for n in view.unbilled_completed] == ["B"]

    def test_next_milestone_falls_back_to_blocked(self):
        nodes = [
            make_node("A", order=1, is_completed=True, completion_date=DONE),
            make_node("B", order=2, dependencies=("X",)),
        ]

        view = build_billing_graph(nodes)

        assert view.next_milestone.id == "B"


# =============================================================================
# Progress
# =============================================================================


class TestProgress:

    def test_progress_rounds_half_up(self):
        nodes = [
            make_node("A", order=1, is_completed=True, completion_date=DONE),
            make_node("B", order=2),
            make_node("C", order=3),
        ]

        assert build_billing_graph(nodes).overall_progress == 33

    def test_two_of_three_rounds_up(self):
        nodes = [
            make_node("A", order=1, is_completed=True, completion_date=DONE),
            make_node("B", order=2, is_completed=True, completion_date=DONE),
            make_node("C", order=3),
        ]

        assert build_billing_graph(nodes).overall_progress == 67

    def test_phase_progress_only_for_present_phases(self):
        nodes = [
            make_node("A", order=1, is_completed=True, completion_date=DONE),
            make_node("B", order=2, phase=CasePhase.FORMAL_PROCEEDINGS),
        ]

        view = build_billing_graph(nodes)

        assert view.phase_progress == {
            CasePhase.INTAKE_RISK_ASSESSMENT: 100,
            CasePhase.FORMAL_PROCEEDINGS: 0,
        }

    def test_empty_graph_progress(self):
        assert build_billing_graph([]).overall_progress == 0
        assert build_billing_graph(
            [], current_phase=CasePhase.CLOSURE_REVIEW_ARCHIVING,
        ).overall_progress == 100


# =============================================================================
# Cycle detection
# =============================================================================


class TestCycleDetection:

    def test_acyclic(self):
        assert find_dependency_cycle(two_node_chain()) is None

    def test_two_node_cycle(self):
        nodes = [
            make_node("A", order=1, dependencies=("B",)),
            make_node("B", order=2, dependencies=("A",)),
        ]

        assert find_dependency_cycle(nodes) == ("A", "B", "A")

    def test_longer_cycle_among_other_nodes(self):
        nodes = [
            make_node("ROOT", order=1),
            make_node("X", order=2, dependencies=("ROOT", "Z")),
            make_node("Y", order=3, dependencies=("X",)),
            make_node("Z", order=4, dependencies=("Y",)),
        ]

        cycle = find_dependency_cycle(nodes)

        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"X", "Y", "Z"}


# =============================================================================
# Node-set validation
# =============================================================================


class TestValidateNodeSet:

    def test_valid_chain(self):
        validation = validate_node_set(two_node_chain(), case_id="CASE-001")

        assert validation.is_valid
        assert validation.warnings == ()

    def test_empty_set(self):
        assert validate_node_set([]).error_codes() == (NO_NODES,)

    def test_cycle_is_an_error(self):
        nodes = [
            make_node("A", order=1, dependencies=("B",)),
            make_node("B", order=2, dependencies=("A",)),
        ]

        validation = validate_node_set(nodes)

        assert DEPENDENCY_CYCLE in validation.error_codes()

    def test_structural_errors(self):
        nodes = [
            make_node("A", order=1, name=" "),
            make_node("A", order=2),
            make_node("B", order=3, amount="0", dependencies=("B", "GHOST")),
            make_node("C", order=4, case_id="OTHER"),
        ]

        codes = set(validate_node_set(nodes, case_id="CASE-001").error_codes())

        assert {
            DUPLICATE_NODE_ID,
            NAME_REQUIRED,
            AMOUNT_NOT_POSITIVE,
            SELF_DEPENDENCY,
            UNKNOWN_DEPENDENCY,
            CASE_MISMATCH,
        } <= codes

    def test_warnings_do_not_invalidate(self):
        nodes = [
            make_node("A", order=1, requirements=()),
            make_node("B", order=1),
        ]

        validation = validate_node_set(nodes)

        assert validation.is_valid
        assert {w.code for w in validation.warnings} == {NO_REQUIREMENTS, DUPLICATE_ORDER}

    def test_court_approval_suggestion_above_threshold(self):
        nodes = [make_node("A", amount="1500000")]

        validation = validate_node_set(nodes, court_approval_threshold=Decimal("1000000"))

        assert validation.compliance.suggestions
