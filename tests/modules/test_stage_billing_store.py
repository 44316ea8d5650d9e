"""
Tests for the SQL reference collaborators: SqlCaseStore and SqlInvoiceIssuer.
"""

from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.case_phase import CasePhase
from billing_kernel.exceptions import (
    AmbiguousNodeError,
    AlreadyCompletedError,
    BillingNodeNotFoundError,
    CaseNotFoundError,
    InvalidArgumentError,
)
from billing_modules.stage_billing.config import StageBillingConfiguration
from billing_modules.stage_billing.models import CompletionData, Expense, TimeEntry
from tests.factories import (
    TEST_CASE_ID,
    TEST_CLIENT_ID,
    invoice_item,
    make_case,
    make_node,
    two_node_chain,
)

DONE = date(2024, 2, 1)
OTHER_CASE_ID = "CASE-002"


# =============================================================================
# Cases
# =============================================================================


class TestCases:

    def test_round_trip(self, case_store):
        case_store.add_case(make_case(total_value=Decimal("250000")))

        case = case_store.load_case(TEST_CASE_ID)

        assert case.client_id == TEST_CLIENT_ID
        assert case.current_phase == CasePhase.INTAKE_RISK_ASSESSMENT
        assert case.total_value == Decimal("250000.00")

    def test_unknown_case(self, case_store):
        with pytest.raises(CaseNotFoundError):
            case_store.load_case("NOPE")

    def test_advance_phase(self, case_store, test_case):
        case = case_store.advance_phase(
            TEST_CASE_ID, CasePhase.INTAKE_RISK_ASSESSMENT, date(2024, 3, 1),
        )

        assert case.current_phase == CasePhase.PRE_PROCEEDING_PREPARATION
        assert case.phase_started_on == date(2024, 3, 1)

    def test_advance_from_stale_phase_is_a_no_op(self, case_store, test_case):
        case_store.advance_phase(
            TEST_CASE_ID, CasePhase.INTAKE_RISK_ASSESSMENT, date(2024, 3, 1),
        )

        case = case_store.advance_phase(
            TEST_CASE_ID, CasePhase.INTAKE_RISK_ASSESSMENT, date(2024, 3, 2),
        )

        assert case.current_phase == CasePhase.PRE_PROCEEDING_PREPARATION
        assert case.phase_started_on == date(2024, 3, 1)

    def test_terminal_phase_cannot_advance(self, case_store, test_case):
        with pytest.raises(InvalidArgumentError):
            case_store.advance_phase(
                TEST_CASE_ID, CasePhase.CLOSURE_REVIEW_ARCHIVING, date(2024, 3, 1),
            )


# =============================================================================
# Nodes
# =============================================================================


class TestNodes:

    def test_persist_and_load(self, case_store, test_case):
        created = case_store.persist_nodes(TEST_CASE_ID, two_node_chain())

        assert [n.id for n in created] == ["N1", "N2"]
        n2 = case_store.load_node("N2")
        assert n2.dependencies == {"N1"}
        assert n2.amount == Decimal("2000.00")
        assert not n2.is_completed

    def test_persist_rejects_foreign_node(self, case_store, test_case):
        with pytest.raises(InvalidArgumentError):
            case_store.persist_nodes(TEST_CASE_ID, [make_node("X", case_id="OTHER")])

    def test_load_nodes_of_unknown_case(self, case_store):
        with pytest.raises(CaseNotFoundError):
            case_store.load_nodes("NOPE")

    def test_unknown_node(self, case_store, test_case):
        with pytest.raises(BillingNodeNotFoundError):
            case_store.load_node("NOPE")

    def test_deactivate_hides_nodes(self, case_store, test_case):
        case_store.persist_nodes(TEST_CASE_ID, two_node_chain())

        assert case_store.deactivate_nodes(TEST_CASE_ID) == 2
        assert case_store.load_nodes(TEST_CASE_ID) == []
        with pytest.raises(BillingNodeNotFoundError):
            case_store.load_node("N1")

    def test_same_ids_can_be_recreated_after_deactivation(self, case_store, test_case):
        case_store.persist_nodes(TEST_CASE_ID, two_node_chain())
        case_store.deactivate_nodes(TEST_CASE_ID)

        recreated = case_store.persist_nodes(TEST_CASE_ID, [make_node("N1", amount="5")])

        assert [(n.id, n.amount) for n in recreated] == [("N1", Decimal("5.00"))]

    def test_replace_billing_system(self, case_store, test_case):
        case_store.persist_nodes(TEST_CASE_ID, two_node_chain())

        replaced = case_store.replace_billing_system(
            TEST_CASE_ID,
            [make_node("N3", amount="700")],
            StageBillingConfiguration(grace_period_days=3),
        )

        assert [n.id for n in replaced] == ["N3"]
        assert [n.id for n in case_store.load_nodes(TEST_CASE_ID)] == ["N3"]
        assert case_store.load_configuration(TEST_CASE_ID).grace_period_days == 3

    def test_failed_replace_leaves_previous_system(self, case_store, test_case):
        config = StageBillingConfiguration(grace_period_days=5)
        case_store.replace_billing_system(TEST_CASE_ID, two_node_chain(), config)

        with pytest.raises(InvalidArgumentError):
            case_store.replace_billing_system(
                TEST_CASE_ID,
                [make_node("N3"), make_node("X", case_id="OTHER")],
                StageBillingConfiguration(grace_period_days=30),
            )

        assert [n.id for n in case_store.load_nodes(TEST_CASE_ID)] == ["N1", "N2"]
        assert case_store.load_configuration(TEST_CASE_ID) == config


# =============================================================================
# Node ids shared between cases
# =============================================================================


@pytest.fixture
def two_cases(case_store):
    """CASE-001 and CASE-002, each with its own N1 -> N2 chain."""
    for case_id in (TEST_CASE_ID, OTHER_CASE_ID):
        case_store.add_case(make_case(case_id))
        case_store.persist_nodes(case_id, two_node_chain(case_id))


class TestNodesSharedBetweenCases:

    def test_load_without_case_is_ambiguous(self, case_store, two_cases):
        with pytest.raises(AmbiguousNodeError) as exc_info:
            case_store.load_node("N1")

        assert exc_info.value.case_ids == (TEST_CASE_ID, OTHER_CASE_ID)

    def test_load_with_case(self, case_store, two_cases):
        node = case_store.load_node("N1", OTHER_CASE_ID)

        assert node.case_id == OTHER_CASE_ID

    def test_completion_touches_one_case(self, case_store, two_cases):
        case_store.persist_node_completion(
            TEST_CASE_ID, "N1", CompletionData(completion_date=DONE),
        )

        assert case_store.load_node("N1", TEST_CASE_ID).is_completed
        assert not case_store.load_node("N1", OTHER_CASE_ID).is_completed

    def test_completion_in_other_case_does_not_conflict(self, case_store, two_cases):
        case_store.persist_node_completion(
            TEST_CASE_ID, "N1", CompletionData(completion_date=DONE),
        )

        node = case_store.persist_node_completion(
            OTHER_CASE_ID, "N1", CompletionData(completion_date=date(2024, 2, 2)),
        )

        assert node.case_id == OTHER_CASE_ID
        assert node.completion_date == date(2024, 2, 2)

    def test_mark_billed_touches_one_case(self, case_store, two_cases):
        case_store.mark_nodes_billed(OTHER_CASE_ID, ["N1"])

        assert case_store.load_node("N1", OTHER_CASE_ID).is_billed
        assert not case_store.load_node("N1", TEST_CASE_ID).is_billed

    def test_release_reservation(self, case_store, two_cases):
        case_store.mark_nodes_billed(TEST_CASE_ID, ["N1", "N2"])

        case_store.mark_nodes_billed(TEST_CASE_ID, ["N2"], billed=False)

        assert case_store.load_node("N1", TEST_CASE_ID).is_billed
        assert not case_store.load_node("N2", TEST_CASE_ID).is_billed

    def test_deactivating_one_case_disambiguates(self, case_store, two_cases):
        case_store.deactivate_nodes(OTHER_CASE_ID)

        assert case_store.load_node("N1").case_id == TEST_CASE_ID


# =============================================================================
# Completion
# =============================================================================


class TestCompletion:

    def test_completion_is_persisted(self, case_store, test_case):
        case_store.persist_nodes(TEST_CASE_ID, two_node_chain())

        node = case_store.persist_node_completion(
            TEST_CASE_ID, "N1", CompletionData(completion_date=DONE, documents=("memo",)),
        )

        assert node.is_completed
        assert node.completion_date == DONE
        assert case_store.load_node("N1").is_completed

    def test_second_completion_conflicts(self, case_store, test_case):
        case_store.persist_nodes(TEST_CASE_ID, two_node_chain())
        case_store.persist_node_completion(
            TEST_CASE_ID, "N1", CompletionData(completion_date=DONE),
        )

        with pytest.raises(AlreadyCompletedError) as exc_info:
            case_store.persist_node_completion(
                TEST_CASE_ID, "N1", CompletionData(completion_date=date(2024, 2, 2)),
            )

        assert exc_info.value.completion_date == DONE

    def test_completing_unknown_node(self, case_store, test_case):
        with pytest.raises(BillingNodeNotFoundError):
            case_store.persist_node_completion(
                TEST_CASE_ID, "NOPE", CompletionData(completion_date=DONE),
            )

    def test_mark_billed(self, case_store, test_case):
        case_store.persist_nodes(TEST_CASE_ID, two_node_chain())

        case_store.mark_nodes_billed(TEST_CASE_ID, ["N1"])

        assert case_store.load_node("N1").is_billed
        assert not case_store.load_node("N2").is_billed


# =============================================================================
# Configuration and ledger
# =============================================================================


class TestConfigurationAndLedger:

    def test_configuration_round_trip(self, case_store, test_case):
        assert case_store.load_configuration(TEST_CASE_ID) is None

        config = StageBillingConfiguration(require_completion=False, grace_period_days=14)
        case_store.store_configuration(TEST_CASE_ID, config)

        assert case_store.load_configuration(TEST_CASE_ID) == config

    def test_configuration_replace(self, case_store, test_case):
        case_store.store_configuration(TEST_CASE_ID, StageBillingConfiguration())
        case_store.store_configuration(
            TEST_CASE_ID, StageBillingConfiguration(auto_advance=False),
        )

        assert case_store.load_configuration(TEST_CASE_ID).auto_advance is False

    def test_total_paid(self, case_store, test_case):
        assert case_store.total_paid(TEST_CASE_ID) == Decimal("0.00")

        case_store.record_payment(TEST_CASE_ID, Decimal("300.50"), DONE)
        case_store.record_payment(TEST_CASE_ID, Decimal("199.50"), DONE)

        assert case_store.total_paid(TEST_CASE_ID) == Decimal("500.00")

    def test_unbilled_time_and_expenses(self, case_store, test_case):
        case_store.add_time_entry(TimeEntry(
            id="T1", case_id=TEST_CASE_ID, user_id="U1",
            hours=Decimal("2"), rate=Decimal("300"), amount=Decimal("600"),
            entry_date=DONE,
        ))
        case_store.add_time_entry(TimeEntry(
            id="T2", case_id=TEST_CASE_ID, user_id="U1",
            hours=Decimal("1"), rate=Decimal("300"), amount=Decimal("300"),
            entry_date=DONE, is_billed=True,
        ))
        case_store.add_expense(Expense(
            id="E1", case_id=TEST_CASE_ID, user_id="U1",
            amount=Decimal("80"), expense_date=DONE,
        ))

        assert [e.id for e in case_store.load_unbilled_time_entries(TEST_CASE_ID)] == ["T1"]
        assert [e.id for e in case_store.load_unbilled_expenses(TEST_CASE_ID)] == ["E1"]


# =============================================================================
# Invoices
# =============================================================================


class TestInvoiceIssuer:

    def test_issue(self, invoice_issuer, test_case):
        invoice = invoice_issuer.issue(
            TEST_CASE_ID,
            TEST_CLIENT_ID,
            [invoice_item("1000", "N1"), invoice_item("250.5", "N2")],
            idempotency_key="stage_billing:auto_invoice:CASE-001:abc",
        )

        assert invoice.total == Decimal("1250.50")
        assert invoice.node_ids == ("N1", "N2")
        assert invoice.issued_on == date(2024, 3, 1)
        assert invoice.currency == "CNY"

    def test_same_key_returns_same_invoice(self, invoice_issuer, test_case):
        key = "stage_billing:milestone_invoice:CASE-001:N1"
        first = invoice_issuer.issue(
            TEST_CASE_ID, TEST_CLIENT_ID, [invoice_item("1000", "N1")], idempotency_key=key,
        )

        second = invoice_issuer.issue(
            TEST_CASE_ID, TEST_CLIENT_ID, [invoice_item("9999", "N1")], idempotency_key=key,
        )

        assert second.id == first.id
        assert second.total == Decimal("1000.00")

    def test_empty_invoice_rejected(self, invoice_issuer, test_case):
        with pytest.raises(InvalidArgumentError):
            invoice_issuer.issue(
                TEST_CASE_ID, TEST_CLIENT_ID, [], idempotency_key="k",
            )
