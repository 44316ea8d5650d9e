"""
Tests for the automation planner.
"""

from datetime import date
from decimal import Decimal

import pytest

from billing_engines.automation import (
    AutomationConditions,
    AutomationRules,
    StageBillingAutomation,
    auto_invoice_key,
    plan_automation,
    resolve_automation_rules,
)
from billing_engines.billing_graph import build_billing_graph
from billing_kernel.domain.case_phase import CasePhase
from billing_kernel.exceptions import InvalidArgumentError
from tests.factories import make_node

TODAY = date(2024, 3, 1)
DONE = date(2024, 2, 20)
INTAKE = CasePhase.INTAKE_RISK_ASSESSMENT


def plan_for(nodes, automation=None, phase=INTAKE, today=TODAY):
    view = build_billing_graph(nodes, phase)
    return plan_automation(
        "CASE-001", view, automation or StageBillingAutomation(), phase, today,
    )


class TestInvoicePlanning:

    def test_unbilled_above_minimum_is_invoiced(self):
        nodes = [
            make_node("A", order=1, amount="800", is_completed=True, completion_date=DONE),
            make_node("B", order=2, amount="700", is_completed=True, completion_date=DONE),
        ]

        plan = plan_for(nodes)

        assert plan.invoice.node_ids == ("A", "B")
        assert plan.invoice.amount == Decimal("1500")
        assert plan.invoice.idempotency_key == auto_invoice_key("CASE-001", ("A", "B"))

    def test_amount_equal_to_minimum_is_not_invoiced(self):
        nodes = [
            make_node("A", amount="1000", is_completed=True, completion_date=DONE),
        ]

        plan = plan_for(nodes)

        assert plan.invoice is None
        assert "unbilled_amount_below_minimum" in plan.skipped

    def test_billed_nodes_are_excluded(self):
        nodes = [
            make_node(
                "A", amount="5000", is_completed=True, completion_date=DONE, is_billed=True,
            ),
        ]

        plan = plan_for(nodes)

        assert plan.invoice is None
        assert "no_unbilled_completed_nodes" in plan.skipped

    def test_key_is_independent_of_node_order(self):
        assert auto_invoice_key("C", ("A", "B")) == auto_invoice_key("C", ("B", "A"))
        assert auto_invoice_key("C", ("A", "B")).startswith("stage_billing:auto_invoice:C:")


class TestReminderPlanning:

    def test_reminders_within_horizon(self):
        nodes = [
            make_node("SOON", order=1, due_date=date(2024, 3, 10)),
            make_node("TODAY", order=2, due_date=TODAY),
            make_node("LATER", order=3, due_date=date(2024, 6, 1)),
            make_node("PAST", order=4, due_date=date(2024, 2, 1)),
        ]

        plan = plan_for(nodes)

        assert {r.node_id for r in plan.reminders} == {"SOON", "TODAY"}
        soon = next(r for r in plan.reminders if r.node_id == "SOON")
        assert soon.days_until_due == 9

    def test_completed_nodes_get_no_reminder(self):
        nodes = [
            make_node(
                "A", due_date=date(2024, 3, 5), is_completed=True, completion_date=DONE,
            ),
        ]

        assert plan_for(nodes).reminders == ()


class TestAdvancePlanning:

    def test_advance_when_phase_complete(self):
        automation = resolve_automation_rules(
            auto_advance=True, send_notifications=True, approval_required=False,
        )
        nodes = [
            make_node("A", order=1, is_completed=True, completion_date=DONE),
            make_node("B", order=2, phase=CasePhase.FORMAL_PROCEEDINGS),
        ]

        plan = plan_for(nodes, automation)

        assert plan.advance.from_phase == INTAKE
        assert plan.advance.to_phase == CasePhase.PRE_PROCEEDING_PREPARATION

    def test_no_advance_when_phase_incomplete(self):
        automation = StageBillingAutomation(rules=AutomationRules(auto_advance_stages=True))
        nodes = [make_node("A")]

        plan = plan_for(nodes, automation)

        assert plan.advance is None
        assert "current_phase_incomplete" in plan.skipped

    def test_terminal_phase_never_advances(self):
        automation = StageBillingAutomation(rules=AutomationRules(auto_advance_stages=True))
        nodes = [make_node(
            "A",
            phase=CasePhase.CLOSURE_REVIEW_ARCHIVING,
            is_completed=True,
            completion_date=DONE,
        )]

        plan = plan_for(nodes, automation, phase=CasePhase.CLOSURE_REVIEW_ARCHIVING)

        assert plan.advance is None
        assert "current_phase_terminal" in plan.skipped

    def test_advance_disabled_by_default(self):
        nodes = [make_node("A", is_completed=True, completion_date=DONE)]

        plan = plan_for(nodes)

        assert plan.advance is None
        assert "auto_advance_stages_disabled" in plan.skipped


class TestPlanShape:

    def test_disabled_automation_plans_nothing(self):
        nodes = [make_node("A", amount="5000", is_completed=True, completion_date=DONE)]

        plan = plan_for(nodes, StageBillingAutomation(enabled=False))

        assert not plan.enabled
        assert not plan.has_actions

    def test_custom_conditions(self):
        automation = StageBillingAutomation(
            conditions=AutomationConditions(minimum_amount=Decimal("100")),
        )
        nodes = [make_node("A", amount="500", is_completed=True, completion_date=DONE)]

        assert plan_for(nodes, automation).invoice is not None

    def test_resolve_rules_from_policy(self):
        automation = resolve_automation_rules(
            auto_advance=False, send_notifications=False, approval_required=True,
        )

        assert automation.rules.auto_generate_invoices is True
        assert automation.rules.auto_send_reminders is False
        assert automation.rules.auto_advance_stages is False
        assert automation.rules.auto_approve_completions is False

    @pytest.mark.parametrize("field", ["minimum_amount", "maximum_delay_days"])
    def test_negative_conditions_rejected(self, field):
        value = Decimal("-1") if field == "minimum_amount" else -1

        with pytest.raises(InvalidArgumentError) as exc_info:
            AutomationConditions(**{field: value})

        assert exc_info.value.field == field
