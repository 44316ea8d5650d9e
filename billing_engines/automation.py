"""
Stage Billing Automation Planner.

Pure functions with deterministic behavior. No I/O.

Evaluates a case's automation rules against its billing graph and decides
which follow-on actions to take.  Execution against collaborators is the
job of ``billing_services.automation_runner.AutomationRunner``; this module
only decides.

Steps, in fixed order:
1. Consolidated invoice for completed-but-unbilled nodes whose summed
   amount exceeds ``conditions.minimum_amount``.
2. Reminders for pending nodes due within ``conditions.maximum_delay_days``.
3. Phase advance when every active node of the current phase is completed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

from billing_kernel.domain.billing_node import BillingNode
from billing_kernel.domain.case_phase import CasePhase
from billing_kernel.exceptions import InvalidArgumentError
from billing_kernel.logging_config import get_logger
from billing_kernel.utils.hashing import hash_node_set
from billing_kernel.utils.idempotency import generate_idempotency_key

from billing_engines.billing_graph import BillingGraphView

logger = get_logger("engines.automation")

PRODUCER = "stage_billing"


# ============================================================================
# Automation rule set
# ============================================================================


@dataclass(frozen=True)
class AutomationRules:
    auto_generate_invoices: bool = True
    auto_approve_completions: bool = False
    auto_send_reminders: bool = True
    auto_advance_stages: bool = False


@dataclass(frozen=True)
class AutomationTriggers:
    on_time_entry: bool = True
    on_document_upload: bool = True
    on_milestone_completion: bool = True
    on_payment_received: bool = True


@dataclass(frozen=True)
class AutomationConditions:
    minimum_amount: Decimal = Decimal("1000")
    maximum_delay_days: int = 30
    required_approvals: int = 1

    def __post_init__(self) -> None:
        if self.minimum_amount < 0:
            raise InvalidArgumentError("minimum_amount", "cannot be negative")
        if self.maximum_delay_days < 0:
            raise InvalidArgumentError("maximum_delay_days", "cannot be negative")


@dataclass(frozen=True)
class StageBillingAutomation:
    """Automation rules resolved for one case."""

    enabled: bool = True
    rules: AutomationRules = field(default_factory=AutomationRules)
    triggers: AutomationTriggers = field(default_factory=AutomationTriggers)
    conditions: AutomationConditions = field(default_factory=AutomationConditions)


def resolve_automation_rules(
    *,
    auto_advance: bool,
    send_notifications: bool,
    approval_required: bool,
    enabled: bool = True,
) -> StageBillingAutomation:
    """
    Map a case's billing policy flags to its automation rules.

    Invoices are always auto-generated; reminders follow
    ``send_notifications``; stage advance follows ``auto_advance``;
    completions are auto-approved unless approval is required.
    """
    return StageBillingAutomation(
        enabled=enabled,
        rules=AutomationRules(
            auto_generate_invoices=True,
            auto_approve_completions=not approval_required,
            auto_send_reminders=send_notifications,
            auto_advance_stages=auto_advance,
        ),
    )


# ============================================================================
# Plan
# ============================================================================


@dataclass(frozen=True)
class InvoicePlan:
    """A consolidated invoice to issue for unbilled completed nodes."""

    node_ids: tuple[str, ...]
    amount: Decimal
    idempotency_key: str


@dataclass(frozen=True)
class ReminderPlan:
    node_id: str
    due_date: date
    days_until_due: int


@dataclass(frozen=True)
class PhaseAdvancePlan:
    from_phase: CasePhase
    to_phase: CasePhase


@dataclass(frozen=True)
class AutomationPlan:
    """What automation decided to do for a case. ``skipped`` explains no-ops."""

    case_id: str
    enabled: bool
    invoice: InvoicePlan | None = None
    reminders: tuple[ReminderPlan, ...] = ()
    advance: PhaseAdvancePlan | None = None
    skipped: tuple[str, ...] = ()

    @property
    def has_actions(self) -> bool:
        return bool(self.invoice or self.reminders or self.advance)


def auto_invoice_key(case_id: str, node_ids: tuple[str, ...]) -> str:
    """Idempotency key of a consolidated automatic invoice."""
    return generate_idempotency_key(
        PRODUCER, "auto_invoice", f"{case_id}:{hash_node_set(node_ids)}"
    )


def _plan_invoice(
    view: BillingGraphView,
    automation: StageBillingAutomation,
    case_id: str,
    skipped: list[str],
) -> InvoicePlan | None:
    if not automation.rules.auto_generate_invoices:
        skipped.append("auto_generate_invoices_disabled")
        return None
    unbilled = view.unbilled_completed
    if not unbilled:
        skipped.append("no_unbilled_completed_nodes")
        return None
    total = sum((n.amount for n in unbilled), Decimal("0"))
    if total <= automation.conditions.minimum_amount:
        skipped.append("unbilled_amount_below_minimum")
        return None
    node_ids = tuple(n.id for n in unbilled)
    return InvoicePlan(
        node_ids=node_ids,
        amount=total,
        idempotency_key=auto_invoice_key(case_id, node_ids),
    )


def _plan_reminders(
    view: BillingGraphView,
    automation: StageBillingAutomation,
    today: date,
    skipped: list[str],
) -> tuple[ReminderPlan, ...]:
    if not automation.rules.auto_send_reminders:
        skipped.append("auto_send_reminders_disabled")
        return ()
    horizon = today + timedelta(days=automation.conditions.maximum_delay_days)
    reminders = [
        ReminderPlan(
            node_id=node.id,
            due_date=node.due_date,
            days_until_due=(node.due_date - today).days,
        )
        for node in view.pending
        if node.due_date is not None and today <= node.due_date <= horizon
    ]
    return tuple(reminders)


def _plan_advance(
    view: BillingGraphView,
    automation: StageBillingAutomation,
    current_phase: CasePhase,
    skipped: list[str],
) -> PhaseAdvancePlan | None:
    if not automation.rules.auto_advance_stages:
        skipped.append("auto_advance_stages_disabled")
        return None
    next_phase = current_phase.next_phase
    if next_phase is None:
        skipped.append("current_phase_terminal")
        return None
    in_phase = view.nodes_in_phase(current_phase)
    if not in_phase:
        skipped.append("no_nodes_in_current_phase")
        return None
    if not all(n.is_completed for n in in_phase):
        skipped.append("current_phase_incomplete")
        return None
    return PhaseAdvancePlan(from_phase=current_phase, to_phase=next_phase)


def plan_automation(
    case_id: str,
    view: BillingGraphView,
    automation: StageBillingAutomation,
    current_phase: CasePhase,
    today: date,
) -> AutomationPlan:
    """
    Decide the automation actions for a case.

    Pure function.  Each step is decided independently of the others.
    """
    if not automation.enabled:
        logger.info("automation_plan_disabled", extra={"case_id": case_id})
        return AutomationPlan(case_id=case_id, enabled=False)

    skipped: list[str] = []
    plan = AutomationPlan(
        case_id=case_id,
        enabled=True,
        invoice=_plan_invoice(view, automation, case_id, skipped),
        reminders=_plan_reminders(view, automation, today, skipped),
        advance=_plan_advance(view, automation, current_phase, skipped),
        skipped=tuple(skipped),
    )

    logger.info("automation_planned", extra={
        "case_id": case_id,
        "invoice_planned": plan.invoice is not None,
        "reminder_count": len(plan.reminders),
        "advance_planned": plan.advance is not None,
        "skipped": plan.skipped,
    })

    return plan


def nodes_for_plan(
    view: BillingGraphView,
    node_ids: tuple[str, ...],
) -> tuple[BillingNode, ...]:
    """Resolve planned node ids back to nodes of the view, in view order."""
    wanted = set(node_ids)
    return tuple(n for n in view.nodes if n.id in wanted)
