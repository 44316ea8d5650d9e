"""
Billing Progress and Suggestions Engine.

Pure functions with deterministic behavior. No I/O.

Turns a billing graph plus ledger totals into the billing summary and the
billing suggestions shown to the responsible lawyer: what can be billed
now, which deadlines are coming up, what is overdue, and whether unbilled
time or expenses have piled up.

Dates are passed in; nothing here reads the clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum

from billing_kernel.db.types import round_money
from billing_kernel.domain.billing_node import BillingNode
from billing_kernel.logging_config import get_logger

from billing_engines.billing_graph import BillingGraphView
from billing_engines.time_expense import ExpenseSummary, TimeEntrySummary

logger = get_logger("engines.progress")


# ============================================================================
# Thresholds
# ============================================================================

UNBILLED_HOURS_THRESHOLD = Decimal("10")
UNBILLED_EXPENSES_THRESHOLD = Decimal("5000")
HIGH_VALUE_NODE_THRESHOLD = Decimal("50000")
LATE_STAGE_PROGRESS = 75
DEADLINE_LOOKAHEAD_DAYS = 7
URGENT_DEADLINE_DAYS = 3


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================================
# Value objects
# ============================================================================


@dataclass(frozen=True)
class UpcomingPayment:
    node_id: str
    due_date: date
    amount: Decimal


@dataclass(frozen=True)
class BillingSummary:
    """
    Money view of a case's billing.

    ``total_billed`` is the sum of completed node amounts;
    ``outstanding_balance`` is ``total_billed - total_paid``.
    """

    total_billed: Decimal
    total_paid: Decimal
    outstanding_balance: Decimal
    upcoming_payments: tuple[UpcomingPayment, ...] = ()


@dataclass(frozen=True)
class BillingSuggestion:
    suggestion_type: str
    message: str
    priority: Priority


@dataclass(frozen=True)
class ReadyToBillItem:
    node: BillingNode
    reason: str
    priority: Priority


@dataclass(frozen=True)
class DeadlineItem:
    node: BillingNode
    days_until_due: int
    priority: Priority


@dataclass(frozen=True)
class OverdueItem:
    node: BillingNode
    days_overdue: int
    priority: Priority = Priority.CRITICAL


@dataclass(frozen=True)
class BillingSuggestions:
    case_id: str
    suggestions: tuple[BillingSuggestion, ...]
    ready_to_bill: tuple[ReadyToBillItem, ...]
    upcoming_deadlines: tuple[DeadlineItem, ...]
    overdue_items: tuple[OverdueItem, ...]


# ============================================================================
# Operations
# ============================================================================


def summarize_billing(view: BillingGraphView, total_paid: Decimal) -> BillingSummary:
    """Billed, paid and outstanding totals plus upcoming payments."""
    total_billed = round_money(sum((n.amount for n in view.completed), Decimal("0")))
    total_paid = round_money(total_paid)
    dated = [n for n in view.pending if n.due_date is not None]
    upcoming = tuple(
        UpcomingPayment(node_id=n.id, due_date=n.due_date, amount=n.amount)
        for n in sorted(dated, key=lambda n: (n.due_date, n.order, n.id))
    )
    return BillingSummary(
        total_billed=total_billed,
        total_paid=total_paid,
        outstanding_balance=total_billed - total_paid,
        upcoming_payments=upcoming,
    )


def calculate_priority(node: BillingNode, overall_progress: int, today: date) -> Priority:
    """Overdue nodes are critical, then high-value, then late-stage cases."""
    if node.due_date is not None and node.due_date < today:
        return Priority.CRITICAL
    if node.amount > HIGH_VALUE_NODE_THRESHOLD:
        return Priority.HIGH
    if overall_progress > LATE_STAGE_PROGRESS:
        return Priority.MEDIUM
    return Priority.LOW


def build_billing_suggestions(
    case_id: str,
    view: BillingGraphView,
    today: date,
    grace_period_days: int,
    unbilled_time: TimeEntrySummary,
    unbilled_expenses: ExpenseSummary,
) -> BillingSuggestions:
    """
    Billing suggestions for a case.

    - ready_to_bill: ready nodes with a positive amount whose billing
      window (``due_date - grace_period_days``) has opened, or that have
      no due date.
    - upcoming_deadlines: pending nodes due within the next
      ``DEADLINE_LOOKAHEAD_DAYS`` days (today included).
    - overdue_items: pending nodes whose due date has passed.
    """
    grace = timedelta(days=grace_period_days)
    progress = view.overall_progress

    ready_to_bill: list[ReadyToBillItem] = []
    for node in view.ready:
        if node.amount <= 0:
            continue
        if node.due_date is None:
            reason = "All dependencies met; no due date"
        elif today >= node.due_date - grace:
            reason = "All dependencies met and billing window open"
        else:
            continue
        ready_to_bill.append(ReadyToBillItem(
            node=node,
            reason=reason,
            priority=calculate_priority(node, progress, today),
        ))

    upcoming: list[DeadlineItem] = []
    overdue: list[OverdueItem] = []
    for node in view.pending:
        if node.due_date is None:
            continue
        days_until_due = (node.due_date - today).days
        if days_until_due < 0:
            overdue.append(OverdueItem(node=node, days_overdue=-days_until_due))
        elif days_until_due <= DEADLINE_LOOKAHEAD_DAYS:
            upcoming.append(DeadlineItem(
                node=node,
                days_until_due=days_until_due,
                priority=(
                    Priority.HIGH if days_until_due <= URGENT_DEADLINE_DAYS
                    else Priority.MEDIUM
                ),
            ))

    suggestions: list[BillingSuggestion] = []
    if unbilled_time.total_hours > UNBILLED_HOURS_THRESHOLD:
        suggestions.append(BillingSuggestion(
            suggestion_type="time_entries",
            message=(
                f"Consider billing {unbilled_time.total_hours} hours of unbilled time"
            ),
            priority=Priority.MEDIUM,
        ))
    if unbilled_expenses.billable_expenses > UNBILLED_EXPENSES_THRESHOLD:
        suggestions.append(BillingSuggestion(
            suggestion_type="expenses",
            message=(
                f"Consider billing {unbilled_expenses.billable_expenses} "
                f"{unbilled_expenses.currency} in unbilled expenses"
            ),
            priority=Priority.HIGH,
        ))

    result = BillingSuggestions(
        case_id=case_id,
        suggestions=tuple(suggestions),
        ready_to_bill=tuple(ready_to_bill),
        upcoming_deadlines=tuple(sorted(upcoming, key=lambda d: (d.days_until_due, d.node.id))),
        overdue_items=tuple(sorted(overdue, key=lambda o: (-o.days_overdue, o.node.id))),
    )

    logger.info("billing_suggestions_built", extra={
        "case_id": case_id,
        "suggestion_count": len(result.suggestions),
        "ready_to_bill_count": len(result.ready_to_bill),
        "upcoming_count": len(result.upcoming_deadlines),
        "overdue_count": len(result.overdue_items),
    })

    return result
