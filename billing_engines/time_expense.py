"""
Time entry and expense summaries.

Pure functions. No I/O.

Summaries of unbilled work feed the billing suggestions: a case with a
large amount of unbilled time or billable expenses gets a suggestion to
invoice it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Sequence

from billing_kernel.db.types import round_money
from billing_kernel.exceptions import InvalidArgumentError

DEFAULT_CURRENCY = "CNY"


@dataclass(frozen=True)
class TimeEntry:
    """Hours recorded by a team member against a case."""

    id: str
    case_id: str
    user_id: str
    hours: Decimal
    rate: Decimal
    amount: Decimal
    description: str = ""
    entry_date: date | None = None
    currency: str = DEFAULT_CURRENCY
    is_billed: bool = False

    def __post_init__(self) -> None:
        if self.hours < 0:
            raise InvalidArgumentError("hours", "must be non-negative")
        if self.amount < 0:
            raise InvalidArgumentError("amount", "must be non-negative")


@dataclass(frozen=True)
class Expense:
    """An out-of-pocket cost incurred on a case."""

    id: str
    case_id: str
    user_id: str
    amount: Decimal
    description: str = ""
    expense_date: date | None = None
    currency: str = DEFAULT_CURRENCY
    is_billable: bool = True
    is_billed: bool = False

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise InvalidArgumentError("amount", "must be non-negative")


@dataclass(frozen=True)
class TimeEntrySummary:
    total_hours: Decimal
    total_amount: Decimal
    average_rate: Decimal
    entry_count: int
    currency: str


@dataclass(frozen=True)
class ExpenseSummary:
    total_expenses: Decimal
    billable_expenses: Decimal
    non_billable_expenses: Decimal
    expense_count: int
    currency: str


def summarize_time_entries(entries: Sequence[TimeEntry]) -> TimeEntrySummary:
    """Total hours and amount; average rate is amount / hours (0 if no hours)."""
    if not entries:
        return TimeEntrySummary(
            total_hours=Decimal("0"),
            total_amount=Decimal("0.00"),
            average_rate=Decimal("0.00"),
            entry_count=0,
            currency=DEFAULT_CURRENCY,
        )

    total_hours = sum((e.hours for e in entries), Decimal("0"))
    total_amount = sum((e.amount for e in entries), Decimal("0"))
    average = total_amount / total_hours if total_hours > 0 else Decimal("0")

    return TimeEntrySummary(
        total_hours=total_hours,
        total_amount=round_money(total_amount),
        average_rate=round_money(average),
        entry_count=len(entries),
        currency=entries[0].currency or DEFAULT_CURRENCY,
    )


def summarize_expenses(expenses: Sequence[Expense]) -> ExpenseSummary:
    """Totals split into billable and non-billable."""
    if not expenses:
        zero = Decimal("0.00")
        return ExpenseSummary(
            total_expenses=zero,
            billable_expenses=zero,
            non_billable_expenses=zero,
            expense_count=0,
            currency=DEFAULT_CURRENCY,
        )

    billable = sum((e.amount for e in expenses if e.is_billable), Decimal("0"))
    non_billable = sum((e.amount for e in expenses if not e.is_billable), Decimal("0"))

    return ExpenseSummary(
        total_expenses=round_money(billable + non_billable),
        billable_expenses=round_money(billable),
        non_billable_expenses=round_money(non_billable),
        expense_count=len(expenses),
        currency=expenses[0].currency or DEFAULT_CURRENCY,
    )
