"""
Stage Billing Domain Models (``billing_modules.stage_billing.models``).

Responsibility
--------------
Frozen dataclass value objects for stage billing: cases, invoices, and the
result types returned by ``StageBillingService``.  Node, evidence,
time/expense and progress types are defined by the kernel and engines and
re-exported here so callers have one import surface.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.

Invariants enforced
-------------------
* All models are ``frozen=True`` (immutable after construction).
* All monetary fields use ``Decimal`` -- NEVER ``float``.
* Result objects carry a ``status`` enum and a machine-readable
  ``error_code``; callers never parse ``message``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum

from billing_engines.automation import (
    AutomationConditions,
    AutomationRules,
    AutomationTriggers,
    StageBillingAutomation,
)
from billing_engines.completion import CompletionData, CompletionValidation
from billing_engines.progress import (
    BillingSuggestion,
    BillingSuggestions,
    BillingSummary,
    DeadlineItem,
    OverdueItem,
    Priority,
    ReadyToBillItem,
)
from billing_engines.time_expense import Expense, TimeEntry
from billing_engines.validation import StageBillingValidation, ValidationIssue
from billing_kernel.domain.billing_node import BillingNode, CompletionCriteria
from billing_kernel.domain.case_phase import CasePhase
from billing_kernel.exceptions import InvalidArgumentError

__all__ = [
    "AutomationConditions",
    "AutomationError",
    "AutomationResult",
    "AutomationRules",
    "AutomationStepResult",
    "AutomationTriggers",
    "BillingNode",
    "BillingSuggestion",
    "BillingSuggestions",
    "BillingSummary",
    "CaseRecord",
    "CasePhase",
    "CompletionCriteria",
    "CompletionData",
    "CompletionValidation",
    "DeadlineItem",
    "Expense",
    "Invoice",
    "InvoiceAttempt",
    "InvoiceItem",
    "MilestoneCompletionResult",
    "MilestoneCompletionStatus",
    "OverdueItem",
    "Priority",
    "ReadyToBillItem",
    "StageBillingAutomation",
    "StageBillingProgress",
    "StageBillingSystemResult",
    "StageBillingSystemStatus",
    "StageBillingValidation",
    "TimeEntry",
    "ValidationIssue",
]


# =============================================================================
# Case and invoice records
# =============================================================================


@dataclass(frozen=True)
class CaseRecord:
    """
    The slice of a legal case stage billing needs.

    ``phase_started_on`` is when ``current_phase`` began; time thresholds
    of nodes in the current phase count from it.
    """

    id: str
    client_id: str
    attorney_id: str
    case_type: str
    current_phase: CasePhase
    opened_on: date
    phase_started_on: date
    total_value: Decimal | None = None
    currency: str = "CNY"

    def phase_start_for(self, phase: CasePhase) -> date:
        """Start date a node of ``phase`` counts its time threshold from."""
        if phase == self.current_phase:
            return self.phase_started_on
        return self.opened_on


@dataclass(frozen=True)
class InvoiceItem:
    """One charge on an invoice."""

    description: str
    amount: Decimal
    user_id: str
    node_id: str | None = None

    def __post_init__(self):
        if self.amount < 0:
            raise InvalidArgumentError("amount", "invoice item amount must be non-negative")


@dataclass(frozen=True)
class Invoice:
    """An issued invoice."""

    id: str
    case_id: str
    client_id: str
    items: tuple[InvoiceItem, ...]
    total: Decimal
    currency: str
    idempotency_key: str
    issued_on: date | None = None

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(item.node_id for item in self.items if item.node_id)


# =============================================================================
# Automation results
# =============================================================================


@dataclass(frozen=True)
class AutomationError:
    """A failed automation step or action; never aborts the other steps."""

    step: str
    code: str
    message: str
    subject: str | None = None


@dataclass(frozen=True)
class AutomationStepResult:
    """Outcome of one automation step that ran."""

    step: str
    invoice: Invoice | None = None
    reminders_sent: tuple[str, ...] = ()
    advanced_to: CasePhase | None = None
    skipped_reason: str | None = None


@dataclass(frozen=True)
class AutomationResult:
    """``processed`` names the steps that ran, in execution order."""

    case_id: str
    processed: tuple[str, ...] = ()
    results: tuple[AutomationStepResult, ...] = ()
    errors: tuple[AutomationError, ...] = ()

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


# =============================================================================
# Service results
# =============================================================================


class StageBillingSystemStatus(str, Enum):
    CREATED = "created"
    INVALID = "invalid"
    DEPENDENCY_CYCLE = "dependency_cycle"
    CASE_NOT_FOUND = "case_not_found"
    PERSISTENCE_FAILED = "persistence_failed"


@dataclass(frozen=True)
class StageBillingSystemResult:
    """Result of creating a case's stage billing system."""

    status: StageBillingSystemStatus
    case_id: str
    validation: StageBillingValidation
    nodes: tuple[BillingNode, ...] = ()
    automation: StageBillingAutomation | None = None
    error_code: str | None = None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status == StageBillingSystemStatus.CREATED


class MilestoneCompletionStatus(str, Enum):
    COMPLETED = "completed"
    INVOICE_FAILED = "invoice_failed"
    NOT_FOUND = "not_found"
    AMBIGUOUS_NODE = "ambiguous_node"
    ALREADY_COMPLETED = "already_completed"
    VALIDATION_FAILED = "validation_failed"


@dataclass(frozen=True)
class InvoiceAttempt:
    """Secondary outcome of a completion: the requested milestone invoice."""

    invoice: Invoice | None = None
    error: AutomationError | None = None

    @property
    def succeeded(self) -> bool:
        return self.invoice is not None


@dataclass(frozen=True)
class MilestoneCompletionResult:
    """
    Result of completing a milestone.

    ``completion`` is the fact of record; ``invoice_attempt`` is the
    best-effort consequence.  INVOICE_FAILED means the completion was
    committed but the explicitly requested invoice was not issued.
    """

    status: MilestoneCompletionStatus
    node_id: str
    completion: BillingNode | None = None
    validation: CompletionValidation | None = None
    invoice_attempt: InvoiceAttempt | None = None
    next_nodes: tuple[BillingNode, ...] = ()
    automation: AutomationResult | None = None
    error_code: str | None = None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status == MilestoneCompletionStatus.COMPLETED

    @property
    def completion_committed(self) -> bool:
        return self.status in (
            MilestoneCompletionStatus.COMPLETED,
            MilestoneCompletionStatus.INVOICE_FAILED,
        )

    @property
    def invoice(self) -> Invoice | None:
        return self.invoice_attempt.invoice if self.invoice_attempt else None


@dataclass(frozen=True)
class StageBillingProgress:
    """Readiness partitions, progress and billing summary of a case."""

    case_id: str
    current_phase: CasePhase
    completed_nodes: tuple[BillingNode, ...]
    pending_nodes: tuple[BillingNode, ...]
    ready_nodes: tuple[BillingNode, ...]
    blocked_nodes: tuple[BillingNode, ...]
    overall_progress: int
    phase_progress: dict[CasePhase, int]
    next_milestone: BillingNode | None
    billing_summary: BillingSummary
