"""
Stage billing collaborator protocols.

The stage billing service never talks to a database, an invoicing system
or a messaging channel directly.  It depends on the protocols below and
receives implementations at construction time.

Implementations shipped with the package:
    CaseStore       -> billing_modules.stage_billing.store.SqlCaseStore
    InvoiceIssuer   -> billing_modules.stage_billing.store.SqlInvoiceIssuer
    ComplianceRules -> billing_config.schema.ComplianceRuleSet
    NotificationSink has no shipped implementation; callers plug in their
    own channel.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

from billing_kernel.domain.billing_node import BillingNode
from billing_kernel.domain.case_phase import CasePhase
from billing_kernel.domain.compliance_rules import ComplianceRules

if TYPE_CHECKING:
    from billing_modules.stage_billing.config import StageBillingConfiguration
    from billing_modules.stage_billing.models import (
        CaseRecord,
        CompletionData,
        Expense,
        Invoice,
        InvoiceItem,
        TimeEntry,
    )

__all__ = [
    "CaseStore",
    "ComplianceRules",
    "InvoiceIssuer",
    "NotificationSink",
]


@runtime_checkable
class CaseStore(Protocol):
    """Persistence of cases, billing nodes and per-case configuration.

    Every read of an unknown case or node raises the NotFound taxonomy
    (``CaseNotFoundError`` / ``BillingNodeNotFoundError``).
    """

    def load_case(self, case_id: str) -> CaseRecord:
        ...

    def load_nodes(self, case_id: str) -> list[BillingNode]:
        """Active billing nodes of a case, ordered by (order, id)."""
        ...

    def load_node(self, node_id: str, case_id: str | None = None) -> BillingNode:
        """The active node ``node_id``, scoped to ``case_id`` when given.

        Raises:
            AmbiguousNodeError: No case was given and the id is active in
                more than one case.
        """
        ...

    def persist_nodes(self, case_id: str, nodes: Sequence[BillingNode]) -> list[BillingNode]:
        ...

    def deactivate_nodes(self, case_id: str) -> int:
        """Soft-delete the active nodes of a case; returns how many."""
        ...

    def replace_billing_system(
        self,
        case_id: str,
        nodes: Sequence[BillingNode],
        configuration: StageBillingConfiguration,
    ) -> list[BillingNode]:
        """Deactivate the old node set, persist ``nodes`` and store
        ``configuration`` in a single transaction."""
        ...

    def persist_node_completion(
        self, case_id: str, node_id: str, completion: CompletionData,
    ) -> BillingNode:
        """Mark a node completed if and only if it is not completed yet.

        Raises:
            AlreadyCompletedError: Another writer completed the node first.
        """
        ...

    def mark_nodes_billed(
        self, case_id: str, node_ids: Sequence[str], *, billed: bool = True,
    ) -> None:
        """Set the billed flag; ``billed=False`` releases a reservation."""
        ...

    def advance_phase(
        self, case_id: str, from_phase: CasePhase, started_on: date,
    ) -> CaseRecord:
        """Move the case from ``from_phase`` to the next phase.

        A case already past ``from_phase`` is returned unchanged.
        """
        ...

    def store_configuration(
        self, case_id: str, configuration: StageBillingConfiguration,
    ) -> None:
        ...

    def load_configuration(self, case_id: str) -> StageBillingConfiguration | None:
        ...

    def total_paid(self, case_id: str) -> Decimal:
        ...

    def load_unbilled_time_entries(self, case_id: str) -> list[TimeEntry]:
        ...

    def load_unbilled_expenses(self, case_id: str) -> list[Expense]:
        ...


@runtime_checkable
class InvoiceIssuer(Protocol):
    """Creates invoices from itemized charges.

    ``issue`` is idempotent on ``idempotency_key``: repeating a key returns
    the invoice created the first time.
    """

    def issue(
        self,
        case_id: str,
        client_id: str,
        items: Sequence[InvoiceItem],
        *,
        idempotency_key: str,
        currency: str = "CNY",
        issued_on: date | None = None,
    ) -> Invoice:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Fire-and-forget deadline reminders."""

    def remind(self, user_id: str, node_id: str, due_date: date) -> None:
        ...
