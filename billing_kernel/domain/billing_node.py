"""
Billing node value objects (``billing_kernel.domain.billing_node``).

A billing node is a billable milestone attached to a case phase.  Nodes
form a dependency graph scoped to one case: a node becomes ready once
every node it depends on is completed.

Lifecycle:
    created (bulk, per case) -> completed (monotonic, never reversed)
    Nodes are never hard-deleted; replacing a case's node set deactivates
    the previous nodes.

Invariants:
    - ``is_completed`` implies ``completion_date`` is set.
    - ``requirements``, ``dependencies`` and ``triggers`` are frozensets.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from billing_kernel.db.types import to_decimal
from billing_kernel.domain.case_phase import CasePhase
from billing_kernel.exceptions import InvalidArgumentError


def _parse_date(value: Any, field_name: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidArgumentError(field_name, f"not an ISO date: {value!r}") from None


def _parse_phase(value: Any) -> CasePhase:
    if isinstance(value, CasePhase):
        return value
    try:
        return CasePhase(str(value))
    except ValueError:
        raise InvalidArgumentError("phase", f"unknown case phase {value!r}") from None


@dataclass(frozen=True)
class CompletionCriteria:
    """
    What must hold before a node may be completed.

    ``time_threshold_days`` is the minimum number of days since the phase
    (or case) started.
    """

    time_threshold_days: int | None = None
    document_requirements: tuple[str, ...] = ()
    approval_requirements: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.time_threshold_days is not None and self.time_threshold_days < 0:
            raise InvalidArgumentError("time_threshold_days", "cannot be negative")
        object.__setattr__(
            self, "document_requirements", tuple(self.document_requirements)
        )
        object.__setattr__(
            self, "approval_requirements", tuple(self.approval_requirements)
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> CompletionCriteria:
        if not data:
            return cls()
        threshold = data.get("time_threshold_days", data.get("timeThreshold"))
        return cls(
            time_threshold_days=None if threshold is None else int(threshold),
            document_requirements=tuple(
                data.get("document_requirements", data.get("documentRequirements", ()))
            ),
            approval_requirements=tuple(
                data.get("approval_requirements", data.get("approvalRequirements", ()))
            ),
        )


@dataclass(frozen=True)
class BillingNode:
    """A billable milestone of a case."""

    id: str
    case_id: str
    phase: CasePhase
    order: int
    name: str
    amount: Decimal
    description: str = ""
    due_date: date | None = None
    requirements: frozenset[str] = frozenset()
    dependencies: frozenset[str] = frozenset()
    triggers: frozenset[str] = frozenset()
    criteria: CompletionCriteria = field(default_factory=CompletionCriteria)
    is_active: bool = True
    is_completed: bool = False
    completion_date: date | None = None
    is_billed: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            raise InvalidArgumentError("id", "billing node id is required")
        object.__setattr__(self, "requirements", frozenset(self.requirements))
        object.__setattr__(self, "dependencies", frozenset(self.dependencies))
        object.__setattr__(self, "triggers", frozenset(self.triggers))
        if self.is_completed and self.completion_date is None:
            raise InvalidArgumentError(
                "completion_date", f"completed node {self.id} has no completion date"
            )

    @property
    def is_pending(self) -> bool:
        return self.is_active and not self.is_completed

    def mark_completed(self, completion_date: date) -> BillingNode:
        """Return a completed copy of this node."""
        return replace(self, is_completed=True, completion_date=completion_date)

    @classmethod
    def from_dict(cls, case_id: str, data: Mapping[str, Any]) -> BillingNode:
        """
        Build a node from an API payload (snake_case or camelCase keys).

        Raises:
            InvalidArgumentError: If a field is missing or malformed.
        """
        if "id" not in data:
            raise InvalidArgumentError("id", "billing node id is required")
        order = data.get("order", 0)
        if isinstance(order, bool) or not isinstance(order, int):
            raise InvalidArgumentError("order", f"must be an integer, got {order!r}")
        return cls(
            id=str(data["id"]),
            case_id=case_id,
            phase=_parse_phase(data.get("phase")),
            order=order,
            name=str(data.get("name") or ""),
            amount=to_decimal(data.get("amount"), "amount"),
            description=str(data.get("description") or ""),
            due_date=_parse_date(data.get("due_date", data.get("dueDate")), "due_date"),
            requirements=frozenset(data.get("requirements", ())),
            dependencies=frozenset(data.get("dependencies", ())),
            triggers=frozenset(data.get("triggers", ())),
            criteria=CompletionCriteria.from_dict(
                data.get("criteria", data.get("completionCriteria"))
            ),
        )
