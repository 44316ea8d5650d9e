"""
Module: billing_modules.stage_billing.orm
Responsibility: SQLAlchemy ORM persistence models for stage billing.  Maps
    the frozen dataclass DTOs from stage_billing.models to relational tables
    for cases, billing nodes, per-case configuration, invoices and invoice
    lines, payments, time entries and expenses.

Architecture position: Modules > Stage Billing > ORM.  Inherits from
    TrackedBase (billing_kernel.db.base).  Only the store in this package
    touches these models; the service sees DTOs.

Invariants enforced:
    - All monetary fields use Decimal (Numeric(38,9)) -- NEVER float.
    - Enum fields stored as String(50) for portability and readability.
    - Billing nodes are never hard-deleted: replacing a case's node set
      flips is_active.  A row id surrogate keeps deactivated rows apart
      from re-created nodes that reuse a node id.
    - Invoice idempotency keys are unique (uq_sb_invoice_idempotency_key).

Failure modes:
    - IntegrityError on a duplicate invoice idempotency key (caught by
      SqlInvoiceIssuer, which then returns the existing invoice).
    - IntegrityError on FK violation for nodes referencing unknown cases.

Audit relevance:
    - completion_date, completion_documents, approver_id and completed_by_id
      record who completed a milestone, when and on what evidence.
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.db.types import round_money


# =============================================================================
# LegalCaseModel
# =============================================================================

class LegalCaseModel(TrackedBase):
    """
    ORM model for the case fields stage billing reads and writes.

    Maps to: billing_modules.stage_billing.models.CaseRecord.
    """

    __tablename__ = "legal_cases"

    __table_args__ = (
        Index("idx_legal_case_client", "client_id"),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(100))
    attorney_id: Mapped[str] = mapped_column(String(100))
    case_type: Mapped[str] = mapped_column(String(100), default="general")

    # CasePhase stored as string
    current_phase: Mapped[str] = mapped_column(String(50))
    opened_on: Mapped[date] = mapped_column(Date)
    phase_started_on: Mapped[date] = mapped_column(Date)

    total_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="CNY")

    def to_dto(self):
        """Convert ORM model to frozen CaseRecord DTO."""
        from billing_modules.stage_billing.models import CasePhase, CaseRecord
        return CaseRecord(
            id=self.id,
            client_id=self.client_id,
            attorney_id=self.attorney_id,
            case_type=self.case_type,
            current_phase=CasePhase(self.current_phase),
            opened_on=self.opened_on,
            phase_started_on=self.phase_started_on,
            total_value=(
                round_money(self.total_value) if self.total_value is not None else None
            ),
            currency=self.currency,
        )

    @classmethod
    def from_dto(cls, dto) -> "LegalCaseModel":
        """Create ORM model from CaseRecord DTO."""
        return cls(
            id=dto.id,
            client_id=dto.client_id,
            attorney_id=dto.attorney_id,
            case_type=dto.case_type,
            current_phase=dto.current_phase.value,
            opened_on=dto.opened_on,
            phase_started_on=dto.phase_started_on,
            total_value=dto.total_value,
            currency=dto.currency,
        )

    def __repr__(self) -> str:
        return f"<LegalCaseModel {self.id} phase={self.current_phase}>"


# =============================================================================
# BillingNodeModel
# =============================================================================

class BillingNodeModel(TrackedBase):
    """
    ORM model for a billing node.

    Maps to: billing_kernel.domain.billing_node.BillingNode.

    Guarantees:
        - At most one active row per (case_id, node_id): a new node set is
          persisted in the same transaction that deactivates the previous
          one.  Node ids are only unique within a case.
        - is_completed never goes back to False.
    """

    __tablename__ = "stage_billing_nodes"

    __table_args__ = (
        Index("idx_sb_node_case_active", "case_id", "is_active"),
        Index("idx_sb_node_case_node", "case_id", "node_id"),
        Index("idx_sb_node_due_date", "due_date"),
    )

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(String(100))
    case_id: Mapped[str] = mapped_column(ForeignKey("legal_cases.id"))

    # CasePhase stored as string
    phase: Mapped[str] = mapped_column(String(50))
    order: Mapped[int] = mapped_column("sort_order", Integer, default=0)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")
    amount: Mapped[Decimal] = mapped_column()
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Sets stored as sorted JSON arrays
    requirements: Mapped[list] = mapped_column(JSON, default=list)
    dependencies: Mapped[list] = mapped_column(JSON, default=list)
    triggers: Mapped[list] = mapped_column(JSON, default=list)

    # Completion criteria
    time_threshold_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    document_requirements: Mapped[list] = mapped_column(JSON, default=list)
    approval_requirements: Mapped[list] = mapped_column(JSON, default=list)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_billed: Mapped[bool] = mapped_column(Boolean, default=False)

    # Completion evidence
    completion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    completion_documents: Mapped[list | None] = mapped_column(JSON, nullable=True)
    approver_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    completed_by_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def to_dto(self):
        """Convert ORM model to frozen BillingNode DTO."""
        from billing_modules.stage_billing.models import (
            BillingNode,
            CasePhase,
            CompletionCriteria,
        )
        return BillingNode(
            id=self.node_id,
            case_id=self.case_id,
            phase=CasePhase(self.phase),
            order=self.order,
            name=self.name,
            amount=round_money(self.amount),
            description=self.description or "",
            due_date=self.due_date,
            requirements=frozenset(self.requirements or ()),
            dependencies=frozenset(self.dependencies or ()),
            triggers=frozenset(self.triggers or ()),
            criteria=CompletionCriteria(
                time_threshold_days=self.time_threshold_days,
                document_requirements=tuple(self.document_requirements or ()),
                approval_requirements=tuple(self.approval_requirements or ()),
            ),
            is_active=self.is_active,
            is_completed=self.is_completed,
            completion_date=self.completion_date,
            is_billed=self.is_billed,
        )

    @classmethod
    def from_dto(cls, dto) -> "BillingNodeModel":
        """Create ORM model from BillingNode DTO."""
        return cls(
            node_id=dto.id,
            case_id=dto.case_id,
            phase=dto.phase.value,
            order=dto.order,
            name=dto.name,
            description=dto.description,
            amount=dto.amount,
            due_date=dto.due_date,
            requirements=sorted(dto.requirements),
            dependencies=sorted(dto.dependencies),
            triggers=sorted(dto.triggers),
            time_threshold_days=dto.criteria.time_threshold_days,
            document_requirements=list(dto.criteria.document_requirements),
            approval_requirements=list(dto.criteria.approval_requirements),
            is_active=dto.is_active,
            is_completed=dto.is_completed,
            completion_date=dto.completion_date,
            is_billed=dto.is_billed,
        )

    def __repr__(self) -> str:
        return (
            f"<BillingNodeModel {self.node_id} case={self.case_id} "
            f"completed={self.is_completed}>"
        )


# =============================================================================
# StageBillingConfigurationModel
# =============================================================================

class StageBillingConfigurationModel(TrackedBase):
    """
    ORM model for the active stage billing configuration of a case.

    Maps to: billing_modules.stage_billing.config.StageBillingConfiguration.
    """

    __tablename__ = "stage_billing_configurations"

    case_id: Mapped[str] = mapped_column(
        ForeignKey("legal_cases.id"), primary_key=True,
    )
    auto_advance: Mapped[bool] = mapped_column(Boolean, default=True)
    require_completion: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_partial_billing: Mapped[bool] = mapped_column(Boolean, default=False)
    send_notifications: Mapped[bool] = mapped_column(Boolean, default=True)
    approval_required: Mapped[bool] = mapped_column(Boolean, default=False)
    grace_period_days: Mapped[int] = mapped_column(Integer, default=7)
    currency: Mapped[str] = mapped_column(String(3), default="CNY")

    def to_dto(self):
        """Convert ORM model to frozen StageBillingConfiguration."""
        from billing_modules.stage_billing.config import StageBillingConfiguration
        return StageBillingConfiguration(
            auto_advance=self.auto_advance,
            require_completion=self.require_completion,
            allow_partial_billing=self.allow_partial_billing,
            send_notifications=self.send_notifications,
            approval_required=self.approval_required,
            grace_period_days=self.grace_period_days,
            currency=self.currency,
        )

    def apply(self, configuration) -> None:
        """Overwrite the stored policy with ``configuration``."""
        for key, value in configuration.to_dict().items():
            setattr(self, key, value)

    @classmethod
    def from_dto(cls, case_id: str, dto) -> "StageBillingConfigurationModel":
        model = cls(case_id=case_id)
        model.apply(dto)
        return model

    def __repr__(self) -> str:
        return f"<StageBillingConfigurationModel case={self.case_id}>"


# =============================================================================
# InvoiceModel / InvoiceLineModel
# =============================================================================

class InvoiceModel(TrackedBase):
    """
    ORM model for an issued invoice.

    Maps to: billing_modules.stage_billing.models.Invoice.

    Guarantees:
        - idempotency_key is globally unique (uq_sb_invoice_idempotency_key).
        - total equals the sum of line amounts (issuer-enforced).
    """

    __tablename__ = "stage_billing_invoices"

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_sb_invoice_idempotency_key"),
        Index("idx_sb_invoice_case", "case_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    case_id: Mapped[str] = mapped_column(ForeignKey("legal_cases.id"))
    client_id: Mapped[str] = mapped_column(String(100))
    total: Mapped[Decimal] = mapped_column()
    currency: Mapped[str] = mapped_column(String(3), default="CNY")
    idempotency_key: Mapped[str] = mapped_column(String(300))
    issued_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    lines: Mapped[list["InvoiceLineModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceLineModel.line_number",
    )

    def to_dto(self):
        """Convert ORM model to frozen Invoice DTO."""
        from billing_modules.stage_billing.models import Invoice
        return Invoice(
            id=self.id,
            case_id=self.case_id,
            client_id=self.client_id,
            items=tuple(line.to_dto() for line in self.lines),
            total=round_money(self.total),
            currency=self.currency,
            idempotency_key=self.idempotency_key,
            issued_on=self.issued_on,
        )

    def __repr__(self) -> str:
        return f"<InvoiceModel {self.id} case={self.case_id} total={self.total}>"


class InvoiceLineModel(TrackedBase):
    """
    ORM model for one invoice line.

    Maps to: billing_modules.stage_billing.models.InvoiceItem.
    """

    __tablename__ = "stage_billing_invoice_lines"

    __table_args__ = (
        Index("idx_sb_invoice_line_invoice", "invoice_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(ForeignKey("stage_billing_invoices.id"))
    line_number: Mapped[int] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(String(500))
    amount: Mapped[Decimal] = mapped_column()
    user_id: Mapped[str] = mapped_column(String(100))
    node_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    invoice: Mapped["InvoiceModel"] = relationship(back_populates="lines")

    def to_dto(self):
        from billing_modules.stage_billing.models import InvoiceItem
        return InvoiceItem(
            description=self.description,
            amount=round_money(self.amount),
            user_id=self.user_id,
            node_id=self.node_id,
        )

    @classmethod
    def from_dto(cls, line_number: int, dto) -> "InvoiceLineModel":
        return cls(
            line_number=line_number,
            description=dto.description,
            amount=dto.amount,
            user_id=dto.user_id,
            node_id=dto.node_id,
        )

    def __repr__(self) -> str:
        return f"<InvoiceLineModel {self.invoice_id}#{self.line_number}>"


# =============================================================================
# Ledger: payments, time entries, expenses
# =============================================================================

class CasePaymentModel(TrackedBase):
    """Payment received from the client of a case."""

    __tablename__ = "case_payments"

    __table_args__ = (
        Index("idx_case_payment_case", "case_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(ForeignKey("legal_cases.id"))
    amount: Mapped[Decimal] = mapped_column()
    currency: Mapped[str] = mapped_column(String(3), default="CNY")
    received_on: Mapped[date] = mapped_column(Date)

    def __repr__(self) -> str:
        return f"<CasePaymentModel case={self.case_id} amount={self.amount}>"


class TimeEntryModel(TrackedBase):
    """
    ORM model for recorded time.

    Maps to: billing_engines.time_expense.TimeEntry.
    """

    __tablename__ = "case_time_entries"

    __table_args__ = (
        Index("idx_case_time_entry_case_billed", "case_id", "is_billed"),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    case_id: Mapped[str] = mapped_column(ForeignKey("legal_cases.id"))
    user_id: Mapped[str] = mapped_column(String(100))
    hours: Mapped[Decimal] = mapped_column()
    rate: Mapped[Decimal] = mapped_column()
    amount: Mapped[Decimal] = mapped_column()
    description: Mapped[str] = mapped_column(Text, default="")
    entry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="CNY")
    is_billed: Mapped[bool] = mapped_column(Boolean, default=False)

    def to_dto(self):
        from billing_modules.stage_billing.models import TimeEntry
        return TimeEntry(
            id=self.id,
            case_id=self.case_id,
            user_id=self.user_id,
            hours=self.hours,
            rate=round_money(self.rate),
            amount=round_money(self.amount),
            description=self.description or "",
            entry_date=self.entry_date,
            currency=self.currency,
            is_billed=self.is_billed,
        )

    @classmethod
    def from_dto(cls, dto) -> "TimeEntryModel":
        return cls(
            id=dto.id,
            case_id=dto.case_id,
            user_id=dto.user_id,
            hours=dto.hours,
            rate=dto.rate,
            amount=dto.amount,
            description=dto.description,
            entry_date=dto.entry_date,
            currency=dto.currency,
            is_billed=dto.is_billed,
        )

    def __repr__(self) -> str:
        return f"<TimeEntryModel {self.id} hours={self.hours}>"


class ExpenseModel(TrackedBase):
    """
    ORM model for a case expense.

    Maps to: billing_engines.time_expense.Expense.
    """

    __tablename__ = "case_expenses"

    __table_args__ = (
        Index("idx_case_expense_case_billed", "case_id", "is_billed"),
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    case_id: Mapped[str] = mapped_column(ForeignKey("legal_cases.id"))
    user_id: Mapped[str] = mapped_column(String(100))
    amount: Mapped[Decimal] = mapped_column()
    description: Mapped[str] = mapped_column(Text, default="")
    expense_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="CNY")
    is_billable: Mapped[bool] = mapped_column(Boolean, default=True)
    is_billed: Mapped[bool] = mapped_column(Boolean, default=False)

    def to_dto(self):
        from billing_modules.stage_billing.models import Expense
        return Expense(
            id=self.id,
            case_id=self.case_id,
            user_id=self.user_id,
            amount=round_money(self.amount),
            description=self.description or "",
            expense_date=self.expense_date,
            currency=self.currency,
            is_billable=self.is_billable,
            is_billed=self.is_billed,
        )

    @classmethod
    def from_dto(cls, dto) -> "ExpenseModel":
        return cls(
            id=dto.id,
            case_id=dto.case_id,
            user_id=dto.user_id,
            amount=dto.amount,
            description=dto.description,
            expense_date=dto.expense_date,
            currency=dto.currency,
            is_billable=dto.is_billable,
            is_billed=dto.is_billed,
        )

    def __repr__(self) -> str:
        return f"<ExpenseModel {self.id} amount={self.amount}>"
