"""
SQL reference implementations of the stage billing collaborators.

SqlCaseStore persists cases, billing nodes, configuration and the
payment/time/expense ledger; SqlInvoiceIssuer persists invoices.  Both
commit per mutation: a milestone completion is durable before any
invoice is attempted for it.

Concurrency:
    - persist_node_completion is a compare-and-set: the UPDATE only
      matches a row that is active and not yet completed.  A writer that
      matches zero rows lost the race and gets AlreadyCompletedError.
    - advance_phase matches on the expected current phase, so two
      automation runs cannot advance a case twice.
    - SqlInvoiceIssuer relies on the unique idempotency key.  A concurrent
      insert of the same key surfaces as IntegrityError, after which the
      existing invoice is returned.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Sequence
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.db.types import round_money
from billing_kernel.domain.billing_node import BillingNode
from billing_kernel.domain.case_phase import CasePhase
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    AlreadyCompletedError,
    AmbiguousNodeError,
    BillingNodeNotFoundError,
    CaseNotFoundError,
    InvalidArgumentError,
)
from billing_kernel.logging_config import get_logger
from billing_modules.stage_billing.config import StageBillingConfiguration
from billing_modules.stage_billing.models import (
    CaseRecord,
    CompletionData,
    Expense,
    Invoice,
    InvoiceItem,
    TimeEntry,
)
from billing_modules.stage_billing.orm import (
    BillingNodeModel,
    CasePaymentModel,
    ExpenseModel,
    InvoiceLineModel,
    InvoiceModel,
    LegalCaseModel,
    StageBillingConfigurationModel,
    TimeEntryModel,
)

logger = get_logger("modules.stage_billing.store")


class SqlCaseStore:
    """CaseStore backed by a SQLAlchemy session."""

    def __init__(self, session: Session):
        self._session = session

    # =========================================================================
    # Cases
    # =========================================================================

    def add_case(self, case: CaseRecord) -> CaseRecord:
        """Register a case. Cases are owned upstream; this is the import path."""
        self._session.add(LegalCaseModel.from_dto(case))
        self._session.commit()
        logger.info("case_registered", extra={
            "case_id": case.id,
            "current_phase": case.current_phase.value,
        })
        return case

    def load_case(self, case_id: str) -> CaseRecord:
        return self._case_row(case_id).to_dto()

    def advance_phase(
        self, case_id: str, from_phase: CasePhase, started_on: date,
    ) -> CaseRecord:
        to_phase = from_phase.next_phase
        if to_phase is None:
            raise InvalidArgumentError(
                "from_phase", f"{from_phase.value} is the terminal phase",
            )

        result = self._session.execute(
            update(LegalCaseModel)
            .where(
                LegalCaseModel.id == case_id,
                LegalCaseModel.current_phase == from_phase.value,
            )
            .values(current_phase=to_phase.value, phase_started_on=started_on)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._session.rollback()
            case = self.load_case(case_id)
            logger.info("phase_advance_skipped", extra={
                "case_id": case_id,
                "expected_phase": from_phase.value,
                "current_phase": case.current_phase.value,
            })
            return case

        self._session.commit()
        logger.info("phase_advanced", extra={
            "case_id": case_id,
            "from_phase": from_phase.value,
            "to_phase": to_phase.value,
        })
        return self.load_case(case_id)

    def _case_row(self, case_id: str) -> LegalCaseModel:
        row = self._session.get(LegalCaseModel, case_id, populate_existing=True)
        if row is None:
            raise CaseNotFoundError(case_id)
        return row

    # =========================================================================
    # Billing nodes
    # =========================================================================

    def load_nodes(self, case_id: str) -> list[BillingNode]:
        self._case_row(case_id)
        rows = self._session.execute(
            select(BillingNodeModel)
            .where(
                BillingNodeModel.case_id == case_id,
                BillingNodeModel.is_active.is_(True),
            )
            .order_by(BillingNodeModel.order, BillingNodeModel.node_id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def load_node(self, node_id: str, case_id: str | None = None) -> BillingNode:
        return self._active_node_row(node_id, case_id).to_dto()

    def persist_nodes(
        self, case_id: str, nodes: Sequence[BillingNode],
    ) -> list[BillingNode]:
        self._add_nodes(case_id, nodes)
        self._session.commit()
        logger.info("billing_nodes_persisted", extra={
            "case_id": case_id,
            "node_count": len(nodes),
        })
        return self.load_nodes(case_id)

    def _add_nodes(self, case_id: str, nodes: Sequence[BillingNode]) -> None:
        self._case_row(case_id)
        for node in nodes:
            if node.case_id != case_id:
                raise InvalidArgumentError(
                    "case_id", f"node {node.id} belongs to case {node.case_id}",
                )
            self._session.add(BillingNodeModel.from_dto(node))

    def deactivate_nodes(self, case_id: str) -> int:
        count = self._deactivate(case_id)
        self._session.commit()
        return count

    def _deactivate(self, case_id: str) -> int:
        result = self._session.execute(
            update(BillingNodeModel)
            .where(
                BillingNodeModel.case_id == case_id,
                BillingNodeModel.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("billing_nodes_deactivated", extra={
                "case_id": case_id,
                "node_count": result.rowcount,
            })
        return result.rowcount

    def replace_billing_system(
        self,
        case_id: str,
        nodes: Sequence[BillingNode],
        configuration: StageBillingConfiguration,
    ) -> list[BillingNode]:
        """Swap a case's node set and configuration in one transaction."""
        try:
            self._deactivate(case_id)
            self._add_nodes(case_id, nodes)
            self._put_configuration(case_id, configuration)
            self._session.commit()
        except Exception:
            self._session.rollback()
            logger.error("billing_system_replace_failed", extra={
                "case_id": case_id,
            }, exc_info=True)
            raise
        logger.info("billing_system_replaced", extra={
            "case_id": case_id,
            "node_count": len(nodes),
        })
        return self.load_nodes(case_id)

    def persist_node_completion(
        self, case_id: str, node_id: str, completion: CompletionData,
    ) -> BillingNode:
        result = self._session.execute(
            update(BillingNodeModel)
            .where(
                BillingNodeModel.case_id == case_id,
                BillingNodeModel.node_id == node_id,
                BillingNodeModel.is_active.is_(True),
                BillingNodeModel.is_completed.is_(False),
            )
            .values(
                is_completed=True,
                completion_date=completion.completion_date,
                completion_notes=completion.notes or None,
                completion_documents=list(completion.documents),
                approver_id=completion.approver_id,
                completed_by_id=completion.actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._session.rollback()
            row = self._active_node_row(node_id, case_id)
            logger.warning("node_completion_conflict", extra={
                "case_id": case_id,
                "node_id": node_id,
            })
            raise AlreadyCompletedError(node_id, row.completion_date)

        self._session.commit()
        logger.info("node_completion_persisted", extra={
            "case_id": case_id,
            "node_id": node_id,
            "completion_date": completion.completion_date.isoformat(),
        })
        return self.load_node(node_id, case_id)

    def mark_nodes_billed(
        self, case_id: str, node_ids: Sequence[str], *, billed: bool = True,
    ) -> None:
        if not node_ids:
            return
        self._session.execute(
            update(BillingNodeModel)
            .where(
                BillingNodeModel.case_id == case_id,
                BillingNodeModel.node_id.in_(list(node_ids)),
                BillingNodeModel.is_active.is_(True),
            )
            .values(is_billed=billed)
            .execution_options(synchronize_session=False)
        )
        self._session.commit()
        logger.info(
            "billing_nodes_marked_billed" if billed else "billing_nodes_released",
            extra={"case_id": case_id, "node_ids": list(node_ids)},
        )

    def _active_node_row(
        self, node_id: str, case_id: str | None = None,
    ) -> BillingNodeModel:
        query = select(BillingNodeModel).where(
            BillingNodeModel.node_id == node_id,
            BillingNodeModel.is_active.is_(True),
        )
        if case_id is not None:
            query = query.where(BillingNodeModel.case_id == case_id)
        rows = self._session.execute(
            query.execution_options(populate_existing=True)
        ).scalars().all()
        if not rows:
            raise BillingNodeNotFoundError(node_id)
        if len(rows) > 1:
            raise AmbiguousNodeError(node_id, tuple(sorted(r.case_id for r in rows)))
        return rows[0]

    # =========================================================================
    # Configuration
    # =========================================================================

    def store_configuration(
        self, case_id: str, configuration: StageBillingConfiguration,
    ) -> None:
        self._put_configuration(case_id, configuration)
        self._session.commit()

    def _put_configuration(
        self, case_id: str, configuration: StageBillingConfiguration,
    ) -> None:
        self._case_row(case_id)
        row = self._session.get(StageBillingConfigurationModel, case_id)
        if row is None:
            self._session.add(
                StageBillingConfigurationModel.from_dto(case_id, configuration)
            )
        else:
            row.apply(configuration)

    def load_configuration(self, case_id: str) -> StageBillingConfiguration | None:
        row = self._session.get(StageBillingConfigurationModel, case_id)
        return row.to_dto() if row is not None else None

    # =========================================================================
    # Ledger
    # =========================================================================

    def record_payment(self, case_id: str, amount: Decimal, received_on: date) -> None:
        case = self._case_row(case_id)
        self._session.add(CasePaymentModel(
            case_id=case_id,
            amount=amount,
            currency=case.currency,
            received_on=received_on,
        ))
        self._session.commit()
        logger.info("payment_recorded", extra={
            "case_id": case_id,
            "amount": str(amount),
        })

    def total_paid(self, case_id: str) -> Decimal:
        total = self._session.execute(
            select(func.coalesce(func.sum(CasePaymentModel.amount), 0))
            .where(CasePaymentModel.case_id == case_id)
        ).scalar_one()
        return round_money(Decimal(str(total)))

    def add_time_entry(self, entry: TimeEntry) -> None:
        self._session.add(TimeEntryModel.from_dto(entry))
        self._session.commit()

    def add_expense(self, expense: Expense) -> None:
        self._session.add(ExpenseModel.from_dto(expense))
        self._session.commit()

    def load_unbilled_time_entries(self, case_id: str) -> list[TimeEntry]:
        rows = self._session.execute(
            select(TimeEntryModel)
            .where(
                TimeEntryModel.case_id == case_id,
                TimeEntryModel.is_billed.is_(False),
            )
            .order_by(TimeEntryModel.entry_date, TimeEntryModel.id)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def load_unbilled_expenses(self, case_id: str) -> list[Expense]:
        rows = self._session.execute(
            select(ExpenseModel)
            .where(
                ExpenseModel.case_id == case_id,
                ExpenseModel.is_billed.is_(False),
            )
            .order_by(ExpenseModel.expense_date, ExpenseModel.id)
        ).scalars().all()
        return [row.to_dto() for row in rows]


class SqlInvoiceIssuer:
    """InvoiceIssuer backed by a SQLAlchemy session; idempotent on the key."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

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
        existing = self._get_existing(idempotency_key)
        if existing is not None:
            logger.info("invoice_already_issued", extra={
                "invoice_id": existing.id,
                "idempotency_key": idempotency_key,
            })
            return existing.to_dto()

        if not items:
            raise InvalidArgumentError("items", "an invoice needs at least one item")

        total = round_money(sum((item.amount for item in items), Decimal("0")))
        invoice = InvoiceModel(
            id=str(uuid4()),
            case_id=case_id,
            client_id=client_id,
            total=total,
            currency=currency,
            idempotency_key=idempotency_key,
            issued_on=issued_on or self._clock.today(),
        )
        invoice.lines = [
            InvoiceLineModel.from_dto(number, item)
            for number, item in enumerate(items, start=1)
        ]
        self._session.add(invoice)
        try:
            self._session.flush()
        except IntegrityError:
            # Concurrent insert of the same key
            self._session.rollback()
            logger.warning("concurrent_invoice_insert_conflict", extra={
                "idempotency_key": idempotency_key,
            })
            existing = self._get_existing(idempotency_key)
            if existing is None:
                raise
            return existing.to_dto()

        self._session.commit()
        logger.info("invoice_issued", extra={
            "invoice_id": invoice.id,
            "case_id": case_id,
            "total": str(total),
            "item_count": len(items),
            "idempotency_key": idempotency_key,
        })
        return invoice.to_dto()

    def _get_existing(self, idempotency_key: str) -> InvoiceModel | None:
        return self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.idempotency_key == idempotency_key)
        ).scalar_one_or_none()
