"""
Test data builders and collaborator doubles for the stage billing suite.

All ids and dates are deterministic so tests can assert on them directly.
"""

from datetime import date
from decimal import Decimal

from billing_kernel.domain.billing_node import BillingNode, CompletionCriteria
from billing_kernel.domain.case_phase import CasePhase
from billing_modules.stage_billing.models import CaseRecord, Invoice, InvoiceItem

TEST_CASE_ID = "CASE-001"
TEST_CLIENT_ID = "CLIENT-001"
TEST_ATTORNEY_ID = "LAWYER-001"
CASE_OPENED_ON = date(2024, 1, 2)


def make_case(
    case_id: str = TEST_CASE_ID,
    current_phase: CasePhase = CasePhase.INTAKE_RISK_ASSESSMENT,
    opened_on: date = CASE_OPENED_ON,
    phase_started_on: date | None = None,
    total_value: Decimal | None = None,
    case_type: str = "contract_dispute",
) -> CaseRecord:
    return CaseRecord(
        id=case_id,
        client_id=TEST_CLIENT_ID,
        attorney_id=TEST_ATTORNEY_ID,
        case_type=case_type,
        current_phase=current_phase,
        opened_on=opened_on,
        phase_started_on=phase_started_on or opened_on,
        total_value=total_value,
    )


def make_node(
    node_id: str,
    *,
    case_id: str = TEST_CASE_ID,
    phase: CasePhase = CasePhase.INTAKE_RISK_ASSESSMENT,
    order: int = 1,
    name: str | None = None,
    amount: str | Decimal = "1000",
    dependencies: tuple[str, ...] = (),
    requirements: tuple[str, ...] = ("signed_engagement",),
    due_date: date | None = None,
    criteria: CompletionCriteria | None = None,
    is_active: bool = True,
    is_completed: bool = False,
    completion_date: date | None = None,
    is_billed: bool = False,
) -> BillingNode:
    return BillingNode(
        id=node_id,
        case_id=case_id,
        phase=phase,
        order=order,
        name=name if name is not None else f"Milestone {node_id}",
        amount=Decimal(str(amount)),
        due_date=due_date,
        requirements=frozenset(requirements),
        dependencies=frozenset(dependencies),
        criteria=criteria or CompletionCriteria(),
        is_active=is_active,
        is_completed=is_completed,
        completion_date=completion_date,
        is_billed=is_billed,
    )


def two_node_chain(case_id: str = TEST_CASE_ID) -> list[BillingNode]:
    """N1 (1000) then N2 (2000), N2 depending on N1."""
    return [
        make_node("N1", case_id=case_id, order=1, amount="1000"),
        make_node("N2", case_id=case_id, order=2, amount="2000", dependencies=("N1",)),
    ]


class RecordingNotificationSink:
    """NotificationSink that records every reminder."""

    def __init__(self, fail_for: frozenset[str] = frozenset()):
        self.reminders: list[tuple[str, str, date]] = []
        self._fail_for = fail_for

    def remind(self, user_id: str, node_id: str, due_date: date) -> None:
        if node_id in self._fail_for:
            raise ConnectionError(f"notification channel unavailable for {node_id}")
        self.reminders.append((user_id, node_id, due_date))


class FailingInvoiceIssuer:
    """InvoiceIssuer whose every call fails."""

    def __init__(self):
        self.calls = 0

    def issue(self, case_id, client_id, items, *, idempotency_key, currency="CNY",
              issued_on=None) -> Invoice:
        self.calls += 1
        raise TimeoutError("invoicing system timed out")


class InMemoryInvoiceIssuer:
    """InvoiceIssuer keeping invoices in a dict keyed by idempotency key."""

    def __init__(self):
        self.invoices: dict[str, Invoice] = {}
        self.calls = 0

    def issue(self, case_id, client_id, items, *, idempotency_key, currency="CNY",
              issued_on=None) -> Invoice:
        self.calls += 1
        if idempotency_key in self.invoices:
            return self.invoices[idempotency_key]
        items = tuple(items)
        invoice = Invoice(
            id=f"INV-{len(self.invoices) + 1:04d}",
            case_id=case_id,
            client_id=client_id,
            items=items,
            total=sum((item.amount for item in items), Decimal("0")),
            currency=currency,
            idempotency_key=idempotency_key,
            issued_on=issued_on,
        )
        self.invoices[idempotency_key] = invoice
        return invoice


def invoice_item(amount: str, node_id: str | None = None) -> InvoiceItem:
    return InvoiceItem(
        description=f"Charge {node_id or amount}",
        amount=Decimal(amount),
        user_id=TEST_ATTORNEY_ID,
        node_id=node_id,
    )


class FlakyCaseStore:
    """Delegating CaseStore whose first call to each named method fails."""

    def __init__(self, store, *failing: str):
        self._store = store
        self._pending = set(failing)

    def __getattr__(self, name):
        target = getattr(self._store, name)
        if name not in self._pending:
            return target

        def fail_once(*args, **kwargs):
            self._pending.discard(name)
            raise ConnectionError(f"case store unavailable during {name}")

        return fail_once
