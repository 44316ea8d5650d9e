"""
billing_services.automation_runner -- Stage billing automation execution.

Responsibility:
    Executes the automation plan decided by the pure planner
    (``billing_engines.automation.plan_automation``) against the
    collaborators: issues the consolidated invoice, dispatches deadline
    reminders and advances the case phase.

Architecture position:
    Services layer.  May import from billing_engines/ (pure engines),
    billing_kernel/ and the stage billing models and protocols.

Invariants enforced:
    - Steps run in a fixed order: auto_generate_invoices, send_reminders,
      auto_advance_stages.  Each rule-enabled step is reported in
      ``processed`` whether or not it had anything to do.
    - A failing step, or a single failing reminder, is recorded as an
      ``AutomationError`` and never aborts the remaining steps.
    - Invoiced nodes are marked billed before the invoice is requested and
      released if the request fails, so no node lands on two invoices.

Failure modes:
    - Collaborator exceptions are recorded with code UPSTREAM_FAILURE
      (or the taxonomy code of a BillingKernelError) and logged with
      ``exc_info``; nothing propagates to the caller.
"""

from __future__ import annotations

import time
from datetime import date

from billing_engines.automation import (
    AutomationPlan,
    StageBillingAutomation,
    nodes_for_plan,
    plan_automation,
)
from billing_engines.billing_graph import BillingGraphView
from billing_kernel.exceptions import BillingKernelError
from billing_kernel.logging_config import LogContext, get_logger
from billing_modules.stage_billing.models import (
    AutomationError,
    AutomationResult,
    AutomationStepResult,
    CaseRecord,
    InvoiceItem,
)
from billing_modules.stage_billing.protocols import (
    CaseStore,
    InvoiceIssuer,
    NotificationSink,
)

logger = get_logger("services.automation_runner")

STEP_INVOICES = "auto_generate_invoices"
STEP_REMINDERS = "send_reminders"
STEP_ADVANCE = "auto_advance_stages"

UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
AUTOMATION_DISABLED = "AUTOMATION_DISABLED"


def _error_code(exc: Exception) -> str:
    if isinstance(exc, BillingKernelError):
        return exc.code
    return UPSTREAM_FAILURE


class AutomationRunner:
    """
    Executes stage billing automation for one case at a time.

    Contract:
        ``run`` never raises for collaborator failures; inspect
        ``AutomationResult.errors``.
    """

    def __init__(
        self,
        case_store: CaseStore,
        invoice_issuer: InvoiceIssuer,
        notification_sink: NotificationSink | None = None,
    ):
        self._case_store = case_store
        self._invoice_issuer = invoice_issuer
        self._notification_sink = notification_sink

    def run(
        self,
        case: CaseRecord,
        view: BillingGraphView,
        automation: StageBillingAutomation,
        today: date,
        currency: str = "CNY",
    ) -> AutomationResult:
        """Plan and execute automation for ``case`` against ``view``."""
        t0 = time.monotonic()

        if not automation.enabled:
            logger.info("automation_disabled", extra={"case_id": case.id})
            return AutomationResult(
                case_id=case.id,
                errors=(AutomationError(
                    step="automation",
                    code=AUTOMATION_DISABLED,
                    message="Automation is disabled",
                    subject=case.id,
                ),),
            )

        plan = plan_automation(case.id, view, automation, case.current_phase, today)

        processed: list[str] = []
        results: list[AutomationStepResult] = []
        errors: list[AutomationError] = []

        with LogContext.bind(case_id=case.id):
            if automation.rules.auto_generate_invoices:
                processed.append(STEP_INVOICES)
                results.append(
                    self._run_invoice(case, view, plan, today, currency, errors)
                )

            if automation.rules.auto_send_reminders:
                processed.append(STEP_REMINDERS)
                results.append(self._run_reminders(case, plan, errors))

            if automation.rules.auto_advance_stages:
                processed.append(STEP_ADVANCE)
                results.append(self._run_advance(case, plan, today, errors))

        result = AutomationResult(
            case_id=case.id,
            processed=tuple(processed),
            results=tuple(results),
            errors=tuple(errors),
        )

        logger.info("automation_completed", extra={
            "case_id": case.id,
            "processed": result.processed,
            "error_count": len(result.errors),
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })

        return result

    # =========================================================================
    # Steps
    # =========================================================================

    def _run_invoice(
        self,
        case: CaseRecord,
        view: BillingGraphView,
        plan: AutomationPlan,
        today: date,
        currency: str,
        errors: list[AutomationError],
    ) -> AutomationStepResult:
        if plan.invoice is None:
            return AutomationStepResult(
                step=STEP_INVOICES,
                skipped_reason=_skip_reason(plan, STEP_INVOICES),
            )

        nodes = nodes_for_plan(view, plan.invoice.node_ids)
        items = tuple(
            InvoiceItem(
                description=f"Stage billing: {node.name}",
                amount=node.amount,
                user_id=case.attorney_id,
                node_id=node.id,
            )
            for node in nodes
        )
        node_ids = plan.invoice.node_ids
        try:
            self._case_store.mark_nodes_billed(case.id, node_ids)
            try:
                invoice = self._invoice_issuer.issue(
                    case.id,
                    case.client_id,
                    items,
                    idempotency_key=plan.invoice.idempotency_key,
                    currency=currency,
                    issued_on=today,
                )
            except Exception:
                self._case_store.mark_nodes_billed(case.id, node_ids, billed=False)
                raise
        except Exception as exc:
            logger.warning("automation_invoice_failed", extra={
                "case_id": case.id,
                "node_ids": list(node_ids),
                "idempotency_key": plan.invoice.idempotency_key,
                "error": str(exc),
            }, exc_info=True)
            errors.append(AutomationError(
                step=STEP_INVOICES,
                code=_error_code(exc),
                message=f"Invoice generation failed: {exc}",
                subject=plan.invoice.idempotency_key,
            ))
            return AutomationStepResult(step=STEP_INVOICES)

        logger.info("automation_invoice_issued", extra={
            "case_id": case.id,
            "invoice_id": invoice.id,
            "total": str(invoice.total),
            "node_ids": list(node_ids),
        })
        return AutomationStepResult(step=STEP_INVOICES, invoice=invoice)

    def _run_reminders(
        self,
        case: CaseRecord,
        plan: AutomationPlan,
        errors: list[AutomationError],
    ) -> AutomationStepResult:
        if self._notification_sink is None:
            return AutomationStepResult(
                step=STEP_REMINDERS, skipped_reason="no_notification_sink",
            )

        sent: list[str] = []
        for reminder in plan.reminders:
            try:
                self._notification_sink.remind(
                    case.attorney_id, reminder.node_id, reminder.due_date,
                )
            except Exception as exc:
                logger.warning("automation_reminder_failed", extra={
                    "case_id": case.id,
                    "node_id": reminder.node_id,
                    "error": str(exc),
                }, exc_info=True)
                errors.append(AutomationError(
                    step=STEP_REMINDERS,
                    code=_error_code(exc),
                    message=f"Reminder failed: {exc}",
                    subject=reminder.node_id,
                ))
                continue
            sent.append(reminder.node_id)

        if sent:
            logger.info("automation_reminders_sent", extra={
                "case_id": case.id,
                "node_ids": sent,
            })
        return AutomationStepResult(step=STEP_REMINDERS, reminders_sent=tuple(sent))

    def _run_advance(
        self,
        case: CaseRecord,
        plan: AutomationPlan,
        today: date,
        errors: list[AutomationError],
    ) -> AutomationStepResult:
        if plan.advance is None:
            return AutomationStepResult(
                step=STEP_ADVANCE,
                skipped_reason=_skip_reason(plan, STEP_ADVANCE),
            )
        try:
            updated = self._case_store.advance_phase(
                case.id, plan.advance.from_phase, today,
            )
        except Exception as exc:
            logger.warning("automation_advance_failed", extra={
                "case_id": case.id,
                "from_phase": plan.advance.from_phase.value,
                "error": str(exc),
            }, exc_info=True)
            errors.append(AutomationError(
                step=STEP_ADVANCE,
                code=_error_code(exc),
                message=f"Stage advance failed: {exc}",
                subject=case.id,
            ))
            return AutomationStepResult(step=STEP_ADVANCE)

        return AutomationStepResult(step=STEP_ADVANCE, advanced_to=updated.current_phase)


_STEP_SKIP_REASONS = {
    STEP_INVOICES: (
        "auto_generate_invoices_disabled",
        "no_unbilled_completed_nodes",
        "unbilled_amount_below_minimum",
    ),
    STEP_ADVANCE: (
        "auto_advance_stages_disabled",
        "current_phase_terminal",
        "no_nodes_in_current_phase",
        "current_phase_incomplete",
    ),
}


def _skip_reason(plan: AutomationPlan, step: str) -> str | None:
    for reason in plan.skipped:
        if reason in _STEP_SKIP_REASONS[step]:
            return reason
    return None
