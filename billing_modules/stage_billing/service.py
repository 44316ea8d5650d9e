"""
Stage Billing Module Service (``billing_modules.stage_billing.service``).

Responsibility
--------------
Orchestrates milestone-based billing for a legal case: creating a case's
billing node set, completing milestones (with optional invoicing),
progress and suggestion reads, and automation.  Pure computation is
delegated to ``billing_engines``; persistence and invoicing to the
``CaseStore`` and ``InvoiceIssuer`` collaborators.

Architecture position
---------------------
**Modules layer** -- ``StageBillingService`` is the sole public entry
point for stage billing.  It composes the pure engines (billing graph,
completion validation, automation planning, progress) with the
``AutomationRunner`` service.

Invariants enforced
-------------------
* Completion is monotonic.  Completing an already-completed node is an
  ALREADY_COMPLETED result, never a silent success, so a milestone
  invoice cannot be issued twice.
* A failed validation performs no mutation.
* The completion is committed before any invoice is attempted; an invoice
  failure never rolls it back.
* Milestone invoices are keyed
  ``stage_billing:milestone_invoice:<case_id>:<node_id>``.
* A node is marked billed before its invoice is requested and released
  again only if the request fails, so a completed node is never on two
  invoices.
* Replacing a case's node set deactivates the previous nodes in the same
  transaction that writes the new ones; nothing is hard-deleted.

Failure modes
-------------
* Mutations (create, complete, process_automation) return result objects
  carrying ``status`` and ``error_code``.
* Reads (progress, suggestions, validate_completion) raise
  ``CaseNotFoundError`` / ``BillingNodeNotFoundError``.
* Collaborator failures in follow-on actions are recorded on the result
  (``InvoiceAttempt.error``, ``AutomationResult.errors``).

Usage::

    service = StageBillingService(case_store, invoice_issuer, rules, clock=clock)
    result = service.complete_billing_milestone(
        "N1", CompletionData(completion_date=date(2024, 3, 1), generate_invoice=True),
    )
    if result.completion_committed:
        result.next_nodes
"""

from __future__ import annotations

import time
from typing import Any, Mapping, Sequence

from billing_engines.billing_graph import (
    DEPENDENCY_CYCLE,
    BillingGraphView,
    build_billing_graph,
    newly_ready,
    validate_node_set,
)
from billing_engines.completion import validate_completion as validate_completion_engine
from billing_engines.progress import build_billing_suggestions, summarize_billing
from billing_engines.time_expense import summarize_expenses, summarize_time_entries
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    AlreadyCompletedError,
    AmbiguousNodeError,
    BillingKernelError,
    BillingNodeNotFoundError,
    CaseNotFoundError,
    InvalidArgumentError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.utils.idempotency import generate_idempotency_key
from billing_modules.stage_billing.config import StageBillingConfiguration
from billing_modules.stage_billing.models import (
    AutomationError,
    AutomationResult,
    BillingNode,
    BillingSuggestions,
    CaseRecord,
    CompletionData,
    CompletionValidation,
    InvoiceAttempt,
    InvoiceItem,
    MilestoneCompletionResult,
    MilestoneCompletionStatus,
    StageBillingProgress,
    StageBillingSystemResult,
    StageBillingSystemStatus,
    StageBillingValidation,
    ValidationIssue,
)
from billing_modules.stage_billing.protocols import (
    CaseStore,
    ComplianceRules,
    InvoiceIssuer,
    NotificationSink,
)
from billing_services.automation_runner import UPSTREAM_FAILURE, AutomationRunner

logger = get_logger("modules.stage_billing.service")

PRODUCER = "stage_billing"
INVALID_NODE = "INVALID_NODE"
INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
STEP_MILESTONE_INVOICE = "milestone_invoice"


def milestone_invoice_key(case_id: str, node_id: str) -> str:
    """Idempotency key of the invoice issued when a milestone completes."""
    return generate_idempotency_key(
        PRODUCER, "milestone_invoice", f"{case_id}:{node_id}",
    )


class StageBillingService:
    """
    Orchestrates stage billing through engines and collaborators.

    Contract
    --------
    * Mutating methods return result objects; callers inspect
      ``result.is_success`` (or ``completion_committed``).
    * Read methods return pure domain objects and raise the NotFound
      taxonomy for unknown cases or nodes.

    Guarantees
    ----------
    * Collaborators are called in a fixed order: completion, invoice,
      graph recompute, automation.
    * Clock is injectable for deterministic testing.
    """

    def __init__(
        self,
        case_store: CaseStore,
        invoice_issuer: InvoiceIssuer,
        rules: ComplianceRules,
        notification_sink: NotificationSink | None = None,
        clock: Clock | None = None,
        automation_runner: AutomationRunner | None = None,
    ):
        self._case_store = case_store
        self._invoice_issuer = invoice_issuer
        self._rules = rules
        self._clock = clock or SystemClock()
        self._automation_runner = automation_runner or AutomationRunner(
            case_store, invoice_issuer, notification_sink,
        )

    # =========================================================================
    # Billing system creation
    # =========================================================================

    def create_stage_billing_system(
        self,
        case_id: str,
        nodes: Sequence[BillingNode | Mapping[str, Any]],
        configuration: StageBillingConfiguration | Mapping[str, Any] | None = None,
    ) -> StageBillingSystemResult:
        """
        Validate and persist a case's billing node set and configuration.

        The previous node set of the case, if any, is deactivated.  Nothing
        is written when validation fails.
        """
        t0 = time.monotonic()
        with LogContext.bind(case_id=case_id):
            logger.info("stage_billing_system_create_started", extra={
                "case_id": case_id,
                "node_count": len(nodes),
            })

            try:
                case = self._case_store.load_case(case_id)
            except CaseNotFoundError as exc:
                return StageBillingSystemResult(
                    status=StageBillingSystemStatus.CASE_NOT_FOUND,
                    case_id=case_id,
                    validation=StageBillingValidation(),
                    error_code=exc.code,
                    message=str(exc),
                )

            try:
                parsed = tuple(self._parse_node(case.id, node) for node in nodes)
            except InvalidArgumentError as exc:
                return self._invalid_system(case_id, INVALID_NODE, exc)

            try:
                config = self._parse_configuration(configuration)
            except InvalidArgumentError as exc:
                return self._invalid_system(case_id, INVALID_CONFIGURATION, exc)

            validation = validate_node_set(
                parsed,
                court_approval_threshold=self._rules.court_approval_threshold(),
                case_id=case.id,
            )
            if not validation.is_valid:
                status = (
                    StageBillingSystemStatus.DEPENDENCY_CYCLE
                    if DEPENDENCY_CYCLE in validation.error_codes()
                    else StageBillingSystemStatus.INVALID
                )
                logger.warning("stage_billing_system_rejected", extra={
                    "case_id": case_id,
                    "error_codes": validation.error_codes(),
                })
                return StageBillingSystemResult(
                    status=status,
                    case_id=case_id,
                    validation=validation,
                    error_code=validation.errors[0].code,
                    message=validation.errors[0].message,
                )

            try:
                created = self._case_store.replace_billing_system(
                    case.id, parsed, config,
                )
            except Exception as exc:
                logger.error("stage_billing_system_persist_failed", extra={
                    "case_id": case_id,
                    "error": str(exc),
                }, exc_info=True)
                return StageBillingSystemResult(
                    status=StageBillingSystemStatus.PERSISTENCE_FAILED,
                    case_id=case_id,
                    validation=validation,
                    error_code=(
                        exc.code if isinstance(exc, BillingKernelError)
                        else UPSTREAM_FAILURE
                    ),
                    message=str(exc),
                )

            logger.info("stage_billing_system_created", extra={
                "case_id": case_id,
                "node_count": len(created),
                "warning_count": len(validation.warnings),
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            })

            return StageBillingSystemResult(
                status=StageBillingSystemStatus.CREATED,
                case_id=case_id,
                validation=validation,
                nodes=tuple(created),
                automation=config.automation(),
            )

    @staticmethod
    def _parse_node(case_id: str, node: BillingNode | Mapping[str, Any]) -> BillingNode:
        if isinstance(node, BillingNode):
            return node
        return BillingNode.from_dict(case_id, node)

    @staticmethod
    def _parse_configuration(
        configuration: StageBillingConfiguration | Mapping[str, Any] | None,
    ) -> StageBillingConfiguration:
        if configuration is None:
            return StageBillingConfiguration.with_defaults()
        if isinstance(configuration, StageBillingConfiguration):
            return configuration
        return StageBillingConfiguration.from_dict(dict(configuration))

    @staticmethod
    def _invalid_system(
        case_id: str, code: str, exc: InvalidArgumentError,
    ) -> StageBillingSystemResult:
        logger.warning("stage_billing_system_rejected", extra={
            "case_id": case_id,
            "error_codes": (code,),
            "field": exc.field,
        })
        return StageBillingSystemResult(
            status=StageBillingSystemStatus.INVALID,
            case_id=case_id,
            validation=StageBillingValidation(
                errors=(ValidationIssue(code, str(exc), exc.field),),
            ),
            error_code=code,
            message=str(exc),
        )

    # =========================================================================
    # Milestone completion
    # =========================================================================

    def complete_billing_milestone(
        self,
        node_id: str,
        completion_data: CompletionData,
        *,
        case_id: str | None = None,
    ) -> MilestoneCompletionResult:
        """
        Complete a billing milestone.

        Steps, in order: load, validate, persist the completion, issue the
        requested invoice, recompute the graph, run automation.

        Node ids are unique within a case.  ``case_id`` may be omitted when
        the id is active in a single case.
        """
        t0 = time.monotonic()
        with LogContext.bind(
            case_id=case_id, node_id=node_id, actor_id=completion_data.actor_id,
        ):
            logger.info("milestone_completion_started", extra={
                "node_id": node_id,
                "completion_date": completion_data.completion_date.isoformat(),
                "generate_invoice": completion_data.generate_invoice,
            })

            try:
                node = self._case_store.load_node(node_id, case_id)
            except BillingNodeNotFoundError as exc:
                return MilestoneCompletionResult(
                    status=MilestoneCompletionStatus.NOT_FOUND,
                    node_id=node_id,
                    error_code=exc.code,
                    message=str(exc),
                )
            except AmbiguousNodeError as exc:
                logger.warning("milestone_node_ambiguous", extra={
                    "node_id": node_id,
                    "case_ids": exc.case_ids,
                })
                return MilestoneCompletionResult(
                    status=MilestoneCompletionStatus.AMBIGUOUS_NODE,
                    node_id=node_id,
                    error_code=exc.code,
                    message=str(exc),
                )

            if node.is_completed:
                return self._already_completed(
                    AlreadyCompletedError(node_id, node.completion_date)
                )

            case = self._case_store.load_case(node.case_id)
            config = self._configuration_for(case.id)
            nodes = self._case_store.load_nodes(case.id)

            validation = self._validate(node, completion_data, case, config, nodes)
            blocking = validation.blocking_errors(config.require_completion)
            if blocking:
                logger.warning("milestone_completion_rejected", extra={
                    "node_id": node_id,
                    "error_codes": [issue.code for issue in blocking],
                })
                return MilestoneCompletionResult(
                    status=MilestoneCompletionStatus.VALIDATION_FAILED,
                    node_id=node_id,
                    validation=validation,
                    error_code="VALIDATION_FAILED",
                    message="; ".join(issue.message for issue in blocking),
                )
            if validation.errors:
                logger.info("milestone_completion_errors_accepted", extra={
                    "node_id": node_id,
                    "error_codes": validation.error_codes(),
                })

            before = build_billing_graph(nodes, case.current_phase)

            try:
                completed = self._case_store.persist_node_completion(
                    case.id, node_id, completion_data,
                )
            except AlreadyCompletedError as exc:
                return self._already_completed(exc, validation)

            invoice_attempt = None
            if completion_data.generate_invoice:
                invoice_attempt = self._issue_milestone_invoice(
                    case, completed, completion_data, config.currency,
                )

            refreshed = self._case_store.load_nodes(case.id)
            after = build_billing_graph(refreshed, case.current_phase)
            next_nodes = newly_ready(before, after)

            automation = None
            if self._automation_triggered(config):
                automation = self._automation_runner.run(
                    case, after, config.automation(), self._clock.today(), config.currency,
                )

            status = (
                MilestoneCompletionStatus.INVOICE_FAILED
                if invoice_attempt is not None and not invoice_attempt.succeeded
                else MilestoneCompletionStatus.COMPLETED
            )

            logger.info("milestone_completed", extra={
                "node_id": node_id,
                "case_id": case.id,
                "status": status.value,
                "amount": str(completed.amount),
                "next_node_ids": [n.id for n in next_nodes],
                "overall_progress": after.overall_progress,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            })

            failed = invoice_attempt is not None and not invoice_attempt.succeeded
            return MilestoneCompletionResult(
                status=status,
                node_id=node_id,
                completion=completed,
                validation=validation,
                invoice_attempt=invoice_attempt,
                next_nodes=next_nodes,
                automation=automation,
                error_code=invoice_attempt.error.code if failed else None,
                message=invoice_attempt.error.message if failed else None,
            )

    def _already_completed(
        self,
        exc: AlreadyCompletedError,
        validation: CompletionValidation | None = None,
    ) -> MilestoneCompletionResult:
        logger.warning("milestone_already_completed", extra={
            "node_id": exc.node_id,
            "completion_date": (
                exc.completion_date.isoformat() if exc.completion_date else None
            ),
        })
        return MilestoneCompletionResult(
            status=MilestoneCompletionStatus.ALREADY_COMPLETED,
            node_id=exc.node_id,
            validation=validation,
            error_code=exc.code,
            message=str(exc),
        )

    def _issue_milestone_invoice(
        self,
        case: CaseRecord,
        node: BillingNode,
        completion_data: CompletionData,
        currency: str,
    ) -> InvoiceAttempt:
        key = milestone_invoice_key(case.id, node.id)
        item = InvoiceItem(
            description=node.name,
            amount=node.amount,
            user_id=completion_data.actor_id or case.attorney_id,
            node_id=node.id,
        )

        # Reserved before issuing, released if the issuer fails
        try:
            self._case_store.mark_nodes_billed(case.id, (node.id,))
        except Exception as exc:
            return self._invoice_failed(node, key, exc)

        try:
            invoice = self._invoice_issuer.issue(
                case.id,
                case.client_id,
                (item,),
                idempotency_key=key,
                currency=currency,
                issued_on=completion_data.completion_date,
            )
        except Exception as exc:
            self._release_reservation(case.id, node.id)
            return self._invoice_failed(node, key, exc)

        logger.info("milestone_invoice_issued", extra={
            "node_id": node.id,
            "invoice_id": invoice.id,
            "total": str(invoice.total),
        })
        return InvoiceAttempt(invoice=invoice)

    def _release_reservation(self, case_id: str, node_id: str) -> None:
        try:
            self._case_store.mark_nodes_billed(case_id, (node_id,), billed=False)
        except Exception:
            # Node stays billed without an invoice
            logger.error("milestone_invoice_reservation_stuck", extra={
                "case_id": case_id,
                "node_id": node_id,
            }, exc_info=True)

    @staticmethod
    def _invoice_failed(node: BillingNode, key: str, exc: Exception) -> InvoiceAttempt:
        logger.error("milestone_invoice_failed", extra={
            "node_id": node.id,
            "idempotency_key": key,
            "error": str(exc),
        }, exc_info=True)
        return InvoiceAttempt(error=AutomationError(
            step=STEP_MILESTONE_INVOICE,
            code=exc.code if isinstance(exc, BillingKernelError) else UPSTREAM_FAILURE,
            message=f"Invoice generation failed: {exc}",
            subject=node.id,
        ))

    @staticmethod
    def _automation_triggered(config: StageBillingConfiguration) -> bool:
        automation = config.automation()
        return automation.enabled and automation.triggers.on_milestone_completion

    # =========================================================================
    # Reads
    # =========================================================================

    def validate_completion(
        self,
        node_id: str,
        completion_data: CompletionData,
        *,
        case_id: str | None = None,
    ) -> CompletionValidation:
        """
        Dry-run validation of a milestone completion.

        Raises:
            BillingNodeNotFoundError: If no active node has ``node_id``.
            AmbiguousNodeError: If ``case_id`` is omitted and the id is
                active in more than one case.
        """
        node = self._case_store.load_node(node_id, case_id)
        case = self._case_store.load_case(node.case_id)
        config = self._configuration_for(case.id)
        nodes = self._case_store.load_nodes(case.id)
        return self._validate(node, completion_data, case, config, nodes)

    def get_stage_billing_progress(self, case_id: str) -> StageBillingProgress:
        """
        Readiness partitions, progress and billing summary of a case.

        Raises:
            CaseNotFoundError: If the case does not exist.
        """
        case = self._case_store.load_case(case_id)
        view = self._graph_for(case)
        summary = summarize_billing(view, self._case_store.total_paid(case.id))

        return StageBillingProgress(
            case_id=case.id,
            current_phase=case.current_phase,
            completed_nodes=view.completed,
            pending_nodes=view.pending,
            ready_nodes=view.ready,
            blocked_nodes=view.blocked,
            overall_progress=view.overall_progress,
            phase_progress=view.phase_progress,
            next_milestone=view.next_milestone,
            billing_summary=summary,
        )

    def generate_billing_suggestions(self, case_id: str) -> BillingSuggestions:
        """
        What to bill now, upcoming deadlines, overdue items and unbilled work.

        Raises:
            CaseNotFoundError: If the case does not exist.
        """
        case = self._case_store.load_case(case_id)
        config = self._configuration_for(case.id)
        view = self._graph_for(case)
        return build_billing_suggestions(
            case.id,
            view,
            self._clock.today(),
            config.grace_period_days,
            summarize_time_entries(self._case_store.load_unbilled_time_entries(case.id)),
            summarize_expenses(self._case_store.load_unbilled_expenses(case.id)),
        )

    # =========================================================================
    # Automation
    # =========================================================================

    def process_automation(self, case_id: str) -> AutomationResult:
        """Run the case's automation rules against its current billing graph."""
        with LogContext.bind(case_id=case_id):
            try:
                case = self._case_store.load_case(case_id)
            except CaseNotFoundError as exc:
                return AutomationResult(
                    case_id=case_id,
                    errors=(AutomationError(
                        step="automation",
                        code=exc.code,
                        message=str(exc),
                        subject=case_id,
                    ),),
                )
            config = self._configuration_for(case.id)
            view = self._graph_for(case)
            return self._automation_runner.run(
                case, view, config.automation(), self._clock.today(), config.currency,
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _configuration_for(self, case_id: str) -> StageBillingConfiguration:
        config = self._case_store.load_configuration(case_id)
        if config is None:
            return StageBillingConfiguration.with_defaults()
        return config

    def _graph_for(self, case: CaseRecord) -> BillingGraphView:
        return build_billing_graph(
            self._case_store.load_nodes(case.id), case.current_phase,
        )

    def _validate(
        self,
        node: BillingNode,
        completion_data: CompletionData,
        case: CaseRecord,
        config: StageBillingConfiguration,
        nodes: Sequence[BillingNode],
    ) -> CompletionValidation:
        return validate_completion_engine(
            node,
            completion_data,
            nodes_by_id={n.id: n for n in nodes},
            require_completion=config.require_completion,
            phase_started_on=case.phase_start_for(node.phase),
            rules=self._rules,
            case_total_value=case.total_value,
            approval_required=config.approval_required,
        )
