"""
Milestone Completion Validation Engine.

Pure functions with deterministic behavior. No I/O.

Decides whether a billing node may transition to completed, given the
completion evidence (date, documents, approver) and the node's completion
criteria.  All checks run; nothing exits early, so the caller sees every
problem at once.

Blocking rules:
- An inactive or already-completed node, or an unsatisfied dependency,
  always blocks completion.
- Missing documents and a missing approver are always reported as errors.
  They block only when the case configuration requires completion
  criteria; ``CompletionValidation.blocking_errors`` makes that call.
- An unmet time threshold is an error under ``require_completion`` and a
  warning otherwise.

The compliance block is informational: phase documentation and the
court-approval flag are derived, never cached, because the regulatory
constants behind them can change.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Mapping

from billing_kernel.domain.billing_node import BillingNode
from billing_kernel.domain.case_phase import CasePhase
from billing_kernel.domain.compliance_rules import ComplianceRules
from billing_kernel.exceptions import InvalidArgumentError
from billing_kernel.logging_config import get_logger

from billing_engines.validation import ValidationIssue

logger = get_logger("engines.completion")


# ============================================================================
# Constants
# ============================================================================

NODE_INACTIVE = "NODE_INACTIVE"
ALREADY_COMPLETED = "ALREADY_COMPLETED"
DEPENDENCY_NOT_SATISFIED = "DEPENDENCY_NOT_SATISFIED"
DEPENDENCY_COMPLETED_LATER = "DEPENDENCY_COMPLETED_LATER"
TIME_THRESHOLD_NOT_MET = "TIME_THRESHOLD_NOT_MET"
DOCUMENT_MISSING = "DOCUMENT_MISSING"
APPROVAL_MISSING = "APPROVAL_MISSING"

# Errors that block completion whatever the case configuration says.
INVARIANT_ERRORS = frozenset({
    NODE_INACTIVE,
    ALREADY_COMPLETED,
    DEPENDENCY_NOT_SATISFIED,
    DEPENDENCY_COMPLETED_LATER,
})

# Node amounts above this get a client-approval recommendation.
LARGE_AMOUNT_THRESHOLD = Decimal("100000")

COURT_APPROVAL_DOCUMENT = "court_approval"

PHASE_DOCUMENTATION: dict[CasePhase, tuple[str, ...]] = {
    CasePhase.INTAKE_RISK_ASSESSMENT: ("fee_agreement", "engagement_letter"),
    CasePhase.FORMAL_PROCEEDINGS: ("court_filing_receipt", "service_proof"),
    CasePhase.RESOLUTION_POST_PROCEEDING: ("settlement_agreement", "judgment_copy"),
}

CLIENT_APPROVAL_PHASES = frozenset({CasePhase.INTAKE_RISK_ASSESSMENT})


# ============================================================================
# Value objects
# ============================================================================


@dataclass(frozen=True)
class CompletionData:
    """
    Evidence supplied when completing a milestone.

    ``generate_invoice`` asks the orchestrator to issue a single-item
    invoice for the node once the completion is committed.
    """

    completion_date: date
    notes: str = ""
    documents: tuple[str, ...] = ()
    approver_id: str | None = None
    generate_invoice: bool = False
    actor_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.completion_date, date):
            raise InvalidArgumentError("completion_date", "must be a date")
        object.__setattr__(self, "documents", tuple(self.documents))


@dataclass(frozen=True)
class StageCompliance:
    """Phase-specific regulatory facts for a completion."""

    phase: CasePhase
    documentation_required: tuple[str, ...]
    missing_documents: tuple[str, ...]
    client_approval_required: bool
    court_approval_required: bool
    disclosure_required: bool = True
    suggestions: tuple[str, ...] = ()

    @property
    def violations(self) -> tuple[str, ...]:
        return tuple(
            f"Missing required documentation: {doc}" for doc in self.missing_documents
        )

    @property
    def meets_requirements(self) -> bool:
        return not self.missing_documents


@dataclass(frozen=True)
class CompletionValidation:
    """
    Outcome of validating a milestone completion.

    ``is_valid`` is False whenever any error was found.  Whether an error
    prevents the completion depends on the case configuration, see
    ``blocking_errors``.  ``warnings`` never prevent it.
    """

    node_id: str
    errors: tuple[ValidationIssue, ...]
    warnings: tuple[ValidationIssue, ...]
    recommendations: tuple[str, ...]
    compliance: StageCompliance

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error_codes(self) -> tuple[str, ...]:
        return tuple(issue.code for issue in self.errors)

    def blocking_errors(self, require_completion: bool) -> tuple[ValidationIssue, ...]:
        if require_completion:
            return self.errors
        return tuple(i for i in self.errors if i.code in INVARIANT_ERRORS)

    def warning_codes(self) -> tuple[str, ...]:
        return tuple(issue.code for issue in self.warnings)


# ============================================================================
# Operations
# ============================================================================


def check_stage_billing_compliance(
    phase: CasePhase,
    documents: tuple[str, ...] | list[str],
    case_total_value: Decimal | None,
    rules: ComplianceRules,
) -> StageCompliance:
    """
    Phase documentation and court-approval requirements.

    Court approval (and its document) is required when the case's total
    value exceeds the rule set's threshold.
    """
    required = list(PHASE_DOCUMENTATION.get(phase, ()))
    court_approval_required = (
        case_total_value is not None
        and case_total_value > rules.court_approval_threshold()
    )
    suggestions: list[str] = []
    if court_approval_required:
        required.append(COURT_APPROVAL_DOCUMENT)
        suggestions.append("Submit for court approval before proceeding")

    supplied = set(documents)
    missing = tuple(doc for doc in required if doc not in supplied)

    return StageCompliance(
        phase=phase,
        documentation_required=tuple(required),
        missing_documents=missing,
        client_approval_required=phase in CLIENT_APPROVAL_PHASES,
        court_approval_required=court_approval_required,
        suggestions=tuple(suggestions),
    )


def validate_completion(
    node: BillingNode,
    evidence: CompletionData,
    *,
    nodes_by_id: Mapping[str, BillingNode],
    require_completion: bool,
    phase_started_on: date,
    rules: ComplianceRules,
    case_total_value: Decimal | None = None,
    approval_required: bool = False,
) -> CompletionValidation:
    """
    Validate completing ``node`` with ``evidence``.

    Pure function.

    Args:
        node: The node to complete.
        evidence: Completion date, documents and approver.
        nodes_by_id: The case's nodes, used to resolve dependencies.
        require_completion: Whether an unmet time threshold is an error.
        phase_started_on: Start date the time threshold counts from.
        rules: Regulatory constants.
        case_total_value: Case value for the court-approval check.
        approval_required: Case policy requiring an approver on every
            completion.
    """
    t0 = time.monotonic()
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    recommendations: list[str] = []

    # Time thresholds are advisory unless criteria are required
    threshold_issues = errors if require_completion else warnings

    if not node.is_active:
        errors.append(ValidationIssue(
            NODE_INACTIVE, f"Billing node {node.id} is inactive", node.id,
        ))
    if node.is_completed:
        errors.append(ValidationIssue(
            ALREADY_COMPLETED,
            f"Billing node {node.id} is already completed",
            node.id,
        ))

    for dep_id in sorted(node.dependencies):
        dep = nodes_by_id.get(dep_id)
        if dep is None or not dep.is_active or not dep.is_completed:
            errors.append(ValidationIssue(
                DEPENDENCY_NOT_SATISFIED,
                f"dependency not satisfied: {dep_id}",
                dep_id,
            ))
        elif dep.completion_date > evidence.completion_date:
            errors.append(ValidationIssue(
                DEPENDENCY_COMPLETED_LATER,
                f"dependency {dep_id} completed on {dep.completion_date}, "
                f"after {evidence.completion_date}",
                dep_id,
            ))

    threshold = node.criteria.time_threshold_days
    if threshold is not None:
        elapsed = (evidence.completion_date - phase_started_on).days
        if elapsed < threshold:
            threshold_issues.append(ValidationIssue(
                TIME_THRESHOLD_NOT_MET,
                f"Time threshold not yet met: {elapsed} of {threshold} days elapsed",
                node.id,
            ))

    supplied = set(evidence.documents)
    for doc in node.criteria.document_requirements:
        if doc not in supplied:
            errors.append(ValidationIssue(
                DOCUMENT_MISSING, f"Required document missing: {doc}", doc,
            ))

    if not evidence.approver_id:
        for approval in node.criteria.approval_requirements:
            errors.append(ValidationIssue(
                APPROVAL_MISSING, f"Approval required: {approval}", approval,
            ))
        if approval_required and not node.criteria.approval_requirements:
            errors.append(ValidationIssue(
                APPROVAL_MISSING,
                "Case policy requires an approver for every completion",
                None,
            ))

    if node.amount > LARGE_AMOUNT_THRESHOLD:
        recommendations.append(
            "Consider obtaining client approval for large amounts"
        )

    compliance = check_stage_billing_compliance(
        node.phase, evidence.documents, case_total_value, rules,
    )

    validation = CompletionValidation(
        node_id=node.id,
        errors=tuple(errors),
        warnings=tuple(warnings),
        recommendations=tuple(recommendations),
        compliance=compliance,
    )

    logger.info("completion_validated", extra={
        "node_id": node.id,
        "is_valid": validation.is_valid,
        "error_codes": validation.error_codes(),
        "warning_codes": validation.warning_codes(),
        "require_completion": require_completion,
        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
    })

    return validation
