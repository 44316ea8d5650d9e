"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the billing engine need to react to failures without parsing
message strings. Every error therefore:
  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (node ids, field names, cycles)

Example:
    try:
        calculate_fee(request, rules)
    except InvalidArgumentError as e:
        return {"error": e.code, "field": e.field, "reason": e.reason}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- InvalidArgumentError
    |   +-- InvalidCurrencyError
    |   +-- AmbiguousNodeError
    |
    +-- NotFoundError
    |   +-- CaseNotFoundError
    |   +-- BillingNodeNotFoundError
    |   +-- ConfigurationNotFoundError
    |   +-- ExchangeRateNotFoundError
    |   +-- RuleSetNotFoundError
    |
    +-- AlreadyCompletedError
    +-- ValidationFailedError
    +-- DependencyCycleError
    +-- UpstreamFailureError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                  | When Raised
----------------------|--------------------------------------------------------
INVALID_ARGUMENT      | Missing/malformed fee parameters, malformed node graph
INVALID_CURRENCY      | Not a valid ISO 4217 code
AMBIGUOUS_NODE        | Node id active in several cases and no case given
NOT_FOUND             | Case, node, configuration, rate or rule set unknown
ALREADY_COMPLETED     | Node was completed before (idempotency guard)
VALIDATION_FAILED     | Completion blocked under a strict configuration
DEPENDENCY_CYCLE      | Node dependencies form a cycle
UPSTREAM_FAILURE      | A collaborator (invoice issuer, notifier) failed

===============================================================================
PROPAGATION
===============================================================================

Pure engines raise these exceptions directly. Orchestration services catch
them at the boundary and return result objects carrying ``error_code``.
UpstreamFailureError is recorded on results for best-effort follow-on
actions and is only raised when the failing call was the primary action.
"""

from __future__ import annotations

from typing import Any


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Argument errors


class InvalidArgumentError(BillingKernelError):
    """Caller-supplied input is missing or malformed. Never retried."""

    code: str = "INVALID_ARGUMENT"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid argument '{field}': {reason}")


class InvalidCurrencyError(InvalidArgumentError):
    """Currency code is not a valid ISO 4217 code."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__("currency", f"not a valid ISO 4217 code: {currency!r}")


class AmbiguousNodeError(InvalidArgumentError):
    """A node id is active in more than one case and no case was given."""

    code: str = "AMBIGUOUS_NODE"

    def __init__(self, node_id: str, case_ids: tuple[str, ...]):
        self.node_id = node_id
        self.case_ids = case_ids
        super().__init__(
            "case_id", f"node {node_id} is active in cases {', '.join(case_ids)}",
        )


# Lookup errors


class NotFoundError(BillingKernelError):
    """Base exception for references to records that do not exist."""

    code: str = "NOT_FOUND"


class CaseNotFoundError(NotFoundError):
    """Case with given ID was not found."""

    code: str = "CASE_NOT_FOUND"

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case not found: {case_id}")


class BillingNodeNotFoundError(NotFoundError):
    """Billing node with given ID was not found."""

    code: str = "BILLING_NODE_NOT_FOUND"

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Billing node not found: {node_id}")


class ConfigurationNotFoundError(NotFoundError):
    """No stage billing configuration is stored for the case."""

    code: str = "CONFIGURATION_NOT_FOUND"

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Stage billing configuration not found for case {case_id}")


class ExchangeRateNotFoundError(NotFoundError):
    """No directed exchange rate exists for the currency pair."""

    code: str = "EXCHANGE_RATE_NOT_FOUND"

    def __init__(self, from_currency: str, to_currency: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(
            f"Exchange rate not found: {from_currency} -> {to_currency}"
        )


class RuleSetNotFoundError(NotFoundError):
    """Requested compliance rule set does not exist."""

    code: str = "RULE_SET_NOT_FOUND"

    def __init__(self, rule_set_id: str):
        self.rule_set_id = rule_set_id
        super().__init__(f"Compliance rule set not found: {rule_set_id}")


# State errors


class AlreadyCompletedError(BillingKernelError):
    """
    Billing node has already been completed.

    Completion is monotonic. A second completion attempt is a conflict,
    not a success, so that invoice generation never fires twice.
    """

    code: str = "ALREADY_COMPLETED"

    def __init__(self, node_id: str, completion_date: Any = None):
        self.node_id = node_id
        self.completion_date = completion_date
        suffix = f" on {completion_date}" if completion_date is not None else ""
        super().__init__(f"Billing node {node_id} already completed{suffix}")


class ValidationFailedError(BillingKernelError):
    """Completion validation found blocking errors under a strict configuration."""

    code: str = "VALIDATION_FAILED"

    def __init__(
        self,
        node_id: str,
        errors: tuple[Any, ...],
        warnings: tuple[Any, ...] = (),
    ):
        self.node_id = node_id
        self.errors = errors
        self.warnings = warnings
        super().__init__(
            f"Cannot complete billing node {node_id}: {len(errors)} error(s)"
        )


class DependencyCycleError(BillingKernelError):
    """Billing node dependencies form a cycle and can never become ready."""

    code: str = "DEPENDENCY_CYCLE"

    def __init__(self, cycle: tuple[str, ...]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class UpstreamFailureError(BillingKernelError):
    """A collaborator (invoice issuer, notification sink, store) failed."""

    code: str = "UPSTREAM_FAILURE"

    def __init__(self, collaborator: str, operation: str, reason: str):
        self.collaborator = collaborator
        self.operation = operation
        self.reason = reason
        super().__init__(f"{collaborator}.{operation} failed: {reason}")
