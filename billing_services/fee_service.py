"""
billing_services.fee_service -- Fee computation boundary.

Responsibility:
    Exposes the pure fee engine (``billing_engines.fees``) to callers that
    want result objects instead of exceptions.  Binds the active compliance
    rule set once at construction.

Architecture position:
    Services layer.  May import from billing_engines/, billing_config/ and
    billing_kernel/.

Invariants enforced:
    - Taxonomy errors (``BillingKernelError``) never escape; they become a
      ``FeeServiceResult`` with ``error_code`` set.
    - Any other exception is a defect and propagates.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Generic, Mapping, TypeVar

from billing_config import get_active_rules
from billing_engines.fees import (
    ContingencyFeeResult,
    CurrencyConversion,
    FeeCalculationRequest,
    FeeCalculationResult,
    MultiCurrencyFeeResult,
    RetainerFeeResult,
    calculate_contingency_fee,
    calculate_fee,
    calculate_multi_currency_fee,
    calculate_retainer_fee,
    convert_currency,
)
from billing_kernel.domain.compliance_rules import ComplianceRules
from billing_kernel.exceptions import BillingKernelError, InvalidArgumentError, NotFoundError
from billing_kernel.logging_config import get_logger

logger = get_logger("services.fee_service")

T = TypeVar("T")


class FeeServiceStatus(str, Enum):
    SUCCESS = "success"
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class FeeServiceResult(Generic[T]):
    """Outcome of a fee service call."""

    status: FeeServiceStatus
    value: T | None = None
    error_code: str | None = None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status == FeeServiceStatus.SUCCESS

    @classmethod
    def success(cls, value: T) -> FeeServiceResult[T]:
        return cls(status=FeeServiceStatus.SUCCESS, value=value)

    @classmethod
    def from_error(cls, exc: BillingKernelError) -> FeeServiceResult[T]:
        if isinstance(exc, InvalidArgumentError):
            status = FeeServiceStatus.INVALID_ARGUMENT
        elif isinstance(exc, NotFoundError):
            status = FeeServiceStatus.NOT_FOUND
        else:
            status = FeeServiceStatus.FAILED
        return cls(status=status, error_code=exc.code, message=str(exc))


class FeeCalculationService:
    """
    Fee calculations against one compliance rule set.

    Usage::

        service = FeeCalculationService()            # active rule set
        result = service.calculate_fee({
            "feeType": "hourly", "parameters": {"hours": "10", "rate": "50"},
        })
        if result.is_success:
            result.value.total_with_tax
    """

    def __init__(self, rules: ComplianceRules | None = None):
        self._rules = rules if rules is not None else get_active_rules()

    @property
    def rules(self) -> ComplianceRules:
        return self._rules

    def calculate_fee(
        self, request: FeeCalculationRequest | Mapping[str, Any],
    ) -> FeeServiceResult[FeeCalculationResult]:
        def run() -> FeeCalculationResult:
            req = (
                request if isinstance(request, FeeCalculationRequest)
                else FeeCalculationRequest.from_dict(request)
            )
            return calculate_fee(req, self._rules)
        return self._call("calculate_fee", run)

    def calculate_contingency_fee(
        self,
        settlement_amount: Decimal,
        percentage: Decimal,
        case_type: str,
        jurisdiction: str = "local",
    ) -> FeeServiceResult[ContingencyFeeResult]:
        return self._call("calculate_contingency_fee", lambda: calculate_contingency_fee(
            settlement_amount, percentage, case_type, jurisdiction, self._rules,
        ))

    def calculate_retainer_fee(
        self,
        case_type: str,
        complexity: str = "simple",
        estimated_duration_months: int = 1,
        currency: str = "CNY",
    ) -> FeeServiceResult[RetainerFeeResult]:
        return self._call("calculate_retainer_fee", lambda: calculate_retainer_fee(
            case_type, complexity, estimated_duration_months, currency, self._rules,
        ))

    def convert_currency(
        self, amount: Decimal, from_currency: str, to_currency: str,
    ) -> FeeServiceResult[CurrencyConversion]:
        return self._call("convert_currency", lambda: convert_currency(
            amount, from_currency, to_currency, self._rules,
        ))

    def calculate_multi_currency_fee(
        self,
        request: FeeCalculationRequest | Mapping[str, Any],
        target_currency: str,
    ) -> FeeServiceResult[MultiCurrencyFeeResult]:
        def run() -> MultiCurrencyFeeResult:
            req = (
                request if isinstance(request, FeeCalculationRequest)
                else FeeCalculationRequest.from_dict(request)
            )
            return calculate_multi_currency_fee(req, target_currency, self._rules)
        return self._call("calculate_multi_currency_fee", run)

    def _call(self, operation: str, fn: Callable[[], T]) -> FeeServiceResult[T]:
        t0 = time.monotonic()
        try:
            value = fn()
        except BillingKernelError as exc:
            logger.warning("fee_service_rejected", extra={
                "operation": operation,
                "error_code": exc.code,
                "error": str(exc),
            })
            return FeeServiceResult.from_error(exc)
        logger.debug("fee_service_completed", extra={
            "operation": operation,
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return FeeServiceResult.success(value)
