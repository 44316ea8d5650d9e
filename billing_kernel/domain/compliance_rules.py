"""
ComplianceRules -- jurisdiction-specific regulatory constants.

Fee computation and completion validation receive an object satisfying
this protocol explicitly on every call.  The shipped implementation is
``billing_config.schema.ComplianceRuleSet``; tests may pass any object
with the same shape.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Protocol, runtime_checkable


@runtime_checkable
class ComplianceRules(Protocol):
    """Protocol for regulatory constants used by the billing engines.

    Implementations: ComplianceRuleSet (YAML-backed, versioned).
    """

    retainer_refundable_share: Decimal

    def minimum_hourly_rate(self, jurisdiction: str) -> Decimal:
        """Lowest hourly rate a lawyer may charge in the jurisdiction."""
        ...

    def maximum_contingency_percentage(self, jurisdiction: str) -> Decimal:
        """Legal cap on a contingency percentage (0..100)."""
        ...

    def tax_rate(self, jurisdiction: str, currency: str) -> Decimal:
        """Tax rate for the combination; 0 when none is configured."""
        ...

    def court_approval_threshold(self) -> Decimal:
        """Case value above which court approval of the fee is required."""
        ...

    def exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Directed exchange rate.

        Raises:
            ExchangeRateNotFoundError: When the directed pair is unknown.
        """
        ...

    def retainer_monthly_rate(self, case_type: str) -> Decimal:
        """Base monthly retainer for a case type."""
        ...
