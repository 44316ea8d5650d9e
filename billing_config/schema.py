"""
ComplianceRuleSet schema.

Defines the versioned, human-authored regulatory constants that govern fee
computation: minimum hourly rates, contingency caps, tax tables, directed
exchange rates, retainer rates and the court-approval threshold.  YAML
files under ``billing_config/sets/`` are parsed into these types by the
loader.

A ``ComplianceRuleSet`` is immutable.  It is passed explicitly into every
fee computation and implements the ``ComplianceRules`` collaborator
protocol directly, so tests can pin a fixed rate snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum

from billing_kernel.exceptions import ExchangeRateNotFoundError

# Wildcard key matching any jurisdiction.
ANY_JURISDICTION = "*"


def _key(value: str | Enum) -> str:
    """Normalize an enum member or plain string to its lookup key."""
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


# ---------------------------------------------------------------------------
# Rule components
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JurisdictionRules:
    """Fee limits for one jurisdiction (or ``*`` for all)."""

    jurisdiction: str
    minimum_hourly_rate: Decimal
    maximum_contingency_percentage: Decimal

    def __post_init__(self) -> None:
        if self.minimum_hourly_rate < 0:
            raise ValueError("minimum_hourly_rate cannot be negative")
        if not (0 <= self.maximum_contingency_percentage <= 100):
            raise ValueError("maximum_contingency_percentage must be within 0..100")


@dataclass(frozen=True)
class TaxRateDef:
    """Tax rate for a (jurisdiction, currency) combination."""

    jurisdiction: str
    currency: str
    rate: Decimal
    tax_type: str = "VAT"


@dataclass(frozen=True)
class ExchangeRateDef:
    """A directed exchange rate. ``A -> B`` never implies ``B -> A``."""

    from_currency: str
    to_currency: str
    rate: Decimal

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError(
                f"Exchange rate {self.from_currency}->{self.to_currency} must be positive"
            )


@dataclass(frozen=True)
class RetainerRateDef:
    """Monthly retainer rate for a case type."""

    case_type: str
    monthly_rate: Decimal


# ---------------------------------------------------------------------------
# Rule set
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComplianceRuleSet:
    """
    Versioned regulatory constants.

    Lookup rules:
        - Jurisdiction-keyed values fall back to the ``*`` entry.
        - Tax rates for unknown (jurisdiction, currency) combinations are 0.
        - Exchange rates are never inverted; a missing directed pair raises
          ``ExchangeRateNotFoundError``.
        - Retainer rates for unknown case types use
          ``default_retainer_monthly_rate``.
    """

    rule_set_id: str
    version: int
    effective_from: date
    court_approval_threshold_amount: Decimal
    jurisdictions: tuple[JurisdictionRules, ...]
    tax_rates: tuple[TaxRateDef, ...] = ()
    exchange_rates: tuple[ExchangeRateDef, ...] = ()
    retainer_rates: tuple[RetainerRateDef, ...] = ()
    default_retainer_monthly_rate: Decimal = Decimal("0")
    retainer_refundable_share: Decimal = Decimal("0")
    description: str = ""
    checksum: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if not self.rule_set_id:
            raise ValueError("rule_set_id is required")
        if not self.jurisdictions:
            raise ValueError(f"Rule set {self.rule_set_id} defines no jurisdiction rules")
        if not (0 <= self.retainer_refundable_share <= 1):
            raise ValueError("retainer_refundable_share must be within 0..1")

    def jurisdiction_rules(self, jurisdiction: str | Enum) -> JurisdictionRules:
        key = _key(jurisdiction)
        fallback = None
        for rules in self.jurisdictions:
            if rules.jurisdiction == key:
                return rules
            if rules.jurisdiction == ANY_JURISDICTION:
                fallback = rules
        if fallback is None:
            raise KeyError(
                f"Rule set {self.rule_set_id} has no rules for jurisdiction {key!r}"
            )
        return fallback

    # ComplianceRules protocol

    def minimum_hourly_rate(self, jurisdiction: str | Enum) -> Decimal:
        return self.jurisdiction_rules(jurisdiction).minimum_hourly_rate

    def maximum_contingency_percentage(self, jurisdiction: str | Enum) -> Decimal:
        return self.jurisdiction_rules(jurisdiction).maximum_contingency_percentage

    def tax_rate(self, jurisdiction: str | Enum, currency: str) -> Decimal:
        key = _key(jurisdiction)
        fallback = Decimal("0")
        for tax in self.tax_rates:
            if tax.currency != currency:
                continue
            if tax.jurisdiction == key:
                return tax.rate
            if tax.jurisdiction == ANY_JURISDICTION:
                fallback = tax.rate
        return fallback

    def court_approval_threshold(self) -> Decimal:
        return self.court_approval_threshold_amount

    def exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        if from_currency == to_currency:
            return Decimal("1")
        for rate in self.exchange_rates:
            if rate.from_currency == from_currency and rate.to_currency == to_currency:
                return rate.rate
        raise ExchangeRateNotFoundError(from_currency, to_currency)

    def retainer_monthly_rate(self, case_type: str) -> Decimal:
        for rate in self.retainer_rates:
            if rate.case_type == case_type:
                return rate.monthly_rate
        return self.default_retainer_monthly_rate
