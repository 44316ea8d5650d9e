"""
Legal Fee Computation Engine.

Pure functions with deterministic behavior. No I/O.

This engine computes the fee owed under a fee arrangement, applying the
regulatory constraints supplied by a ``ComplianceRules`` object:
minimum hourly rates, contingency caps, tax, and court-approval
thresholds.  Every result carries an ordered list of calculation steps
and a structured list of adjustments generated from the same
intermediate values, so the two views cannot disagree.

Supported fee types:
- HOURLY       hours x max(rate, minimum hourly rate)
- FLAT         base amount x jurisdiction multiplier
- CONTINGENCY  settlement x min(percentage, legal cap) / 100
- RETAINER     base amount, refundable
- HYBRID       any combination of the above components plus a success fee

Usage:
    from billing_config import get_active_rules
    from billing_engines.fees import (
        FeeCalculationRequest,
        HourlyParameters,
        calculate_fee,
    )

    request = FeeCalculationRequest(
        parameters=HourlyParameters(hours=Decimal("10"), rate=Decimal("300")),
        complexity=Complexity.MEDIUM,
    )
    result = calculate_fee(request, get_active_rules())
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Mapping, Union

from billing_kernel.db.types import round_money, to_decimal, validate_currency
from billing_kernel.domain.compliance_rules import ComplianceRules
from billing_kernel.exceptions import InvalidArgumentError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.fees")


# ============================================================================
# Enums and multiplier tables
# ============================================================================


class FeeType(str, Enum):
    """Fee arrangements."""

    HOURLY = "HOURLY"
    FLAT = "FLAT"
    CONTINGENCY = "CONTINGENCY"
    RETAINER = "RETAINER"
    HYBRID = "HYBRID"


class Jurisdiction(str, Enum):
    """Court level of the matter."""

    LOCAL = "local"
    PROVINCIAL = "provincial"
    NATIONAL = "national"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class Urgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    EXPEDITED = "expedited"


class AdjustmentType(str, Enum):
    """Kinds of adjustment recorded in a fee breakdown."""

    MINIMUM_HOURLY_RATE = "minimum_hourly_rate"
    CONTINGENCY_CAP = "contingency_cap"
    JURISDICTION = "jurisdiction"
    COMPLEXITY = "complexity"
    URGENCY = "urgency"
    LEGAL_CAP = "legal_cap"
    MINIMUM_FEE = "minimum_fee"
    MAXIMUM_FEE = "maximum_fee"


COMPLEXITY_MULTIPLIERS: dict[Complexity, Decimal] = {
    Complexity.SIMPLE: Decimal("1.0"),
    Complexity.MEDIUM: Decimal("1.3"),
    Complexity.COMPLEX: Decimal("1.8"),
}

URGENCY_MULTIPLIERS: dict[Urgency, Decimal] = {
    Urgency.NORMAL: Decimal("1.0"),
    Urgency.URGENT: Decimal("1.2"),
    Urgency.EXPEDITED: Decimal("1.5"),
}

JURISDICTION_MULTIPLIERS: dict[Jurisdiction, Decimal] = {
    Jurisdiction.LOCAL: Decimal("1.0"),
    Jurisdiction.PROVINCIAL: Decimal("1.2"),
    Jurisdiction.NATIONAL: Decimal("1.5"),
}

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


def _require_positive(value: Decimal, field: str) -> None:
    if value <= 0:
        raise InvalidArgumentError(field, f"must be positive, got {value}")


def _require_percentage(value: Decimal, field: str) -> None:
    if not (0 < value <= _HUNDRED):
        raise InvalidArgumentError(field, f"must be within (0, 100], got {value}")


# ============================================================================
# Fee parameters (tagged by fee type)
# ============================================================================


@dataclass(frozen=True)
class HourlyParameters:
    """Hours worked at a requested hourly rate."""

    fee_type: ClassVar[FeeType] = FeeType.HOURLY

    hours: Decimal
    rate: Decimal

    def __post_init__(self) -> None:
        _require_positive(self.hours, "hours")
        _require_positive(self.rate, "rate")


@dataclass(frozen=True)
class FlatParameters:
    """A fixed fee for the matter."""

    fee_type: ClassVar[FeeType] = FeeType.FLAT

    base_amount: Decimal

    def __post_init__(self) -> None:
        _require_positive(self.base_amount, "base_amount")


@dataclass(frozen=True)
class ContingencyParameters:
    """A percentage of the settlement or judgment amount."""

    fee_type: ClassVar[FeeType] = FeeType.CONTINGENCY

    settlement_amount: Decimal
    percentage: Decimal

    def __post_init__(self) -> None:
        _require_positive(self.settlement_amount, "settlement_amount")
        _require_percentage(self.percentage, "percentage")


@dataclass(frozen=True)
class RetainerParameters:
    """An advance payment, refundable under the rule set."""

    fee_type: ClassVar[FeeType] = FeeType.RETAINER

    base_amount: Decimal

    def __post_init__(self) -> None:
        _require_positive(self.base_amount, "base_amount")


@dataclass(frozen=True)
class HybridParameters:
    """
    Any combination of hourly, flat and contingency components.

    A component is present only when all of its fields are supplied;
    supplying half of a component (hours without rate) is an error.
    """

    fee_type: ClassVar[FeeType] = FeeType.HYBRID

    hours: Decimal | None = None
    rate: Decimal | None = None
    base_amount: Decimal | None = None
    settlement_amount: Decimal | None = None
    percentage: Decimal | None = None
    success_fee: Decimal | None = None

    def __post_init__(self) -> None:
        if (self.hours is None) != (self.rate is None):
            raise InvalidArgumentError(
                "hours" if self.hours is None else "rate",
                "hybrid hourly component requires both hours and rate",
            )
        if (self.settlement_amount is None) != (self.percentage is None):
            raise InvalidArgumentError(
                "settlement_amount" if self.settlement_amount is None else "percentage",
                "hybrid contingency component requires both settlement_amount and percentage",
            )
        if self.hours is not None:
            _require_positive(self.hours, "hours")
            _require_positive(self.rate, "rate")
        if self.base_amount is not None:
            _require_positive(self.base_amount, "base_amount")
        if self.settlement_amount is not None:
            _require_positive(self.settlement_amount, "settlement_amount")
            _require_percentage(self.percentage, "percentage")
        if self.success_fee is not None and self.success_fee < 0:
            raise InvalidArgumentError("success_fee", "cannot be negative")
        if not (
            self.has_hourly
            or self.has_flat
            or self.has_contingency
            or self.success_fee is not None
        ):
            raise InvalidArgumentError(
                "parameters", "hybrid fee requires at least one component"
            )

    @property
    def has_hourly(self) -> bool:
        return self.hours is not None

    @property
    def has_flat(self) -> bool:
        return self.base_amount is not None

    @property
    def has_contingency(self) -> bool:
        return self.settlement_amount is not None


FeeParameters = Union[
    HourlyParameters,
    FlatParameters,
    ContingencyParameters,
    RetainerParameters,
    HybridParameters,
]

# Accepted spellings for each parameter field.
_PARAMETER_ALIASES: dict[str, tuple[str, ...]] = {
    "hours": ("hours",),
    "rate": ("rate",),
    "base_amount": ("base_amount", "baseAmount"),
    "settlement_amount": ("settlement_amount", "settlementAmount"),
    "percentage": ("percentage",),
    "success_fee": ("success_fee", "successFee"),
}


def _lookup(mapping: Mapping[str, Any], field: str) -> Any:
    for alias in _PARAMETER_ALIASES.get(field, (field,)):
        if alias in mapping and mapping[alias] is not None:
            return mapping[alias]
    return None


def _parse_enum(enum_cls: type[Enum], value: Any, field: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        try:
            return enum_cls[str(value).upper()]
        except KeyError:
            allowed = ", ".join(m.value for m in enum_cls)
            raise InvalidArgumentError(
                field, f"unknown value {value!r} (expected one of: {allowed})"
            ) from None


def build_fee_parameters(
    fee_type: FeeType | str,
    mapping: Mapping[str, Any],
) -> FeeParameters:
    """
    Build the parameter variant for ``fee_type`` from a loose mapping.

    Accepts snake_case or camelCase keys.  Keys that do not belong to the
    fee type are ignored.

    Raises:
        InvalidArgumentError: If a required field is missing or malformed.
    """
    fee_type = _parse_enum(FeeType, fee_type, "fee_type")

    def required(field: str) -> Decimal:
        return to_decimal(_lookup(mapping, field), field)

    def optional(field: str) -> Decimal | None:
        value = _lookup(mapping, field)
        return None if value is None else to_decimal(value, field)

    if fee_type == FeeType.HOURLY:
        return HourlyParameters(hours=required("hours"), rate=required("rate"))
    if fee_type == FeeType.FLAT:
        return FlatParameters(base_amount=required("base_amount"))
    if fee_type == FeeType.CONTINGENCY:
        return ContingencyParameters(
            settlement_amount=required("settlement_amount"),
            percentage=required("percentage"),
        )
    if fee_type == FeeType.RETAINER:
        return RetainerParameters(base_amount=required("base_amount"))
    return HybridParameters(
        hours=optional("hours"),
        rate=optional("rate"),
        base_amount=optional("base_amount"),
        settlement_amount=optional("settlement_amount"),
        percentage=optional("percentage"),
        success_fee=optional("success_fee"),
    )


# ============================================================================
# Request / result value objects
# ============================================================================


@dataclass(frozen=True)
class FeeCalculationRequest:
    """
    A fee computation request.

    ``minimum`` and ``maximum`` are a hard floor/ceiling applied after all
    multipliers.
    """

    parameters: FeeParameters
    jurisdiction: Jurisdiction = Jurisdiction.LOCAL
    complexity: Complexity = Complexity.SIMPLE
    urgency: Urgency = Urgency.NORMAL
    currency: str = "CNY"
    case_type: str = "general"
    minimum: Decimal | None = None
    maximum: Decimal | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "currency", validate_currency(self.currency))
        if not self.case_type:
            raise InvalidArgumentError("case_type", "is required")
        if self.minimum is not None and self.minimum < 0:
            raise InvalidArgumentError("minimum", "cannot be negative")
        if self.maximum is not None and self.maximum <= 0:
            raise InvalidArgumentError("maximum", "must be positive")
        if (
            self.minimum is not None
            and self.maximum is not None
            and self.minimum > self.maximum
        ):
            raise InvalidArgumentError(
                "minimum", f"minimum {self.minimum} exceeds maximum {self.maximum}"
            )

    @property
    def fee_type(self) -> FeeType:
        return self.parameters.fee_type

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FeeCalculationRequest:
        """
        Build a request from a loose mapping (API payload shape).

        ``minimum``/``maximum`` may sit at the top level or inside
        ``parameters``.
        """
        fee_type = data.get("fee_type", data.get("feeType"))
        if fee_type is None:
            raise InvalidArgumentError("fee_type", "is required")
        params = data.get("parameters") or {}

        def bound(name: str) -> Decimal | None:
            value = data.get(name, params.get(name))
            return None if value is None else to_decimal(value, name)

        return cls(
            parameters=build_fee_parameters(fee_type, params),
            jurisdiction=_parse_enum(
                Jurisdiction, data.get("jurisdiction", "local"), "jurisdiction"
            ),
            complexity=_parse_enum(
                Complexity, data.get("complexity", "simple"), "complexity"
            ),
            urgency=_parse_enum(Urgency, data.get("urgency", "normal"), "urgency"),
            currency=data.get("currency", "CNY"),
            case_type=data.get("case_type", data.get("caseType", "general")),
            minimum=bound("minimum"),
            maximum=bound("maximum"),
        )


@dataclass(frozen=True)
class FeeAdjustment:
    """One structured adjustment applied during computation."""

    adjustment_type: AdjustmentType
    reason: str
    multiplier: Decimal | None = None
    original_value: Decimal | None = None
    applied_value: Decimal | None = None


@dataclass(frozen=True)
class FeeCompliance:
    """Regulatory facts derived for a single fee computation."""

    meets_minimum_wage: bool
    within_legal_limits: bool
    disclosure_required: bool = True
    written_agreement_required: bool = True
    refundable: bool = False
    court_approval_required: bool = False


@dataclass(frozen=True)
class FeeBreakdown:
    """Human-readable steps and structured adjustments, built together."""

    calculation_steps: tuple[str, ...]
    adjustments: tuple[FeeAdjustment, ...]
    compliance: FeeCompliance


@dataclass(frozen=True)
class FeeCalculationResult:
    """
    Complete fee computation result.

    Attributes:
        fee_type: Fee arrangement computed
        base_fee: Fee before complexity/urgency multipliers
        complexity_multiplier: Multiplier applied for case complexity
        urgency_multiplier: Multiplier applied for urgency
        jurisdiction_multiplier: Jurisdiction multiplier actually applied
            (1.0 unless a flat component was present)
        final_fee: Fee after multipliers and all clamps
        tax_rate: Tax rate used
        tax_amount: final_fee x tax_rate
        total_with_tax: final_fee + tax_amount
        effective_hourly_rate: Rate used for hourly work, if any
    """

    fee_type: FeeType
    base_fee: Decimal
    complexity_multiplier: Decimal
    urgency_multiplier: Decimal
    jurisdiction_multiplier: Decimal
    final_fee: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_with_tax: Decimal
    breakdown: FeeBreakdown
    currency: str
    effective_hourly_rate: Decimal | None = None

    @property
    def compliance(self) -> FeeCompliance:
        return self.breakdown.compliance


@dataclass(frozen=True)
class ContingencyFeeResult:
    """Contingency fee with the legal cap and court-approval check applied."""

    settlement_amount: Decimal
    requested_percentage: Decimal
    maximum_percentage: Decimal
    applied_percentage: Decimal
    requested_fee: Decimal
    maximum_allowed_fee: Decimal
    final_fee: Decimal
    requires_court_approval: bool

    @property
    def within_legal_limits(self) -> bool:
        return self.requested_percentage <= self.maximum_percentage


@dataclass(frozen=True)
class RetainerFeeResult:
    """Retainer estimate for a case type and expected duration."""

    case_type: str
    base_monthly_rate: Decimal
    complexity_multiplier: Decimal
    estimated_duration_months: int
    monthly_retainer: Decimal
    total_retainer: Decimal
    refundable_amount: Decimal
    refundable_percentage: Decimal
    currency: str


@dataclass(frozen=True)
class CurrencyConversion:
    """An amount converted at a directed exchange rate."""

    from_currency: str
    to_currency: str
    amount: Decimal
    exchange_rate: Decimal
    converted_amount: Decimal


@dataclass(frozen=True)
class MultiCurrencyFeeResult:
    """A fee computed in one currency and restated in another."""

    original: FeeCalculationResult
    converted: FeeCalculationResult
    conversion: CurrencyConversion


# ============================================================================
# Base fee computation
# ============================================================================


@dataclass
class _BaseFee:
    """Mutable accumulator for base-fee computation."""

    amount: Decimal = Decimal("0")
    jurisdiction_multiplier: Decimal = _ONE
    effective_hourly_rate: Decimal | None = None
    steps: list[str] = field(default_factory=list)
    adjustments: list[FeeAdjustment] = field(default_factory=list)


def _hourly_component(
    hours: Decimal,
    rate: Decimal,
    jurisdiction: Jurisdiction,
    rules: ComplianceRules,
    acc: _BaseFee,
    currency: str,
) -> Decimal:
    floor = rules.minimum_hourly_rate(jurisdiction.value)
    effective = max(rate, floor)
    if rate < floor:
        logger.warning("minimum_hourly_rate_applied", extra={
            "requested_rate": str(rate),
            "minimum_hourly_rate": str(floor),
            "jurisdiction": jurisdiction.value,
        })
        acc.adjustments.append(FeeAdjustment(
            adjustment_type=AdjustmentType.MINIMUM_HOURLY_RATE,
            reason=(
                f"Requested rate {rate} is below the minimum hourly rate "
                f"{floor} for {jurisdiction.value} jurisdiction"
            ),
            original_value=rate,
            applied_value=floor,
        ))
        acc.steps.append(f"Hourly rate raised from {rate} to minimum {floor}")
    acc.effective_hourly_rate = effective
    amount = hours * effective
    acc.steps.append(
        f"Hourly: {hours}h x {effective} = {round_money(amount)} {currency}"
    )
    return amount


def _flat_component(
    base_amount: Decimal,
    jurisdiction: Jurisdiction,
    acc: _BaseFee,
    currency: str,
) -> Decimal:
    multiplier = JURISDICTION_MULTIPLIERS[jurisdiction]
    acc.jurisdiction_multiplier = multiplier
    amount = base_amount * multiplier
    if multiplier != _ONE:
        acc.adjustments.append(FeeAdjustment(
            adjustment_type=AdjustmentType.JURISDICTION,
            reason=f"Jurisdiction: {jurisdiction.value}",
            multiplier=multiplier,
        ))
    acc.steps.append(
        f"Flat: {base_amount} x jurisdiction {multiplier} = "
        f"{round_money(amount)} {currency}"
    )
    return amount


def _contingency_component(
    settlement_amount: Decimal,
    percentage: Decimal,
    jurisdiction: Jurisdiction,
    rules: ComplianceRules,
    acc: _BaseFee,
    currency: str,
) -> Decimal:
    cap = rules.maximum_contingency_percentage(jurisdiction.value)
    applied = min(percentage, cap)
    if percentage > cap:
        logger.warning("contingency_cap_applied", extra={
            "requested_percentage": str(percentage),
            "maximum_percentage": str(cap),
            "jurisdiction": jurisdiction.value,
        })
        acc.adjustments.append(FeeAdjustment(
            adjustment_type=AdjustmentType.CONTINGENCY_CAP,
            reason=(
                f"Requested contingency {percentage}% exceeds the legal "
                f"maximum of {cap}%"
            ),
            original_value=percentage,
            applied_value=cap,
        ))
    amount = settlement_amount * applied / _HUNDRED
    acc.steps.append(
        f"Contingency: {settlement_amount} x {applied}% = "
        f"{round_money(amount)} {currency}"
    )
    return amount


def _compute_base_fee(
    request: FeeCalculationRequest,
    rules: ComplianceRules,
) -> _BaseFee:
    params = request.parameters
    currency = request.currency
    acc = _BaseFee()

    if isinstance(params, HourlyParameters):
        acc.amount = _hourly_component(
            params.hours, params.rate, request.jurisdiction, rules, acc, currency
        )
    elif isinstance(params, FlatParameters):
        acc.amount = _flat_component(
            params.base_amount, request.jurisdiction, acc, currency
        )
    elif isinstance(params, ContingencyParameters):
        acc.amount = _contingency_component(
            params.settlement_amount, params.percentage,
            request.jurisdiction, rules, acc, currency,
        )
    elif isinstance(params, RetainerParameters):
        acc.amount = params.base_amount
        acc.steps.append(f"Retainer: {params.base_amount} {currency} (refundable)")
    elif isinstance(params, HybridParameters):
        total = Decimal("0")
        if params.has_hourly:
            total += _hourly_component(
                params.hours, params.rate, request.jurisdiction, rules, acc, currency
            )
        if params.has_flat:
            total += _flat_component(
                params.base_amount, request.jurisdiction, acc, currency
            )
        if params.has_contingency:
            total += _contingency_component(
                params.settlement_amount, params.percentage,
                request.jurisdiction, rules, acc, currency,
            )
        if params.success_fee is not None:
            total += params.success_fee
            acc.steps.append(f"Success fee: {params.success_fee} {currency}")
        acc.amount = total
    else:
        raise InvalidArgumentError(
            "parameters", f"unsupported parameter type {type(params).__name__}"
        )

    acc.steps.insert(0, f"Base fee: {round_money(acc.amount)} {currency}")
    return acc


def _settlement_amount(params: FeeParameters) -> Decimal | None:
    if isinstance(params, ContingencyParameters):
        return params.settlement_amount
    if isinstance(params, HybridParameters) and params.has_contingency:
        return params.settlement_amount
    return None


def _derive_compliance(
    request: FeeCalculationRequest,
    rules: ComplianceRules,
) -> FeeCompliance:
    params = request.parameters
    jurisdiction = request.jurisdiction.value

    meets_minimum_wage = True
    if isinstance(params, HourlyParameters):
        meets_minimum_wage = params.rate >= rules.minimum_hourly_rate(jurisdiction)

    within_legal_limits = True
    if isinstance(params, ContingencyParameters):
        within_legal_limits = (
            params.percentage <= rules.maximum_contingency_percentage(jurisdiction)
        )

    settlement = _settlement_amount(params)
    court_approval_required = (
        settlement is not None and settlement > rules.court_approval_threshold()
    )

    return FeeCompliance(
        meets_minimum_wage=meets_minimum_wage,
        within_legal_limits=within_legal_limits,
        refundable=isinstance(params, RetainerParameters),
        court_approval_required=court_approval_required,
    )


# ============================================================================
# Public operations
# ============================================================================


def calculate_fee(
    request: FeeCalculationRequest,
    rules: ComplianceRules,
) -> FeeCalculationResult:
    """
    Compute the fee owed under a fee arrangement.

    Pure function - no side effects, no I/O, deterministic output.

    Order of operations:
        1. Base fee by fee type (minimum-rate floor, jurisdiction
           multiplier for flat components, contingency cap).
        2. Complexity and urgency multipliers.
        3. Caller minimum / maximum.
        4. CONTINGENCY only: clamp to the legal cap amount, so the cap
           holds even against a caller minimum.
        5. Round to two places, then tax at the rule-set rate.

    Raises:
        InvalidArgumentError: If the parameters are unusable.
    """
    t0 = time.monotonic()
    fee_type = request.fee_type
    currency = request.currency

    logger.info("fee_calculation_started", extra={
        "fee_type": fee_type.value,
        "case_type": request.case_type,
        "jurisdiction": request.jurisdiction.value,
        "complexity": request.complexity.value,
        "urgency": request.urgency.value,
        "currency": currency,
    })

    base = _compute_base_fee(request, rules)
    steps = base.steps
    adjustments = base.adjustments

    complexity_multiplier = COMPLEXITY_MULTIPLIERS[request.complexity]
    urgency_multiplier = URGENCY_MULTIPLIERS[request.urgency]
    steps.append(f"Complexity multiplier: {complexity_multiplier}x")
    steps.append(f"Urgency multiplier: {urgency_multiplier}x")
    if complexity_multiplier != _ONE:
        adjustments.append(FeeAdjustment(
            adjustment_type=AdjustmentType.COMPLEXITY,
            reason=f"Case complexity: {request.complexity.value}",
            multiplier=complexity_multiplier,
        ))
    if urgency_multiplier != _ONE:
        adjustments.append(FeeAdjustment(
            adjustment_type=AdjustmentType.URGENCY,
            reason=f"Case urgency: {request.urgency.value}",
            multiplier=urgency_multiplier,
        ))

    fee = base.amount * complexity_multiplier * urgency_multiplier

    if request.minimum is not None and fee < request.minimum:
        adjustments.append(FeeAdjustment(
            adjustment_type=AdjustmentType.MINIMUM_FEE,
            reason=f"Fee raised to the agreed minimum {request.minimum}",
            original_value=round_money(fee),
            applied_value=request.minimum,
        ))
        steps.append(f"Minimum fee applied: {request.minimum} {currency}")
        fee = request.minimum
    if request.maximum is not None and fee > request.maximum:
        adjustments.append(FeeAdjustment(
            adjustment_type=AdjustmentType.MAXIMUM_FEE,
            reason=f"Fee limited to the agreed maximum {request.maximum}",
            original_value=round_money(fee),
            applied_value=request.maximum,
        ))
        steps.append(f"Maximum fee applied: {request.maximum} {currency}")
        fee = request.maximum

    params = request.parameters
    if isinstance(params, ContingencyParameters):
        cap_percentage = rules.maximum_contingency_percentage(request.jurisdiction.value)
        legal_cap = params.settlement_amount * cap_percentage / _HUNDRED
        if fee > legal_cap:
            logger.warning("contingency_legal_cap_applied", extra={
                "adjusted_fee": str(round_money(fee)),
                "legal_cap": str(round_money(legal_cap)),
            })
            adjustments.append(FeeAdjustment(
                adjustment_type=AdjustmentType.LEGAL_CAP,
                reason=(
                    f"Fee limited to {cap_percentage}% of the settlement amount"
                ),
                original_value=round_money(fee),
                applied_value=round_money(legal_cap),
            ))
            steps.append(f"Legal cap applied: {round_money(legal_cap)} {currency}")
            fee = legal_cap

    final_fee = round_money(fee)
    tax_rate = rules.tax_rate(request.jurisdiction.value, currency)
    tax_amount = round_money(final_fee * tax_rate)
    total_with_tax = final_fee + tax_amount

    steps.append(f"Final fee: {final_fee} {currency}")
    steps.append(f"Tax ({tax_rate * _HUNDRED:.1f}%): {tax_amount} {currency}")
    steps.append(f"Total with tax: {total_with_tax} {currency}")

    result = FeeCalculationResult(
        fee_type=fee_type,
        base_fee=round_money(base.amount),
        complexity_multiplier=complexity_multiplier,
        urgency_multiplier=urgency_multiplier,
        jurisdiction_multiplier=base.jurisdiction_multiplier,
        final_fee=final_fee,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        total_with_tax=total_with_tax,
        breakdown=FeeBreakdown(
            calculation_steps=tuple(steps),
            adjustments=tuple(adjustments),
            compliance=_derive_compliance(request, rules),
        ),
        currency=currency,
        effective_hourly_rate=base.effective_hourly_rate,
    )

    duration_ms = round((time.monotonic() - t0) * 1000, 2)
    logger.info("fee_calculation_completed", extra={
        "fee_type": fee_type.value,
        "base_fee": str(result.base_fee),
        "final_fee": str(result.final_fee),
        "tax_amount": str(result.tax_amount),
        "total_with_tax": str(result.total_with_tax),
        "adjustment_count": len(adjustments),
        "duration_ms": duration_ms,
    })

    return result


def calculate_contingency_fee(
    settlement_amount: Decimal,
    percentage: Decimal,
    case_type: str,
    jurisdiction: Jurisdiction | str,
    rules: ComplianceRules,
) -> ContingencyFeeResult:
    """
    Contingency fee limited by the jurisdiction's legal cap.

    Court approval is required when the settlement exceeds the rule set's
    court-approval threshold.
    """
    params = ContingencyParameters(
        settlement_amount=to_decimal(settlement_amount, "settlement_amount"),
        percentage=to_decimal(percentage, "percentage"),
    )
    if not case_type:
        raise InvalidArgumentError("case_type", "is required")
    jurisdiction = _parse_enum(Jurisdiction, jurisdiction, "jurisdiction")

    cap = rules.maximum_contingency_percentage(jurisdiction.value)
    applied = min(params.percentage, cap)
    requested_fee = round_money(params.settlement_amount * params.percentage / _HUNDRED)
    maximum_allowed = round_money(params.settlement_amount * cap / _HUNDRED)
    final_fee = round_money(params.settlement_amount * applied / _HUNDRED)
    requires_court_approval = params.settlement_amount > rules.court_approval_threshold()

    if params.percentage > cap:
        logger.warning("contingency_cap_applied", extra={
            "requested_percentage": str(params.percentage),
            "maximum_percentage": str(cap),
            "jurisdiction": jurisdiction.value,
        })

    logger.info("contingency_fee_calculated", extra={
        "case_type": case_type,
        "settlement_amount": str(params.settlement_amount),
        "applied_percentage": str(applied),
        "final_fee": str(final_fee),
        "requires_court_approval": requires_court_approval,
    })

    return ContingencyFeeResult(
        settlement_amount=params.settlement_amount,
        requested_percentage=params.percentage,
        maximum_percentage=cap,
        applied_percentage=applied,
        requested_fee=requested_fee,
        maximum_allowed_fee=maximum_allowed,
        final_fee=final_fee,
        requires_court_approval=requires_court_approval,
    )


def calculate_retainer_fee(
    case_type: str,
    complexity: Complexity | str,
    estimated_duration_months: int,
    currency: str,
    rules: ComplianceRules,
) -> RetainerFeeResult:
    """Monthly and total retainer for a case type, with the refundable share."""
    if not case_type:
        raise InvalidArgumentError("case_type", "is required")
    complexity = _parse_enum(Complexity, complexity, "complexity")
    if isinstance(estimated_duration_months, bool) or not isinstance(
        estimated_duration_months, int
    ):
        raise InvalidArgumentError(
            "estimated_duration_months", "must be a whole number of months"
        )
    if estimated_duration_months <= 0:
        raise InvalidArgumentError("estimated_duration_months", "must be positive")
    currency = validate_currency(currency)

    base_rate = rules.retainer_monthly_rate(case_type)
    multiplier = COMPLEXITY_MULTIPLIERS[complexity]
    monthly = round_money(base_rate * multiplier)
    total = monthly * estimated_duration_months
    share = rules.retainer_refundable_share
    refundable = round_money(total * share)

    logger.info("retainer_fee_calculated", extra={
        "case_type": case_type,
        "complexity": complexity.value,
        "months": estimated_duration_months,
        "monthly_retainer": str(monthly),
        "total_retainer": str(total),
    })

    return RetainerFeeResult(
        case_type=case_type,
        base_monthly_rate=base_rate,
        complexity_multiplier=multiplier,
        estimated_duration_months=estimated_duration_months,
        monthly_retainer=monthly,
        total_retainer=total,
        refundable_amount=refundable,
        refundable_percentage=share * _HUNDRED,
        currency=currency,
    )


def convert_currency(
    amount: Decimal,
    from_currency: str,
    to_currency: str,
    rules: ComplianceRules,
) -> CurrencyConversion:
    """
    Convert at the directed rate ``from_currency -> to_currency``.

    Identical currencies convert at 1.  Rates are never inverted.

    Raises:
        ExchangeRateNotFoundError: If the directed pair is not configured.
        InvalidCurrencyError: If either code is not ISO 4217.
    """
    amount = to_decimal(amount, "amount")
    if amount < 0:
        raise InvalidArgumentError("amount", "cannot be negative")
    from_currency = validate_currency(from_currency)
    to_currency = validate_currency(to_currency)

    rate = rules.exchange_rate(from_currency, to_currency)
    converted = round_money(amount * rate)

    logger.debug("currency_converted", extra={
        "from_currency": from_currency,
        "to_currency": to_currency,
        "amount": str(amount),
        "exchange_rate": str(rate),
        "converted_amount": str(converted),
    })

    return CurrencyConversion(
        from_currency=from_currency,
        to_currency=to_currency,
        amount=amount,
        exchange_rate=rate,
        converted_amount=converted,
    )


def calculate_multi_currency_fee(
    request: FeeCalculationRequest,
    target_currency: str,
    rules: ComplianceRules,
) -> MultiCurrencyFeeResult:
    """
    Compute a fee in the request currency and restate it in another.

    The final fee is converted at the directed rate and tax is recomputed
    at the target currency's rate.
    """
    original = calculate_fee(request, rules)
    conversion = convert_currency(
        original.final_fee, request.currency, target_currency, rules
    )
    target = conversion.to_currency
    tax_rate = rules.tax_rate(request.jurisdiction.value, target)
    tax_amount = round_money(conversion.converted_amount * tax_rate)

    steps = original.breakdown.calculation_steps + (
        f"Converted {original.final_fee} {original.currency} to "
        f"{conversion.converted_amount} {target} at {conversion.exchange_rate}",
        f"Tax ({tax_rate * _HUNDRED:.1f}%): {tax_amount} {target}",
    )
    converted = replace(
        original,
        base_fee=round_money(original.base_fee * conversion.exchange_rate),
        final_fee=conversion.converted_amount,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        total_with_tax=conversion.converted_amount + tax_amount,
        breakdown=replace(original.breakdown, calculation_steps=steps),
        currency=target,
        effective_hourly_rate=(
            None if original.effective_hourly_rate is None
            else round_money(original.effective_hourly_rate * conversion.exchange_rate)
        ),
    )

    return MultiCurrencyFeeResult(
        original=original,
        converted=converted,
        conversion=conversion,
    )
