"""
Tests for the legal fee computation engine.

Every expected value is derived from the CN-2024 rule set:
minimum hourly rate 200, contingency cap 30%, CNY tax 6%,
court approval above 1,000,000.
"""

from decimal import Decimal

import pytest

from billing_engines.fees import (
    AdjustmentType,
    Complexity,
    ContingencyParameters,
    FeeCalculationRequest,
    FeeType,
    FlatParameters,
    HourlyParameters,
    HybridParameters,
    Jurisdiction,
    RetainerParameters,
    Urgency,
    build_fee_parameters,
    calculate_contingency_fee,
    calculate_fee,
    calculate_multi_currency_fee,
    calculate_retainer_fee,
    convert_currency,
)
from billing_kernel.exceptions import (
    ExchangeRateNotFoundError,
    InvalidArgumentError,
    InvalidCurrencyError,
)


def hourly(hours: str, rate: str, **kwargs) -> FeeCalculationRequest:
    return FeeCalculationRequest(
        parameters=HourlyParameters(hours=Decimal(hours), rate=Decimal(rate)),
        **kwargs,
    )


# =============================================================================
# Hourly
# =============================================================================


class TestHourlyFee:
    """Hourly fees with the minimum-rate floor."""

    def test_rate_below_minimum_is_raised_to_floor(self, rules):
        result = calculate_fee(hourly("10", "50"), rules)

        assert result.fee_type == FeeType.HOURLY
        assert result.effective_hourly_rate == Decimal("200")
        assert result.base_fee == Decimal("2000.00")
        assert result.final_fee == Decimal("2000.00")
        assert result.tax_amount == Decimal("120.00")
        assert result.total_with_tax == Decimal("2120.00")
        assert result.compliance.meets_minimum_wage is False

    def test_floor_adjustment_is_recorded(self, rules):
        result = calculate_fee(hourly("10", "50"), rules)

        adjustment = next(
            a for a in result.breakdown.adjustments
            if a.adjustment_type == AdjustmentType.MINIMUM_HOURLY_RATE
        )
        assert adjustment.original_value == Decimal("50")
        assert adjustment.applied_value == Decimal("200")
        assert any("raised" in step for step in result.breakdown.calculation_steps)

    def test_rate_above_minimum_is_kept(self, rules):
        result = calculate_fee(hourly("4", "500"), rules)

        assert result.base_fee == Decimal("2000.00")
        assert result.compliance.meets_minimum_wage is True
        assert not result.breakdown.adjustments

    def test_complexity_and_urgency_multiply(self, rules):
        result = calculate_fee(
            hourly("10", "300", complexity=Complexity.COMPLEX, urgency=Urgency.URGENT),
            rules,
        )

        # 3000 x 1.8 x 1.2
        assert result.final_fee == Decimal("6480.00")
        types = [a.adjustment_type for a in result.breakdown.adjustments]
        assert AdjustmentType.COMPLEXITY in types
        assert AdjustmentType.URGENCY in types

    def test_steps_end_with_final_tax_and_total(self, rules):
        steps = calculate_fee(hourly("10", "300"), rules).breakdown.calculation_steps

        assert steps[0] == "Base fee: 3000.00 CNY"
        assert steps[-3] == "Final fee: 3000.00 CNY"
        assert steps[-2] == "Tax (6.0%): 180.00 CNY"
        assert steps[-1] == "Total with tax: 3180.00 CNY"


# =============================================================================
# Flat, retainer, hybrid
# =============================================================================


class TestOtherFeeTypes:

    def test_flat_fee_applies_jurisdiction_multiplier(self, rules):
        request = FeeCalculationRequest(
            parameters=FlatParameters(base_amount=Decimal("10000")),
            jurisdiction=Jurisdiction.NATIONAL,
        )

        result = calculate_fee(request, rules)

        assert result.jurisdiction_multiplier == Decimal("1.5")
        assert result.final_fee == Decimal("15000.00")

    def test_retainer_is_refundable(self, rules):
        request = FeeCalculationRequest(
            parameters=RetainerParameters(base_amount=Decimal("8000")),
        )

        result = calculate_fee(request, rules)

        assert result.final_fee == Decimal("8000.00")
        assert result.compliance.refundable is True

    def test_hybrid_sums_components(self, rules):
        request = FeeCalculationRequest(
            parameters=HybridParameters(
                hours=Decimal("5"),
                rate=Decimal("400"),
                base_amount=Decimal("1000"),
                success_fee=Decimal("500"),
            ),
        )

        result = calculate_fee(request, rules)

        assert result.base_fee == Decimal("3500.00")

    def test_hybrid_requires_a_component(self):
        with pytest.raises(InvalidArgumentError):
            HybridParameters()

    def test_hybrid_hourly_needs_both_fields(self):
        with pytest.raises(InvalidArgumentError):
            HybridParameters(hours=Decimal("5"))

    def test_unknown_currency_tax_is_zero(self, rules):
        result = calculate_fee(hourly("10", "300", currency="USD"), rules)

        assert result.tax_rate == Decimal("0")
        assert result.total_with_tax == result.final_fee


# =============================================================================
# Contingency
# =============================================================================


class TestContingencyFee:

    def test_percentage_above_cap_is_limited(self, rules):
        result = calculate_contingency_fee(
            Decimal("2000000"), Decimal("40"), "commercial", "local", rules,
        )

        assert result.applied_percentage == Decimal("30")
        assert result.requested_fee == Decimal("800000.00")
        assert result.final_fee == Decimal("600000.00")
        assert result.maximum_allowed_fee == Decimal("600000.00")
        assert result.requires_court_approval is True
        assert result.within_legal_limits is False

    def test_small_settlement_needs_no_court_approval(self, rules):
        result = calculate_contingency_fee(
            Decimal("100000"), Decimal("20"), "commercial", "local", rules,
        )

        assert result.final_fee == Decimal("20000.00")
        assert result.requires_court_approval is False

    def test_calculate_fee_caps_contingency(self, rules):
        request = FeeCalculationRequest(
            parameters=ContingencyParameters(
                settlement_amount=Decimal("2000000"), percentage=Decimal("40"),
            ),
        )

        result = calculate_fee(request, rules)

        assert result.final_fee == Decimal("600000.00")
        assert result.tax_amount == Decimal("36000.00")
        assert result.compliance.within_legal_limits is False
        assert result.compliance.court_approval_required is True

    def test_legal_cap_wins_over_minimum_and_multipliers(self, rules):
        request = FeeCalculationRequest(
            parameters=ContingencyParameters(
                settlement_amount=Decimal("100000"), percentage=Decimal("30"),
            ),
            complexity=Complexity.COMPLEX,
            minimum=Decimal("50000"),
        )

        result = calculate_fee(request, rules)

        assert result.final_fee == Decimal("30000.00")
        assert any(
            a.adjustment_type == AdjustmentType.LEGAL_CAP
            for a in result.breakdown.adjustments
        )

    @pytest.mark.parametrize("percentage", ["0", "-5", "101"])
    def test_percentage_out_of_range_rejected(self, rules, percentage):
        with pytest.raises(InvalidArgumentError):
            calculate_contingency_fee(
                Decimal("1000"), Decimal(percentage), "commercial", "local", rules,
            )


# =============================================================================
# Minimum / maximum
# =============================================================================


class TestFeeBounds:

    def test_minimum_raises_fee(self, rules):
        result = calculate_fee(hourly("1", "300", minimum=Decimal("1000")), rules)

        assert result.final_fee == Decimal("1000.00")

    def test_maximum_limits_fee(self, rules):
        result = calculate_fee(hourly("100", "300", maximum=Decimal("10000")), rules)

        assert result.final_fee == Decimal("10000.00")

    def test_minimum_above_maximum_rejected(self):
        with pytest.raises(InvalidArgumentError):
            hourly("1", "300", minimum=Decimal("10"), maximum=Decimal("5"))


# =============================================================================
# Request parsing
# =============================================================================


class TestRequestFromDict:

    def test_camel_case_payload(self, rules):
        request = FeeCalculationRequest.from_dict({
            "feeType": "contingency",
            "parameters": {"settlementAmount": "500000", "percentage": 25},
            "jurisdiction": "provincial",
            "caseType": "labor_dispute",
        })

        assert request.fee_type == FeeType.CONTINGENCY
        assert request.jurisdiction == Jurisdiction.PROVINCIAL
        assert request.case_type == "labor_dispute"

    def test_missing_fee_type_rejected(self):
        with pytest.raises(InvalidArgumentError) as exc_info:
            FeeCalculationRequest.from_dict({"parameters": {}})
        assert exc_info.value.field == "fee_type"

    def test_unknown_fee_type_rejected(self):
        with pytest.raises(InvalidArgumentError):
            build_fee_parameters("barter", {})

    def test_missing_hours_rejected(self):
        with pytest.raises(InvalidArgumentError):
            build_fee_parameters(FeeType.HOURLY, {"rate": "300"})

    def test_invalid_currency_rejected(self):
        with pytest.raises(InvalidCurrencyError):
            hourly("1", "300", currency="XX")


# =============================================================================
# Retainer and currency
# =============================================================================


class TestRetainerFee:

    def test_case_type_rate_and_refundable_share(self, rules):
        result = calculate_retainer_fee("contract_dispute", "medium", 3, "CNY", rules)

        # 8000 x 1.3 = 10400 per month
        assert result.monthly_retainer == Decimal("10400.00")
        assert result.total_retainer == Decimal("31200.00")
        assert result.refundable_amount == Decimal("24960.00")
        assert result.refundable_percentage == Decimal("80.00")

    def test_unknown_case_type_uses_default_rate(self, rules):
        result = calculate_retainer_fee("maritime", "simple", 1, "CNY", rules)

        assert result.base_monthly_rate == Decimal("6000")

    def test_zero_months_rejected(self, rules):
        with pytest.raises(InvalidArgumentError):
            calculate_retainer_fee("contract_dispute", "simple", 0, "CNY", rules)


class TestCurrencyConversion:

    def test_directed_rate(self, rules):
        conversion = convert_currency(Decimal("1000"), "CNY", "USD", rules)

        assert conversion.exchange_rate == Decimal("0.14")
        assert conversion.converted_amount == Decimal("140.00")

    def test_rates_are_not_inverted(self, rules):
        back = convert_currency(Decimal("140"), "USD", "CNY", rules)

        assert back.converted_amount == Decimal("994.00")

    def test_same_currency_converts_at_one(self, rules):
        conversion = convert_currency(Decimal("10"), "CNY", "CNY", rules)

        assert conversion.converted_amount == Decimal("10.00")

    def test_unknown_pair_raises(self, rules):
        with pytest.raises(ExchangeRateNotFoundError):
            convert_currency(Decimal("10"), "USD", "EUR", rules)

    def test_multi_currency_recomputes_tax(self, rules):
        result = calculate_multi_currency_fee(hourly("10", "300"), "USD", rules)

        assert result.original.total_with_tax == Decimal("3180.00")
        assert result.converted.final_fee == Decimal("420.00")
        assert result.converted.tax_amount == Decimal("0.00")
        assert result.converted.currency == "USD"
