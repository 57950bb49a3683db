# ==== JURISDICTION TAX ENGINE TESTS ==== #

"""
Unit tests for the jurisdiction tax engine.

Covers forward and reverse calculation, half-up rounding of each
component, jurisdiction fallback and the display helpers.
"""

from decimal import Decimal

import pytest

from app.business.errors import ValidationError
from app.business.tax import (
    JURISDICTION_TAX_RATES,
    TaxRates,
    calculate_tax,
    calculate_tax_from_total,
    format_minor_units,
    format_tax_breakdown,
    get_supported_jurisdictions,
    resolve_jurisdiction,
    split_tax_inclusive_total,
)


@pytest.mark.unit
class TestForwardCalculation:
    """Tax added on top of a subtotal."""

    def test_harmonized_jurisdiction(self):
        breakdown = calculate_tax(10000, "ON")

        assert breakdown.combined == 1300
        assert breakdown.primary == 0
        assert breakdown.secondary == 0
        assert breakdown.total_tax == 1300
        assert breakdown.total == 11300
        assert breakdown.effective_rate == pytest.approx(0.13)

    def test_split_jurisdiction(self):
        breakdown = calculate_tax(10000, "BC")

        assert (breakdown.primary, breakdown.secondary, breakdown.combined) == (500, 700, 0)
        assert breakdown.total_tax == 1200
        assert breakdown.total == 11200

    def test_components_round_half_up_independently(self):
        # 10000 * 0.09975 = 997.5
        breakdown = calculate_tax(10000, "QC")

        assert breakdown.primary == 500
        assert breakdown.secondary == 998
        assert breakdown.total_tax == breakdown.primary + breakdown.secondary
        assert breakdown.total == 11498

    def test_half_unit_rounds_up(self):
        assert calculate_tax(10, "AB").primary == 1

    def test_zero_subtotal(self):
        breakdown = calculate_tax(0, "NS")

        assert breakdown.total == 0
        assert breakdown.effective_rate == 0.0

    @pytest.mark.parametrize("code", sorted(JURISDICTION_TAX_RATES))
    def test_subtotal_plus_tax_equals_total(self, code):
        for subtotal in (1, 99, 12345, 999_999):
            breakdown = calculate_tax(subtotal, code)
            assert breakdown.subtotal + breakdown.total_tax == breakdown.total
            assert breakdown.primary + breakdown.secondary + breakdown.combined == breakdown.total_tax

    def test_negative_subtotal_rejected(self):
        with pytest.raises(ValidationError):
            calculate_tax(-1, "ON")

    @pytest.mark.parametrize("value", [10.5, "100", True])
    def test_non_integer_subtotal_rejected(self, value):
        with pytest.raises(ValidationError):
            calculate_tax(value, "ON")


@pytest.mark.unit
class TestJurisdictionResolution:

    def test_lowercase_code_is_normalized(self):
        assert resolve_jurisdiction(" on ") == "ON"

    def test_unknown_code_falls_back_to_default(self):
        assert resolve_jurisdiction("XX", default="BC") == "BC"
        assert calculate_tax(10000, "XX", default_jurisdiction="BC").jurisdiction == "BC"

    def test_missing_code_falls_back_to_default(self):
        assert resolve_jurisdiction(None) == "AB"

    def test_unknown_default_falls_back_to_alberta(self):
        assert resolve_jurisdiction("XX", default="ZZ") == "AB"

    def test_combined_rate_is_exclusive(self):
        with pytest.raises(ValueError):
            TaxRates(primary_rate=Decimal("0.05"), combined_rate=Decimal("0.13"))


@pytest.mark.unit
class TestReverseCalculation:
    """Subtotal derived from a tax-inclusive total."""

    def test_exact_reverse(self):
        breakdown = calculate_tax_from_total(11300, "ON")

        assert breakdown.subtotal == 10000
        assert breakdown.total_tax == 1300
        assert breakdown.total == 11300

    @pytest.mark.parametrize("code", sorted(JURISDICTION_TAX_RATES))
    def test_reverse_total_within_one_unit(self, code):
        for total in range(0, 20000, 137):
            breakdown = calculate_tax_from_total(total, code)
            assert abs(breakdown.total - total) <= 1

    @pytest.mark.parametrize("code", sorted(JURISDICTION_TAX_RATES))
    def test_round_trip_recovers_subtotal(self, code):
        for subtotal in range(0, 25000, 7):
            total = calculate_tax(subtotal, code).total
            assert abs(calculate_tax_from_total(total, code).subtotal - subtotal) <= 1

    def test_negative_total_rejected(self):
        with pytest.raises(ValidationError):
            calculate_tax_from_total(-100, "ON")


@pytest.mark.unit
class TestTaxInclusiveSplit:
    """Collected amount split into subtotal and tax without changing the total."""

    def test_harmonized_amount_that_drifts_in_reverse(self):
        assert calculate_tax_from_total(4, "ON").total == 5

        breakdown = split_tax_inclusive_total(4, "ON")

        assert (breakdown.subtotal, breakdown.combined, breakdown.total_tax, breakdown.total) == (4, 0, 0, 4)

    def test_split_jurisdiction_apportions_by_rate(self):
        breakdown = split_tax_inclusive_total(4, "QC")

        assert breakdown.subtotal == 3
        assert (breakdown.primary, breakdown.secondary, breakdown.total_tax) == (0, 1, 1)
        assert breakdown.total == 4

    def test_exact_amount_matches_forward_breakdown(self):
        assert split_tax_inclusive_total(11200, "BC") == calculate_tax(10000, "BC")

    @pytest.mark.parametrize("code", sorted(JURISDICTION_TAX_RATES))
    def test_total_is_always_the_collected_amount(self, code):
        for total in range(1, 2000):
            breakdown = split_tax_inclusive_total(total, code)
            assert breakdown.total == total
            assert breakdown.subtotal + breakdown.primary + breakdown.secondary + breakdown.combined == total
            assert breakdown.subtotal == calculate_tax_from_total(total, code).subtotal


@pytest.mark.unit
class TestDisplayHelpers:

    def test_format_minor_units(self):
        assert format_minor_units(123456) == "$1,234.56"
        assert format_minor_units(5) == "$0.05"
        assert format_minor_units(-5) == "-$0.05"

    def test_split_breakdown_lines(self):
        lines = format_tax_breakdown(calculate_tax(10000, "BC"))

        assert [line["label"] for line in lines] == ["Subtotal", "GST (5%)", "PST (7%)", "Total"]
        assert lines[-1]["amount"] == "$112.00"

    def test_quebec_secondary_is_labelled_qst(self):
        labels = [line["label"] for line in format_tax_breakdown(calculate_tax(10000, "QC"))]

        assert "QST (9.975%)" in labels

    def test_harmonized_breakdown_lines(self):
        labels = [line["label"] for line in format_tax_breakdown(calculate_tax(10000, "ON"))]

        assert labels == ["Subtotal", "HST (13%)", "Total"]

    def test_supported_jurisdictions_listing(self):
        listing = get_supported_jurisdictions()

        assert len(listing) == len(JURISDICTION_TAX_RATES)
        ontario = next(item for item in listing if item["code"] == "ON")
        assert ontario["name"] == "Ontario"
        assert ontario["total_rate"] == pytest.approx(0.13)
