from dataclasses import replace

import pytest
from hypothesis import given, strategies as st

from chariot.services.pricing import (
    CATEGORY_PARTS,
    PRICING_FIXED,
    PRICING_LABOR,
    PRICING_PARTS,
    InvalidLineItem,
    LineInput,
    compute_line_total,
    price_line,
)


def test_fixed_price_with_tax_percent():
    amounts = price_line(LineInput(pricing=PRICING_FIXED, fixed_price_cents=10000, tax_bps=800))
    assert amounts.base_cents == 10000
    assert amounts.tax_cents == 800
    assert amounts.total_cents == 10800


def test_fixed_price_ignores_quantity():
    line = LineInput(pricing=PRICING_FIXED, fixed_price_cents=10000, quantity_hundredths=300)
    assert compute_line_total(line) == 10000


def test_labor_rate_times_fractional_hours():
    assert compute_line_total(LineInput(pricing=PRICING_LABOR, labor_rate_cents=12500, labor_hours_hundredths=150)) == 18750
    # 9999 * 0.33 = 3299.67
    assert compute_line_total(LineInput(pricing=PRICING_LABOR, labor_rate_cents=9999, labor_hours_hundredths=33)) == 3300


def test_parts_cost_times_quantity():
    line = LineInput(pricing=PRICING_PARTS, category=CATEGORY_PARTS, parts_cost_cents=1899, quantity_hundredths=400)
    assert compute_line_total(line) == 7596


def test_percent_discount_applies_before_tax():
    amounts = price_line(LineInput(fixed_price_cents=10000, discount_bps=1000, tax_bps=800))
    assert amounts.discount_cents == 1000
    assert amounts.net_cents == 9000
    assert amounts.tax_cents == 720
    assert amounts.total_cents == 9720


def test_fixed_discount_is_capped_at_base():
    amounts = price_line(LineInput(fixed_price_cents=10000, discount_cents=15000, tax_bps=800))
    assert amounts.discount_cents == 10000
    assert amounts.net_cents == 0
    assert amounts.total_cents == 0


def test_non_taxable_line_suppresses_tax():
    assert compute_line_total(LineInput(fixed_price_cents=10000, tax_bps=800, taxable=False)) == 10000
    assert compute_line_total(LineInput(fixed_price_cents=10000, tax_cents=500, taxable=False)) == 10000


def test_explicit_tax_amount():
    assert compute_line_total(LineInput(fixed_price_cents=10000, tax_cents=500)) == 10500


def test_hidden_line_keeps_its_own_total():
    line = LineInput(fixed_price_cents=10000, hidden=True)
    assert compute_line_total(line) == 10000
    assert line.counts_toward_order is False


@pytest.mark.parametrize(
    "line, field",
    [
        (LineInput(pricing=PRICING_PARTS, parts_cost_cents=100, quantity_hundredths=-100), "quantity_hundredths"),
        (LineInput(fixed_price_cents=-1), "fixed_price_cents"),
        (LineInput(fixed_price_cents=100, discount_cents=10, discount_bps=100), "discount"),
        (LineInput(fixed_price_cents=100, tax_cents=10, tax_bps=100), "tax"),
        (LineInput(fixed_price_cents=100, tax_bps=10_001), "tax_bps"),
        (LineInput(pricing="per_foot", fixed_price_cents=100), "pricing"),
        (LineInput(category="fuel"), "category"),
        (LineInput(status="maybe"), "status"),
    ],
)
def test_invalid_lines_are_rejected(line, field):
    with pytest.raises(InvalidLineItem) as exc:
        price_line(line)
    assert field in exc.value.details


def test_invalid_line_reports_every_problem():
    with pytest.raises(InvalidLineItem) as exc:
        price_line(LineInput(fixed_price_cents=-1, discount_cents=-5, tax_bps=20_000))
    assert {"fixed_price_cents", "discount_cents", "tax_bps"} <= set(exc.value.details)


line_strategy = st.builds(
    LineInput,
    pricing=st.sampled_from([PRICING_FIXED, PRICING_LABOR, PRICING_PARTS]),
    quantity_hundredths=st.integers(min_value=0, max_value=100_000),
    labor_hours_hundredths=st.integers(min_value=0, max_value=10_000),
    fixed_price_cents=st.integers(min_value=0, max_value=10_000_000),
    labor_rate_cents=st.integers(min_value=0, max_value=100_000),
    parts_cost_cents=st.integers(min_value=0, max_value=1_000_000),
    discount_bps=st.integers(min_value=0, max_value=10_000),
    tax_bps=st.integers(min_value=0, max_value=10_000),
    taxable=st.booleans(),
)


@given(line=line_strategy)
def test_line_total_is_never_negative(line):
    amounts = price_line(line)
    assert amounts.total_cents >= 0
    assert amounts.net_cents >= 0
    assert amounts.total_cents == amounts.net_cents + amounts.tax_cents


@given(line=line_strategy, extra=st.integers(min_value=0, max_value=10_000))
def test_line_total_is_non_decreasing_in_quantity(line, extra):
    bigger = replace(line, quantity_hundredths=line.quantity_hundredths + extra)
    assert compute_line_total(bigger) >= compute_line_total(line)


@given(
    line=line_strategy,
    discount_cents=st.integers(min_value=0, max_value=20_000_000),
    extra=st.integers(min_value=0, max_value=10_000),
)
def test_fixed_discount_total_is_non_decreasing_in_quantity(line, discount_cents, extra):
    line = replace(line, discount_bps=0, discount_cents=discount_cents)
    bigger = replace(line, quantity_hundredths=line.quantity_hundredths + extra)
    assert compute_line_total(bigger) >= compute_line_total(line)
