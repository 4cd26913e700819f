"""
Chhaya Printing Solution (CPS) - Payment Ledger Tests
Version: 1.0.0

Bill total / advance / dues arithmetic, validation messages, payment status
and input normalisation.
"""

import pytest

from cps_payment_ledger_v1 import (
    ADVANCE_EXCEEDS_TOTAL_MESSAGE,
    NEGATIVE_ADVANCE_MESSAGE,
    PaymentStatus,
    calculate_complete_invoice,
    calculate_line_item,
    calculate_payment,
    calculate_products_total,
    format_currency,
    get_payment_status,
    round_amount,
    to_amount,
    validate_advance_payment,
)

# ============================================
# CALCULATE PAYMENT
# ============================================

class TestCalculatePayment:
    """Dues derivation and advance validation."""

    def test_partial_payment(self):
        """200 bill, 180 advance -> 20 dues."""
        result = calculate_payment(200, 180)

        assert result.to_dict() == {
            'billTotal': 200.0,
            'advancePaid': 180.0,
            'dues': 20.0,
            'isValid': True,
        }

    def test_full_payment(self):
        result = calculate_payment(200, 200)
        assert result.dues == 0
        assert result.is_valid

    def test_advance_exceeds_total(self):
        """Invalid results still carry the computed numbers."""
        result = calculate_payment(200, 250)

        assert result.dues == -50.0
        assert result.is_valid is False
        assert result.error_message == ADVANCE_EXCEEDS_TOTAL_MESSAGE
        assert result.to_dict()['errorMessage'] == ADVANCE_EXCEEDS_TOTAL_MESSAGE

    @pytest.mark.parametrize("bill_total", [0, 50, 1000.75])
    def test_negative_advance_rejected_for_any_bill(self, bill_total):
        result = calculate_payment(bill_total, -10)

        assert result.is_valid is False
        assert result.error_message == NEGATIVE_ADVANCE_MESSAGE

    @pytest.mark.parametrize("bill_total,advance_paid", [
        (0, 0),
        (500, 0),
        (500, 499.99),
        (1234.56, 1000),
        (99.99, 0.01),
    ])
    def test_valid_range_dues_are_rounded_difference(self, bill_total, advance_paid):
        result = calculate_payment(bill_total, advance_paid)

        assert result.is_valid
        assert result.error_message is None
        assert result.dues == round(bill_total - advance_paid, 2)

    def test_inputs_rounded_to_two_decimals(self):
        result = calculate_payment(100.126, 50.004)

        assert result.bill_total == 100.13
        assert result.advance_paid == 50.0
        assert result.dues == 50.13

    def test_float_noise_does_not_leak_into_dues(self):
        """0.3 - 0.1 is 0.19999999999999998 in binary floating point."""
        assert calculate_payment(0.3, 0.1).dues == 0.2

    def test_recomputation_is_stable(self):
        first = calculate_payment(1999.995, 733.333)
        second = calculate_payment(first.bill_total, first.advance_paid)

        assert second.dues == first.dues
        assert second.bill_total == first.bill_total
        assert second.advance_paid == first.advance_paid

    def test_validate_advance_payment(self):
        assert validate_advance_payment(100, 50) == (True, None)
        assert validate_advance_payment(100, 150) == (False, ADVANCE_EXCEEDS_TOTAL_MESSAGE)
        assert validate_advance_payment(100, -1) == (False, NEGATIVE_ADVANCE_MESSAGE)

# ============================================
# NORMALISATION
# ============================================

class TestMalformedInput:
    """Malformed numbers are coerced to 0, never raised."""

    @pytest.mark.parametrize("value", [None, "", "abc", [], {}, float("nan"), float("inf"), float("-inf")])
    def test_to_amount_coerces_to_zero(self, value):
        assert to_amount(value) == 0.0

    def test_numeric_strings_are_parsed(self):
        assert to_amount("12.50") == 12.5
        assert to_amount(" 7 ") == 7.0

    def test_calculate_payment_with_garbage(self):
        result = calculate_payment("not a number", None)

        assert result.bill_total == 0
        assert result.advance_paid == 0
        assert result.dues == 0
        assert result.is_valid

    def test_garbage_bill_with_real_advance_is_invalid(self):
        result = calculate_payment("abc", 5)

        assert result.bill_total == 0
        assert result.is_valid is False
        assert result.error_message == ADVANCE_EXCEEDS_TOTAL_MESSAGE

    def test_round_half_up(self):
        assert round_amount(2.675) == 2.68
        assert round_amount(0.125) == 0.13
        assert round_amount("x") == 0.0

    def test_negative_halves_round_away_from_zero(self):
        assert round_amount(-0.005) == -0.01
        assert round_amount(-2.675) == -2.68
        assert round_amount(-0.004) == 0.0

    def test_negative_half_cent_advance_is_rejected(self):
        """-0.005 rounds to -0.01, so it is a negative advance, not 0."""
        result = calculate_payment(100, -0.005)

        assert result.advance_paid == -0.01
        assert result.is_valid is False
        assert result.error_message == NEGATIVE_ADVANCE_MESSAGE

# ============================================
# PRODUCTS AND COMPLETE INVOICE
# ============================================

class TestProductsTotal:

    def test_sums_dict_and_object_products(self):
        class Line:
            total = 30.25

        products = [{'total': 100}, {'total': '19.75'}, Line()]
        assert calculate_products_total(products) == 150.0

    def test_non_numeric_totals_count_as_zero(self):
        products = [{'total': 'n/a'}, {'name': 'no total'}, {'total': 40}]
        assert calculate_products_total(products) == 40.0

    def test_empty(self):
        assert calculate_products_total([]) == 0.0

class TestCompleteInvoice:

    def test_previous_dues_added_to_bill(self):
        products = [{'total': 300}, {'total': 150.5}]
        result = calculate_complete_invoice(products, previous_dues=49.5, advance_paid=200)

        assert result.products_total == 450.5
        assert result.previous_dues == 49.5
        assert result.bill_total == 500.0
        assert result.advance_paid == 200.0
        assert result.dues == 300.0
        assert result.is_valid
        assert result.status == PaymentStatus.PARTIAL

    def test_defaults(self):
        result = calculate_complete_invoice([{'total': 80}])

        assert result.bill_total == 80.0
        assert result.dues == 80.0
        assert result.status == PaymentStatus.UNPAID

    def test_advance_checked_against_bill_including_previous_dues(self):
        result = calculate_complete_invoice([{'total': 100}], previous_dues=50, advance_paid=150)
        assert result.is_valid
        assert result.dues == 0

        result = calculate_complete_invoice([{'total': 100}], previous_dues=50, advance_paid=150.01)
        assert result.is_valid is False
        assert result.error_message == ADVANCE_EXCEEDS_TOTAL_MESSAGE

    def test_to_dict_keys(self):
        data = calculate_complete_invoice([{'total': 10}], 0, 0).to_dict()
        assert set(data) == {'productsTotal', 'previousDues', 'billTotal', 'advancePaid', 'dues', 'isValid'}

# ============================================
# PAYMENT STATUS
# ============================================

class TestPaymentStatus:

    def test_paid(self):
        assert get_payment_status(0, 500) == PaymentStatus.PAID

    def test_partial(self):
        assert get_payment_status(200, 500) == PaymentStatus.PARTIAL

    def test_unpaid(self):
        assert get_payment_status(500, 500) == PaymentStatus.UNPAID

    def test_zero_bill_is_paid(self):
        assert get_payment_status(0, 0) == PaymentStatus.PAID

    def test_overpaid_is_paid(self):
        assert get_payment_status(-50, 200) == PaymentStatus.PAID

    def test_status_values_are_wire_strings(self):
        assert [s.value for s in PaymentStatus] == ['paid', 'partial', 'unpaid']

# ============================================
# AREA PRICING AND FORMATTING
# ============================================

class TestLineItem:

    def test_plain_quantity_times_cost(self):
        assert calculate_line_item(3, 12.5) == (37.5, None)

    def test_area_priced_from_dimensions(self):
        """Qty 2 x (4 x 3 sq.ft) x 15 per sq.ft."""
        assert calculate_line_item(2, 15, width=4, height=3) == (360.0, 12.0)

    def test_explicit_sqft_when_no_dimensions(self):
        assert calculate_line_item(1, 10, sqft=2.5) == (25.0, 2.5)

    def test_dimensions_take_precedence_over_sqft(self):
        total, sqft = calculate_line_item(1, 10, width=2, height=2, sqft=100)
        assert sqft == 4.0
        assert total == 40.0

    def test_single_dimension_ignored(self):
        assert calculate_line_item(2, 5, width=3) == (10.0, None)

class TestFormatCurrency:

    def test_default_rupee(self):
        assert format_currency(1234.5) == "₹1234.50"

    def test_custom_symbol_and_garbage(self):
        assert format_currency("oops", "$") == "$0.00"

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
