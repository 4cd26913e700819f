"""
Chhaya Printing Solution (CPS) - Payment Ledger
Version: 1.0.0

Single source of truth for bill total, advance payment and dues arithmetic.
Invoice create/update, the dashboard and printed invoices all read their
numbers from these functions so they can never disagree.

Every function here is pure. Malformed numeric input (None, "", "abc", NaN,
infinity) is normalised to 0 before any arithmetic; validation problems are
reported on the result object and never raised.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple
import logging
import math

logger = logging.getLogger("CPS.Ledger")

CENTS = Decimal("0.01")

NEGATIVE_ADVANCE_MESSAGE = "Advance payment cannot be negative"
ADVANCE_EXCEEDS_TOTAL_MESSAGE = "Advance payment cannot be greater than the total bill amount"

# ============================================
# DATA MODELS
# ============================================

class PaymentStatus(str, Enum):
    PAID = "paid"
    PARTIAL = "partial"
    UNPAID = "unpaid"

@dataclass(frozen=True)
class PaymentCalculation:
    """Result of calculate_payment."""
    bill_total: float
    advance_paid: float
    dues: float
    is_valid: bool
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'billTotal': self.bill_total,
            'advancePaid': self.advance_paid,
            'dues': self.dues,
            'isValid': self.is_valid,
        }
        if self.error_message is not None:
            data['errorMessage'] = self.error_message
        return data

@dataclass(frozen=True)
class InvoiceBreakdown:
    """Result of calculate_complete_invoice."""
    products_total: float
    previous_dues: float
    bill_total: float
    advance_paid: float
    dues: float
    is_valid: bool
    error_message: Optional[str] = None

    @property
    def status(self) -> PaymentStatus:
        return get_payment_status(self.dues, self.bill_total)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'productsTotal': self.products_total,
            'previousDues': self.previous_dues,
            'billTotal': self.bill_total,
            'advancePaid': self.advance_paid,
            'dues': self.dues,
            'isValid': self.is_valid,
        }
        if self.error_message is not None:
            data['errorMessage'] = self.error_message
        return data

# ============================================
# NORMALISATION
# ============================================

def to_amount(value: Any) -> float:
    """Coerce any input to a finite float; anything unusable becomes 0."""
    if isinstance(value, bool):
        return float(value)
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(amount):
        return 0.0
    return amount

def round_amount(value: Any) -> float:
    """Round half-up to 2 decimal places."""
    amount = to_amount(value)
    try:
        return float(Decimal(repr(amount)).quantize(CENTS, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return 0.0

def _product_total(product: Any) -> Any:
    if isinstance(product, dict):
        return product.get('total', 0)
    return getattr(product, 'total', 0)

# ============================================
# LEDGER OPERATIONS
# ============================================

def calculate_products_total(products: Iterable[Any]) -> float:
    """Sum of every product's total, rounded to 2 decimals."""
    total = sum(to_amount(_product_total(product)) for product in products or [])
    return round_amount(total)

def calculate_payment(bill_total: Any, advance_paid: Any) -> PaymentCalculation:
    """
    Validate an advance payment against a bill total and derive the dues.

    Business rules:
    - dues = bill_total - advance_paid
    - advance_paid cannot be negative
    - advance_paid cannot be greater than bill_total

    Invalid results still carry the computed numbers, e.g.
    calculate_payment(200, 250) -> dues=-50.0, is_valid=False.
    Callers must check is_valid before persisting.
    """
    rounded_bill_total = round_amount(bill_total)
    rounded_advance_paid = round_amount(advance_paid)
    dues = round_amount(rounded_bill_total - rounded_advance_paid)

    error_message = None
    if rounded_advance_paid < 0:
        error_message = NEGATIVE_ADVANCE_MESSAGE
    elif rounded_advance_paid > rounded_bill_total:
        error_message = ADVANCE_EXCEEDS_TOTAL_MESSAGE

    if error_message:
        logger.debug(
            f"Invalid payment: bill_total={rounded_bill_total:.2f}, "
            f"advance_paid={rounded_advance_paid:.2f} ({error_message})"
        )

    return PaymentCalculation(
        bill_total=rounded_bill_total,
        advance_paid=rounded_advance_paid,
        dues=dues,
        is_valid=error_message is None,
        error_message=error_message
    )

def validate_advance_payment(bill_total: Any, advance_paid: Any) -> Tuple[bool, Optional[str]]:
    """Form-level check: (is_valid, error_message)."""
    calculation = calculate_payment(bill_total, advance_paid)
    return calculation.is_valid, calculation.error_message

def calculate_complete_invoice(
    products: Iterable[Any],
    previous_dues: Any = 0,
    advance_paid: Any = 0
) -> InvoiceBreakdown:
    """Products total + previous dues = bill total, then apply the advance."""
    products_total = calculate_products_total(products)
    safe_previous_dues = to_amount(previous_dues)
    bill_total = round_amount(products_total + safe_previous_dues)

    payment = calculate_payment(bill_total, advance_paid)

    return InvoiceBreakdown(
        products_total=products_total,
        previous_dues=safe_previous_dues,
        bill_total=payment.bill_total,
        advance_paid=payment.advance_paid,
        dues=payment.dues,
        is_valid=payment.is_valid,
        error_message=payment.error_message
    )

def get_payment_status(dues: Any, bill_total: Any) -> PaymentStatus:
    dues = to_amount(dues)
    bill_total = to_amount(bill_total)

    if dues <= 0:
        return PaymentStatus.PAID
    if dues < bill_total:
        return PaymentStatus.PARTIAL
    return PaymentStatus.UNPAID

# ============================================
# PRODUCT PRICING
# ============================================

def calculate_line_item(
    quantity: Any,
    unit_cost: Any,
    width: Any = None,
    height: Any = None,
    sqft: Any = None
) -> Tuple[float, Optional[float]]:
    """
    Price one product line, optionally by area.

    Width and height (feet) give the area; an explicit sqft is used when
    no usable dimensions are supplied. Returns (total, sqft).
    """
    qty = to_amount(quantity)
    cost = to_amount(unit_cost)
    w = to_amount(width)
    h = to_amount(height)

    area: Optional[float] = None
    if w > 0 and h > 0:
        area = round_amount(w * h)
    elif to_amount(sqft) > 0:
        area = round_amount(sqft)

    if area:
        return round_amount(qty * area * cost), area
    return round_amount(qty * cost), None

# ============================================
# FORMATTING
# ============================================

def format_currency(amount: Any, currency: str = "₹") -> str:
    return f"{currency}{to_amount(amount):.2f}"
