"""
Chhaya Printing Solution (CPS) - Invoice Service
Version: 1.0.0

Invoice create/update/delete with the payment ledger computed on every write
and invariant enforcement around storage.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional
import logging
import uuid

from cps_enforcement_v1 import (
    DecisionLedger,
    InvariantEnforcer,
    InvoiceNotFound,
    PaymentValidationError,
    default_invoice_invariants,
)
from cps_payment_ledger_v1 import (
    PaymentStatus,
    calculate_complete_invoice,
    calculate_line_item,
    get_payment_status,
    round_amount,
    to_amount,
)

logger = logging.getLogger("CPS.Invoices")

NEGATIVE_BILL_TOTAL_MESSAGE = "Bill total cannot be negative"

# ============================================
# DATA MODELS
# ============================================

@dataclass(frozen=True)
class Product:
    """One invoice line. total is derived from quantity, cost and area."""
    name: str
    quantity: float
    unit_cost: float
    total: float
    width: Optional[float] = None
    height: Optional[float] = None
    sqft: Optional[float] = None

    @classmethod
    def priced(cls, name: str, quantity: Any, unit_cost: Any,
               width: Any = None, height: Any = None, sqft: Any = None) -> "Product":
        # Priced from the stored (rounded) values so the line multiplies out
        quantity = round_amount(quantity)
        unit_cost = round_amount(unit_cost)
        total, area = calculate_line_item(quantity, unit_cost, width, height, sqft)
        return cls(
            name=name,
            quantity=quantity,
            unit_cost=unit_cost,
            total=total,
            width=to_amount(width) or None,
            height=to_amount(height) or None,
            sqft=area
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'name': self.name,
            'quantity': self.quantity,
            'unitCost': self.unit_cost,
            'total': self.total,
        }
        for key, value in (('width', self.width), ('height', self.height), ('sqft', self.sqft)):
            if value is not None:
                data[key] = value
        return data

@dataclass(frozen=True)
class Invoice:
    """Stored invoice. Ledger fields are written only by InvoiceService."""
    id: str
    invoice_number: str
    client_name: str
    client_address: str
    products: List[Product]
    products_total: float
    previous_dues: float
    bill_total: float
    advance_paid: float
    dues: float
    date_of_issue: date
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def payment_status(self) -> PaymentStatus:
        return get_payment_status(self.dues, self.bill_total)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'invoiceNumber': self.invoice_number,
            'clientName': self.client_name,
            'clientAddress': self.client_address,
            'products': [product.to_dict() for product in self.products],
            'productsTotal': self.products_total,
            'previousDues': self.previous_dues,
            'billTotal': self.bill_total,
            'advancePaid': self.advance_paid,
            'dues': self.dues,
            'paymentStatus': self.payment_status.value,
            'dateOfIssue': self.date_of_issue.isoformat(),
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
        }

@dataclass(frozen=True)
class InvoiceStats:
    total_invoices: int
    total_revenue: float
    pending_dues: float
    total_advance_paid: float
    monthly_invoices: int
    status_counts: Dict[str, int]

# ============================================
# STORAGE LAYER
# ============================================

class InvoiceStorage:
    """In-memory invoice storage (production would use database)."""

    def __init__(self):
        self.invoices: Dict[str, Invoice] = {}

    def find_by_id(self, invoice_id: str) -> Optional[Invoice]:
        return self.invoices.get(invoice_id)

    def find_all(self) -> List[Invoice]:
        return list(self.invoices.values())

    def create(self, invoice: Invoice) -> Invoice:
        self.invoices[invoice.id] = invoice
        logger.info(f"[STORAGE] Created invoice {invoice.id} ({invoice.invoice_number})")
        return invoice

    def update(self, invoice: Invoice) -> Invoice:
        if invoice.id not in self.invoices:
            raise InvoiceNotFound(invoice.id)
        self.invoices[invoice.id] = invoice
        logger.info(f"[STORAGE] Updated invoice {invoice.id}")
        return invoice

    def delete(self, invoice_id: str) -> Optional[Invoice]:
        invoice = self.invoices.pop(invoice_id, None)
        if invoice is not None:
            logger.warning(f"[STORAGE] Deleted invoice {invoice_id}")
        return invoice

    def count(self) -> int:
        return len(self.invoices)

    def count_invoice_number(self, invoice_number: str) -> int:
        return sum(1 for inv in self.invoices.values() if inv.invoice_number == invoice_number)

    def invoice_number_exists(self, invoice_number: str, exclude_id: Optional[str] = None) -> bool:
        return any(
            inv.invoice_number == invoice_number and inv.id != exclude_id
            for inv in self.invoices.values()
        )

# ============================================
# INVOICE SERVICE
# ============================================

def price_products(products: Iterable[Any]) -> List[Product]:
    """Re-price every line; any client-sent total is ignored."""
    built = []
    for item in products:
        if isinstance(item, Product):
            item = item.to_dict()
        built.append(Product.priced(
            name=item.get('name', ''),
            quantity=item.get('quantity', 0),
            unit_cost=item.get('unit_cost', item.get('unitCost', 0)),
            width=item.get('width'),
            height=item.get('height'),
            sqft=item.get('sqft'),
        ))
    return built

class InvoiceService:
    """Invoice lifecycle with the payment ledger applied on every write."""

    def __init__(self, storage: InvoiceStorage, ledger: DecisionLedger):
        self.storage = storage
        self.ledger = ledger
        self.enforcer = InvariantEnforcer(default_invoice_invariants(), ledger)

        logger.info(f"[INVOICE_SERVICE] Initialized with {len(self.enforcer.invariants)} invariants")

    def next_invoice_number(self) -> str:
        sequence = self.storage.count() + 1
        number = f"INV-{sequence:04d}"
        while self.storage.invoice_number_exists(number):
            sequence += 1
            number = f"INV-{sequence:04d}"
        return number

    def _price(self, products: Iterable[Any], previous_dues: Any, advance_paid: Any):
        built = price_products(products)
        breakdown = calculate_complete_invoice(built, previous_dues, advance_paid)

        if breakdown.bill_total < 0:
            raise PaymentValidationError(NEGATIVE_BILL_TOTAL_MESSAGE)
        if not breakdown.is_valid:
            logger.warning(f"Payment rejected: {breakdown.error_message}")
            raise PaymentValidationError(breakdown.error_message)

        return built, breakdown

    def _write(self, invoice: Invoice, previous: Optional[Invoice]) -> Invoice:
        is_update = previous is not None

        def _write_action() -> Dict[str, Any]:
            stored = self.storage.update(invoice) if is_update else self.storage.create(invoice)
            return {'invoice': stored, 'invoice_id': invoice.id, 'storage': self.storage}

        result = self.enforcer.enforce_action(
            _write_action,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            bill_total=invoice.bill_total,
            advance_paid=invoice.advance_paid,
            storage=self.storage,
            previous=previous
        )
        return result['invoice']

    def create_invoice(
        self,
        client_name: str,
        client_address: str,
        products: Iterable[Any],
        previous_dues: Any = 0,
        advance_paid: Any = 0,
        invoice_number: Optional[str] = None,
        date_of_issue: Optional[date] = None
    ) -> Invoice:
        """
        Create a new invoice.

        Raises PaymentValidationError when the advance is negative or larger
        than the bill, InvariantViolation when any other invariant fails.
        Nothing is stored in either case.
        """
        built, breakdown = self._price(products, previous_dues, advance_paid)
        now = datetime.now()

        invoice = Invoice(
            id=uuid.uuid4().hex,
            invoice_number=invoice_number or self.next_invoice_number(),
            client_name=client_name,
            client_address=client_address,
            products=built,
            products_total=breakdown.products_total,
            previous_dues=breakdown.previous_dues,
            bill_total=breakdown.bill_total,
            advance_paid=breakdown.advance_paid,
            dues=breakdown.dues,
            date_of_issue=date_of_issue or now.date(),
            created_at=now,
            updated_at=now
        )

        stored = self._write(invoice, previous=None)
        logger.info(
            f"✅ INVOICE CREATED: {stored.invoice_number} bill={stored.bill_total:.2f} "
            f"advance={stored.advance_paid:.2f} dues={stored.dues:.2f}"
        )
        return stored

    def update_invoice(
        self,
        invoice_id: str,
        client_name: str,
        client_address: str,
        products: Iterable[Any],
        previous_dues: Any = 0,
        advance_paid: Any = 0,
        invoice_number: Optional[str] = None,
        date_of_issue: Optional[date] = None
    ) -> Invoice:
        """Replace an invoice's contents; the ledger is fully recomputed."""
        previous = self.get_invoice(invoice_id)
        built, breakdown = self._price(products, previous_dues, advance_paid)

        invoice = replace(
            previous,
            invoice_number=invoice_number or previous.invoice_number,
            client_name=client_name,
            client_address=client_address,
            products=built,
            products_total=breakdown.products_total,
            previous_dues=breakdown.previous_dues,
            bill_total=breakdown.bill_total,
            advance_paid=breakdown.advance_paid,
            dues=breakdown.dues,
            date_of_issue=date_of_issue or previous.date_of_issue,
            updated_at=datetime.now()
        )

        stored = self._write(invoice, previous=previous)
        logger.info(f"INVOICE UPDATED: {stored.invoice_number} dues={stored.dues:.2f}")
        return stored

    def delete_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.storage.delete(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(invoice_id)
        logger.info(f"INVOICE DELETED: {invoice.invoice_number}")
        return invoice

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.storage.find_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(invoice_id)
        return invoice

    def list_invoices(self) -> List[Invoice]:
        """All invoices, newest first."""
        return sorted(self.storage.find_all(), key=lambda inv: inv.created_at, reverse=True)

    def get_stats(self, now: Optional[datetime] = None) -> InvoiceStats:
        now = now or datetime.now()
        start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        invoices = self.storage.find_all()

        status_counts = {status.value: 0 for status in PaymentStatus}
        for inv in invoices:
            status_counts[inv.payment_status.value] += 1

        return InvoiceStats(
            total_invoices=len(invoices),
            total_revenue=round_amount(sum(inv.bill_total for inv in invoices)),
            pending_dues=round_amount(sum(max(0.0, inv.dues) for inv in invoices)),
            total_advance_paid=round_amount(sum(inv.advance_paid for inv in invoices)),
            monthly_invoices=sum(1 for inv in invoices if inv.created_at >= start_of_month),
            status_counts=status_counts
        )
