"""
Chhaya Printing Solution (CPS) - Invoice Service Tests
Version: 1.0.0

- Ledger fields computed on create/update
- Validation failures leave storage untouched
- Invariant enforcement, decision ledger and rollback
- Numbering and dashboard stats
"""

from dataclasses import replace
from datetime import date, datetime
from typing import Any

import pytest

from cps_enforcement_v1 import (
    DecisionLedger,
    EnforcementResult,
    Invariant,
    InvariantEnforcer,
    InvariantType,
    InvariantViolation,
    InvoiceNotFound,
    Criticality,
    PaymentValidationError,
    SystemCompromised,
    default_invoice_invariants,
)
from cps_invoice_service_v1 import (
    NEGATIVE_BILL_TOTAL_MESSAGE,
    InvoiceService,
    InvoiceStorage,
    Product,
)
from cps_payment_ledger_v1 import (
    ADVANCE_EXCEEDS_TOTAL_MESSAGE,
    NEGATIVE_ADVANCE_MESSAGE,
    PaymentStatus,
    calculate_line_item,
)

# ============================================
# FIXTURES
# ============================================

BANNER = {'name': 'Flex banner', 'quantity': 2, 'unit_cost': 15, 'width': 4, 'height': 3}
CARDS = {'name': 'Visiting cards', 'quantity': 5, 'unitCost': 120}

@pytest.fixture
def storage():
    return InvoiceStorage()

@pytest.fixture
def ledger():
    return DecisionLedger(secret=b"test-ledger-secret")

@pytest.fixture
def service(storage, ledger):
    return InvoiceService(storage, ledger)

def create(service, **overrides):
    kwargs = dict(
        client_name="Sharma Traders",
        client_address="12 Station Road",
        products=[BANNER, CARDS],
        previous_dues=0,
        advance_paid=0,
    )
    kwargs.update(overrides)
    return service.create_invoice(**kwargs)

class FailsAfterWrite(Invariant):
    """Post-check that always fails, to force a rollback."""

    def __init__(self):
        super().__init__(
            id="test_fails_after_write",
            statement="Always violated after the write",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_001_unique_invoice_numbers"],
            owner="tests"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        return False

class CompensatingInvariant(FailsAfterWrite):
    """Fails after the write and counts its own rollback hook calls."""

    def __init__(self):
        super().__init__()
        self.id = "test_compensating"
        self.rollback_calls = 0

    def rollback_action(self, state_before):
        self.rollback_calls += 1

class CountingStorage(InvoiceStorage):

    def __init__(self):
        super().__init__()
        self.update_calls = 0
        self.delete_calls = 0

    def update(self, invoice):
        self.update_calls += 1
        return super().update(invoice)

    def delete(self, invoice_id):
        self.delete_calls += 1
        return super().delete(invoice_id)

class BrokenUpdateStorage(InvoiceStorage):
    """Storage whose update fails once armed."""

    armed = False

    def update(self, invoice):
        if self.armed:
            raise RuntimeError("disk full")
        return super().update(invoice)

# ============================================
# PRODUCT LINES
# ============================================

class TestProductPricing:
    """Stored quantity and unit cost multiply out to the stored total."""

    def test_total_uses_rounded_unit_cost(self):
        product = Product.priced("Label", quantity=3, unit_cost=0.125)

        assert product.unit_cost == 0.13
        assert product.total == 0.39

    def test_area_total_uses_rounded_unit_cost(self):
        product = Product.priced("Banner", quantity=2, unit_cost=15.005, width=4, height=3)

        assert product.unit_cost == 15.01
        assert product.sqft == 12.0
        assert product.total == 360.24

    @pytest.mark.parametrize("quantity,unit_cost", [(3, 0.125), (1.005, 10), (7, 33.335), (2.5, 0.015)])
    def test_line_multiplies_out(self, quantity, unit_cost):
        product = Product.priced("Line", quantity=quantity, unit_cost=unit_cost)

        assert product.total == calculate_line_item(product.quantity, product.unit_cost)[0]

# ============================================
# CREATE / UPDATE
# ============================================

class TestCreateInvoice:

    def test_ledger_fields_computed(self, service):
        invoice = create(service, previous_dues=150, advance_paid=500)

        assert [p.total for p in invoice.products] == [360.0, 600.0]
        assert invoice.products[0].sqft == 12.0
        assert invoice.products_total == 960.0
        assert invoice.previous_dues == 150.0
        assert invoice.bill_total == 1110.0
        assert invoice.advance_paid == 500.0
        assert invoice.dues == 610.0
        assert invoice.payment_status == PaymentStatus.PARTIAL

    def test_client_totals_are_ignored(self, service):
        products = [{'name': 'Poster', 'quantity': 3, 'unit_cost': 40, 'total': 9999}]
        invoice = create(service, products=products)

        assert invoice.products[0].total == 120.0
        assert invoice.bill_total == 120.0

    def test_defaults(self, service):
        invoice = create(service)

        assert invoice.invoice_number == "INV-0001"
        assert invoice.date_of_issue == date.today()
        assert invoice.dues == invoice.bill_total
        assert invoice.payment_status == PaymentStatus.UNPAID

    def test_fully_paid(self, service):
        invoice = create(service, advance_paid=960)

        assert invoice.dues == 0
        assert invoice.payment_status == PaymentStatus.PAID

    def test_accepts_product_objects(self, service):
        product = Product.priced("Sticker", quantity=10, unit_cost=2.5)
        invoice = create(service, products=[product])

        assert invoice.bill_total == 25.0

    def test_to_dict_is_camel_case(self, service):
        data = create(service, advance_paid=100).to_dict()

        assert data['invoiceNumber'] == "INV-0001"
        assert data['billTotal'] == 960.0
        assert data['paymentStatus'] == "partial"
        assert data['products'][1]['unitCost'] == 120.0
        assert 'sqft' not in data['products'][1]

class TestPaymentValidation:

    def test_advance_exceeding_bill_rejected(self, service, storage, ledger):
        with pytest.raises(PaymentValidationError) as exc_info:
            create(service, advance_paid=961)

        assert str(exc_info.value) == ADVANCE_EXCEEDS_TOTAL_MESSAGE
        assert exc_info.value.invariant_id == "inv_003_valid_advance_payment"
        assert storage.count() == 0
        assert ledger.entries == []

    def test_negative_advance_rejected(self, service, storage):
        with pytest.raises(PaymentValidationError, match=NEGATIVE_ADVANCE_MESSAGE):
            create(service, advance_paid=-1)

        assert storage.count() == 0

    def test_negative_bill_rejected(self, service, storage):
        products = [{'name': 'Refund', 'quantity': 1, 'unit_cost': -50}]

        with pytest.raises(PaymentValidationError, match=NEGATIVE_BILL_TOTAL_MESSAGE):
            create(service, products=products)

        assert storage.count() == 0

    def test_previous_dues_raise_the_advance_ceiling(self, service):
        invoice = create(service, previous_dues=40, advance_paid=1000)
        assert invoice.dues == 0

class TestUpdateInvoice:

    def test_ledger_recomputed(self, service):
        original = create(service, advance_paid=100)

        updated = service.update_invoice(
            original.id,
            client_name="Sharma Traders",
            client_address="12 Station Road",
            products=[CARDS],
            advance_paid=600
        )

        assert updated.id == original.id
        assert updated.invoice_number == original.invoice_number
        assert updated.created_at == original.created_at
        assert updated.bill_total == 600.0
        assert updated.dues == 0
        assert updated.payment_status == PaymentStatus.PAID

    def test_invalid_update_keeps_previous_state(self, service):
        original = create(service, advance_paid=100)

        with pytest.raises(PaymentValidationError):
            service.update_invoice(
                original.id,
                client_name="X",
                client_address="Y",
                products=[CARDS],
                advance_paid=601
            )

        assert service.get_invoice(original.id) == original

    def test_update_unknown_invoice(self, service):
        with pytest.raises(InvoiceNotFound):
            service.update_invoice("missing", client_name="X", client_address="Y", products=[CARDS])

    def test_renumber_to_taken_number_rejected(self, service):
        first = create(service)
        second = create(service)

        with pytest.raises(InvariantViolation) as exc_info:
            service.update_invoice(
                second.id,
                client_name="X",
                client_address="Y",
                products=[CARDS],
                invoice_number=first.invoice_number
            )

        assert exc_info.value.invariant_id == "inv_001_unique_invoice_numbers"
        assert service.get_invoice(second.id) == second

class TestDeleteInvoice:

    def test_delete(self, service, storage):
        invoice = create(service)

        deleted = service.delete_invoice(invoice.id)

        assert deleted.id == invoice.id
        assert storage.count() == 0
        with pytest.raises(InvoiceNotFound):
            service.get_invoice(invoice.id)

    def test_delete_unknown(self, service):
        with pytest.raises(InvoiceNotFound):
            service.delete_invoice("missing")

# ============================================
# ENFORCEMENT
# ============================================

class TestEnforcement:

    def test_every_write_is_recorded(self, service, ledger):
        create(service)

        invariant_count = len(default_invoice_invariants())
        assert len(ledger.entries) == invariant_count * 2
        assert {entry.check_type for entry in ledger.entries} == {"PRE", "POST"}
        assert ledger.failures() == []
        assert ledger.verify_chain_integrity()

    def test_duplicate_invoice_number_rejected(self, service, storage, ledger):
        create(service, invoice_number="INV-0100")

        with pytest.raises(InvariantViolation) as exc_info:
            create(service, invoice_number="INV-0100")

        assert exc_info.value.invariant_id == "inv_001_unique_invoice_numbers"
        assert storage.count() == 1
        assert ledger.failures()[0].action == EnforcementResult.FREEZE

    def test_dependency_order(self, service):
        order = [inv.id for inv in service.enforcer.ordered]

        assert order.index("inv_002_non_negative_bill_total") < order.index("inv_003_valid_advance_payment")
        assert order.index("inv_003_valid_advance_payment") < order.index("inv_004_dues_match_bill_total")

    def test_circular_dependencies_rejected(self, ledger):
        first = FailsAfterWrite()
        second = FailsAfterWrite()
        first.id, second.id = "a", "b"
        first.dependencies, second.dependencies = ["b"], ["a"]

        with pytest.raises(InvariantViolation, match="Circular"):
            InvariantEnforcer([first, second], ledger)

    def test_failed_post_check_rolls_back_create(self, service, storage, ledger):
        service.enforcer = InvariantEnforcer(default_invoice_invariants() + [FailsAfterWrite()], ledger)

        with pytest.raises(InvariantViolation) as exc_info:
            create(service)

        assert exc_info.value.invariant_id == "test_fails_after_write"
        assert storage.count() == 0
        assert ledger.failures()[-1].action == EnforcementResult.ROLLBACK

    def test_failed_post_check_restores_update(self, service, storage, ledger):
        original = create(service, advance_paid=100)
        service.enforcer = InvariantEnforcer(default_invoice_invariants() + [FailsAfterWrite()], ledger)

        with pytest.raises(InvariantViolation):
            service.update_invoice(
                original.id,
                client_name="Changed",
                client_address="Changed",
                products=[CARDS]
            )

        assert storage.find_by_id(original.id) == original

    def test_update_rollback_restores_once(self, ledger):
        storage = CountingStorage()
        service = InvoiceService(storage, ledger)
        original = create(service)
        hook = CompensatingInvariant()
        service.enforcer = InvariantEnforcer(default_invoice_invariants() + [hook], ledger)

        with pytest.raises(InvariantViolation):
            service.update_invoice(original.id, client_name="X", client_address="Y", products=[CARDS])

        # one write plus one restore
        assert storage.update_calls == 2
        assert hook.rollback_calls == 1
        assert storage.find_by_id(original.id) == original

    def test_create_rollback_deletes_once(self, ledger):
        storage = CountingStorage()
        service = InvoiceService(storage, ledger)
        service.enforcer = InvariantEnforcer(default_invoice_invariants() + [FailsAfterWrite()], ledger)

        with pytest.raises(InvariantViolation):
            create(service)

        assert storage.delete_calls == 1
        assert storage.count() == 0

    def test_failed_write_rolls_back(self, ledger):
        storage = BrokenUpdateStorage()
        service = InvoiceService(storage, ledger)
        original = create(service)
        storage.armed = True

        # Restoring also goes through the broken update
        with pytest.raises(SystemCompromised):
            service.update_invoice(original.id, client_name="X", client_address="Y", products=[CARDS])

    def test_tampered_decision_detected(self, service, ledger):
        create(service)
        ledger.entries[0].result = not ledger.entries[0].result

        assert ledger.verify_chain_integrity() is False

    def test_decision_with_bad_signature_refused(self, service, ledger):
        create(service)
        forged = replace(ledger.entries[0], signature="0" * 64)

        with pytest.raises(SystemCompromised):
            ledger.record(forged)

# ============================================
# NUMBERING AND STATS
# ============================================

class TestNumbering:

    def test_sequential(self, service):
        assert create(service).invoice_number == "INV-0001"
        assert create(service).invoice_number == "INV-0002"
        assert service.next_invoice_number() == "INV-0003"

    def test_skips_numbers_in_use(self, service):
        create(service, invoice_number="INV-0002")

        assert service.next_invoice_number() == "INV-0003"

    def test_list_newest_first(self, service, storage):
        older = create(service)
        newer = create(service)
        storage.invoices[older.id] = replace(older, created_at=datetime(2020, 1, 1))

        assert [inv.id for inv in service.list_invoices()] == [newer.id, older.id]

class TestStats:

    def test_empty(self, service):
        stats = service.get_stats()

        assert stats.total_invoices == 0
        assert stats.total_revenue == 0
        assert stats.pending_dues == 0
        assert stats.status_counts == {'paid': 0, 'partial': 0, 'unpaid': 0}

    def test_totals(self, service, storage):
        create(service, advance_paid=960)
        create(service, advance_paid=460)
        old = create(service, products=[CARDS])
        storage.invoices[old.id] = replace(old, created_at=datetime(2020, 5, 17))

        stats = service.get_stats()

        assert stats.total_invoices == 3
        assert stats.total_revenue == 2520.0
        assert stats.total_advance_paid == 1420.0
        assert stats.pending_dues == 1100.0
        assert stats.monthly_invoices == 2
        assert stats.status_counts == {'paid': 1, 'partial': 1, 'unpaid': 1}

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
