"""
Chhaya Printing Solution (CPS) - Invoice Enforcement Layer
Version: 1.0.0

Invariant checks wrapped around every invoice write. Each check is recorded
in a signed, append-only decision ledger; a failed post-check rolls the
write back to the last stored state.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import hmac
import logging
from abc import ABC, abstractmethod

from cps_payment_ledger_v1 import (
    calculate_payment,
    calculate_products_total,
    round_amount,
)

# ============================================
# SYSTEM CONFIGURATION
# ============================================

DEFAULT_LEDGER_SECRET = b"CPS_DECISION_LEDGER_SECRET_ROTATE_QUARTERLY"

# products_total and bill_total are each rounded to cents on their own
AMOUNT_TOLERANCE = 0.01

class InvariantType(Enum):
    STATE = "state"
    FINANCIAL = "financial"
    DATA_INTEGRITY = "data_integrity"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"

class EnforcementResult(Enum):
    PROCEED = "proceed"
    ROLLBACK = "rollback"
    FREEZE = "freeze"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("CPS.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class InvariantViolation(Exception):
    """Raised when an invariant is violated."""

    def __init__(self, message: str, invariant_id: Optional[str] = None):
        super().__init__(message)
        self.invariant_id = invariant_id

class PaymentValidationError(InvariantViolation):
    """Raised when the ledger rejects an invoice's advance payment."""

    def __init__(self, message: str):
        super().__init__(message, invariant_id="inv_003_valid_advance_payment")

class InvoiceNotFound(Exception):
    """Raised when an invoice id is unknown to storage."""

    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice {invoice_id} not found")
        self.invoice_id = invoice_id

class SystemCompromised(Exception):
    """Raised when rollback fails - stored invoice state can no longer be trusted."""
    pass

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

def _sign(secret: bytes, invariant_id: str, result: bool, timestamp: datetime) -> str:
    data = f"{invariant_id}:{result}:{timestamp.isoformat()}"
    return hmac.new(secret, data.encode(), 'sha256').hexdigest()

@dataclass
class EnforcementDecision:
    """Immutable record of enforcement decision."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    result: bool
    action: EnforcementResult
    timestamp: datetime
    state_snapshot: Dict[str, Any]
    signature: str

    def verify_signature(self, secret: bytes) -> bool:
        expected = _sign(secret, self.invariant_id, self.result, self.timestamp)
        return hmac.compare_digest(self.signature, expected)

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """Append-only ledger of all enforcement decisions."""

    def __init__(self, secret: bytes = DEFAULT_LEDGER_SECRET):
        self.secret = secret
        self.entries: List[EnforcementDecision] = []

    def sign(self, invariant_id: str, result: bool, timestamp: datetime) -> str:
        return _sign(self.secret, invariant_id, result, timestamp)

    def record(self, decision: EnforcementDecision):
        """Append decision to ledger (write-only)."""
        if not decision.verify_signature(self.secret):
            raise SystemCompromised("Invalid signature on enforcement decision")

        self.entries.append(decision)
        logger.info(f"LEDGER: Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def failures(self) -> List[EnforcementDecision]:
        return [entry for entry in self.entries if not entry.result]

    def verify_chain_integrity(self) -> bool:
        """Verify ledger has not been tampered with."""
        return all(entry.verify_signature(self.secret) for entry in self.entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all invoice invariants."""

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        dependencies: List[str],
        owner: str
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies
        self.owner = owner

    @abstractmethod
    def pre_check(self, **kwargs) -> bool:
        """Execute before action. Returns True if action can proceed."""
        pass

    @abstractmethod
    def post_check(self, result: Any, **kwargs) -> bool:
        """Execute after action. Returns True if invariant still holds."""
        pass

    def rollback_action(self, state_before: Dict[str, Any]):
        """Compensation beyond restoring the invoice itself. None by default."""
        pass

def restore_invoice(state_before: Dict[str, Any]):
    """Delete a created invoice or restore an updated one."""
    storage = state_before['storage']
    invoice_id = state_before['invoice_id']
    previous = state_before.get('previous')

    if previous is None:
        if storage.find_by_id(invoice_id) is not None:
            storage.delete(invoice_id)
            logger.warning(f"ROLLBACK: Deleted invoice {invoice_id}")
    else:
        storage.update(previous)
        logger.warning(f"ROLLBACK: Restored invoice {invoice_id}")

# ============================================
# INVOICE INVARIANTS
# ============================================

class UniqueInvoiceNumbers(Invariant):
    """INV-001: Every invoice number is used by exactly one invoice."""

    def __init__(self):
        super().__init__(
            id="inv_001_unique_invoice_numbers",
            statement="The system MUST always ensure every invoice number is unique",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="invoice_service"
        )

    def pre_check(self, invoice_number: str, storage, invoice_id: Optional[str] = None, **kwargs) -> bool:
        exists = storage.invoice_number_exists(invoice_number, exclude_id=invoice_id)
        logger.info(f"PRE-CHECK {self.id}: invoice_number={invoice_number}, exists={exists}")
        return not exists

    def post_check(self, result: Any, **kwargs) -> bool:
        storage = result['storage']
        invoice_number = result['invoice'].invoice_number
        count = storage.count_invoice_number(invoice_number)

        logger.info(f"POST-CHECK {self.id}: invoice_number={invoice_number}, count={count}")
        return count == 1

class NonNegativeBillTotal(Invariant):
    """INV-002: Bill total (products + previous dues) is never negative."""

    def __init__(self):
        super().__init__(
            id="inv_002_non_negative_bill_total",
            statement="It is FORBIDDEN to store an invoice whose bill total is below zero",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="payment_ledger"
        )

    def pre_check(self, bill_total: float, **kwargs) -> bool:
        valid = bill_total >= 0
        logger.info(f"PRE-CHECK {self.id}: bill_total={bill_total:.2f}, valid={valid}")
        return valid

    def post_check(self, result: Any, **kwargs) -> bool:
        bill_total = result['invoice'].bill_total
        valid = bill_total >= 0
        logger.info(f"POST-CHECK {self.id}: bill_total={bill_total:.2f}, valid={valid}")
        return valid

class ValidAdvancePayment(Invariant):
    """INV-003: 0 <= advance paid <= bill total."""

    def __init__(self):
        super().__init__(
            id="inv_003_valid_advance_payment",
            statement="The system MUST always ensure 0 <= advance_paid <= bill_total",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_002_non_negative_bill_total"],
            owner="payment_ledger"
        )

    def pre_check(self, bill_total: float, advance_paid: float, **kwargs) -> bool:
        calculation = calculate_payment(bill_total, advance_paid)
        logger.info(
            f"PRE-CHECK {self.id}: bill_total={calculation.bill_total:.2f}, "
            f"advance_paid={calculation.advance_paid:.2f}, valid={calculation.is_valid}"
        )
        return calculation.is_valid

    def post_check(self, result: Any, **kwargs) -> bool:
        invoice = result['invoice']
        valid = 0 <= invoice.advance_paid <= invoice.bill_total
        logger.info(f"POST-CHECK {self.id}: advance_paid={invoice.advance_paid:.2f}, valid={valid}")
        return valid

class DuesMatchBillTotal(Invariant):
    """INV-004: Stored dues equal bill total minus advance paid."""

    def __init__(self):
        super().__init__(
            id="inv_004_dues_match_bill_total",
            statement="The system MUST always store dues == round(bill_total - advance_paid, 2)",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_003_valid_advance_payment"],
            owner="payment_ledger"
        )

    def pre_check(self, **kwargs) -> bool:
        # Dues are derived during the write, nothing to verify beforehand
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        invoice = result['invoice']
        expected = round_amount(invoice.bill_total - invoice.advance_paid)
        matches = abs(invoice.dues - expected) < AMOUNT_TOLERANCE / 2

        logger.info(f"POST-CHECK {self.id}: dues={invoice.dues:.2f}, expected={expected:.2f}, matches={matches}")
        return matches

class ProductsSumToBillTotal(Invariant):
    """INV-005: Product totals plus previous dues sum to the bill total."""

    def __init__(self):
        super().__init__(
            id="inv_005_products_sum_to_bill_total",
            statement="The system MUST always ensure sum(products.total) + previous_dues == bill_total",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.IMPORTANT,
            dependencies=["inv_002_non_negative_bill_total"],
            owner="invoice_service"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        invoice = result['invoice']
        calculated = calculate_products_total(invoice.products) + invoice.previous_dues
        matches = abs(calculated - invoice.bill_total) <= AMOUNT_TOLERANCE

        logger.info(f"POST-CHECK {self.id}: calculated={calculated:.2f}, stored={invoice.bill_total:.2f}, matches={matches}")
        return matches

def default_invoice_invariants() -> List[Invariant]:
    return [
        UniqueInvoiceNumbers(),
        NonNegativeBillTotal(),
        ValidAdvancePayment(),
        DuesMatchBillTotal(),
        ProductsSumToBillTotal(),
    ]

# ============================================
# ENFORCEMENT ENGINE
# ============================================

class InvariantEnforcer:
    """Runs every invariant around a write, in dependency order."""

    def __init__(self, invariants: List[Invariant], ledger: DecisionLedger):
        self.invariants = invariants
        self.ledger = ledger
        self.ordered = self._topological_sort(invariants)

    def _topological_sort(self, invariants: List[Invariant]) -> List[Invariant]:
        """Sort invariants by dependency order."""
        sorted_invs = []
        remaining = set(inv.id for inv in invariants)

        while remaining:
            # Dependencies outside this enforcer's set are treated as satisfied
            ready = [
                inv for inv in invariants
                if inv.id in remaining and all(dep not in remaining for dep in inv.dependencies)
            ]

            if not ready:
                raise InvariantViolation("Circular dependency detected in invariants")

            sorted_invs.extend(ready)
            for inv in ready:
                remaining.remove(inv.id)

        return sorted_invs

    def enforce_action(self, action: Callable[[], Any], **context) -> Any:
        """Execute action with full invariant enforcement."""
        state_before = self._capture_state(context)

        for inv in self.ordered:
            decision = self._pre_check(inv, state_before, context)
            self.ledger.record(decision)

            if not decision.result:
                logger.error(f"PRE-CHECK FAILED: {inv.id}")
                raise InvariantViolation(f"Pre-check failed: {inv.id}", invariant_id=inv.id)

        try:
            result = action()
        except Exception as e:
            logger.error(f"ACTION FAILED: {e}")
            self._rollback(state_before)
            raise

        for inv in self.ordered:
            decision = self._post_check(inv, result, state_before)
            self.ledger.record(decision)

            if not decision.result:
                logger.error(f"POST-CHECK FAILED: {inv.id}")
                self._rollback(state_before)
                raise InvariantViolation(f"Post-check failed: {inv.id}", invariant_id=inv.id)

        logger.info("All invariant checks PASSED")
        return result

    def _pre_check(self, inv: Invariant, state: Dict, context: Dict) -> EnforcementDecision:
        try:
            result = bool(inv.pre_check(**context))
            action = EnforcementResult.PROCEED if result else EnforcementResult.FREEZE
        except Exception as e:
            logger.error(f"Pre-check exception: {inv.id}", exc_info=e)
            result = False
            action = EnforcementResult.FREEZE

        return self._decision(inv, "PRE", result, action, state)

    def _post_check(self, inv: Invariant, result: Any, state: Dict) -> EnforcementDecision:
        try:
            check_result = bool(inv.post_check(result))
            action = EnforcementResult.PROCEED if check_result else EnforcementResult.ROLLBACK
        except Exception as e:
            logger.error(f"Post-check exception: {inv.id}", exc_info=e)
            check_result = False
            action = EnforcementResult.ROLLBACK

        return self._decision(inv, "POST", check_result, action, state)

    def _decision(self, inv: Invariant, check_type: str, result: bool,
                  action: EnforcementResult, state: Dict) -> EnforcementDecision:
        timestamp = datetime.now()
        return EnforcementDecision(
            invariant_id=inv.id,
            check_type=check_type,
            result=result,
            action=action,
            timestamp=timestamp,
            state_snapshot=state.copy(),
            signature=self.ledger.sign(inv.id, result, timestamp)
        )

    def _rollback(self, state_before: Dict):
        """Restore the invoice once, then run invariant hooks in reverse dependency order."""
        logger.warning("ROLLBACK INITIATED")

        try:
            restore_invoice(state_before)
        except Exception as e:
            logger.critical(f"ROLLBACK FAILED restoring invoice {state_before.get('invoice_id')}: {e}")
            raise SystemCompromised("Rollback failed restoring invoice") from e

        for inv in reversed(self.ordered):
            try:
                inv.rollback_action(state_before)
            except Exception as e:
                logger.critical(f"ROLLBACK FAILED for {inv.id}: {e}")
                raise SystemCompromised(f"Rollback failed for {inv.id}") from e

        logger.info("ROLLBACK COMPLETE")

    def _capture_state(self, context: Dict) -> Dict[str, Any]:
        return {
            'timestamp': datetime.now(),
            **context
        }
