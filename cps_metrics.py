"""
Chhaya Printing Solution - Prometheus Metrics
Login guard, payment ledger and API observability
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# LOGIN GUARD METRICS
# ============================================

login_attempt_counter = Counter(
    'cps_login_attempts_total',
    'Admin login attempts by result',
    ['result'],  # success, failure, blocked
    registry=metrics_registry
)

lockout_counter = Counter(
    'cps_login_lockouts_total',
    'Client addresses locked out after too many failed attempts',
    ['policy'],  # timed, permanent
    registry=metrics_registry
)

unlock_counter = Counter(
    'cps_login_unlocks_total',
    'Unlock requests by result',
    ['result'],  # unlocked, rejected
    registry=metrics_registry
)

attempt_records_swept_counter = Counter(
    'cps_attempt_records_swept_total',
    'Idle login attempt records removed by the sweeper',
    registry=metrics_registry
)

# ============================================
# INVOICE / LEDGER METRICS
# ============================================

invoice_write_counter = Counter(
    'cps_invoice_writes_total',
    'Invoice writes by operation',
    ['operation'],  # create, update, delete
    registry=metrics_registry
)

payment_validation_failure_counter = Counter(
    'cps_payment_validation_failures_total',
    'Invoice writes rejected by the payment ledger',
    ['reason'],
    registry=metrics_registry
)

bill_total_histogram = Histogram(
    'cps_invoice_bill_total_rupees',
    'Bill totals of created invoices',
    buckets=[100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000],
    registry=metrics_registry
)

pending_dues_gauge = Gauge(
    'cps_pending_dues_rupees',
    'Outstanding dues across all invoices at last stats read',
    registry=metrics_registry
)

# ============================================
# PERFORMANCE METRICS
# ============================================

api_request_duration_histogram = Histogram(
    'cps_api_request_duration_seconds',
    'API request duration',
    ['endpoint', 'method'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=metrics_registry
)

api_request_counter = Counter(
    'cps_api_requests_total',
    'Total API requests',
    ['endpoint', 'method', 'status_code'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_login_attempt(result: str):
    login_attempt_counter.labels(result=result).inc()

def record_lockout(policy: str):
    lockout_counter.labels(policy=policy).inc()

def record_unlock(unlocked: bool):
    unlock_counter.labels(result="unlocked" if unlocked else "rejected").inc()

def record_sweep(removed: int):
    if removed:
        attempt_records_swept_counter.inc(removed)

def record_invoice_write(operation: str, bill_total: float = None):
    """Record invoice write metrics."""
    invoice_write_counter.labels(operation=operation).inc()
    if operation == "create" and bill_total is not None:
        bill_total_histogram.observe(bill_total)

def record_payment_validation_failure(reason: str):
    payment_validation_failure_counter.labels(reason=reason).inc()

def record_api_request(endpoint: str, method: str, status_code: int, duration: float):
    """Record API request metrics."""
    api_request_counter.labels(
        endpoint=endpoint,
        method=method,
        status_code=status_code
    ).inc()
    api_request_duration_histogram.labels(
        endpoint=endpoint,
        method=method
    ).observe(duration)
