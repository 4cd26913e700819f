"""
Chhaya Printing Solution - FastAPI Application
Admin login with attempt limiting, invoice ledger and observability
"""

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from typing import Any, Callable, Dict, List, Optional
from datetime import date, datetime, timedelta
from contextlib import asynccontextmanager, suppress
import asyncio
import logging
import time

from cps_config import Settings, load_settings
from cps_auth_v1 import (
    SessionTokenIssuer,
    resolve_client_ip,
    verify_access_code,
    verify_unlock_key,
)
from cps_enforcement_v1 import (
    DecisionLedger,
    InvariantViolation,
    InvoiceNotFound,
    PaymentValidationError,
)
from cps_invoice_service_v1 import Invoice, InvoiceService, InvoiceStorage, price_products
from cps_login_guard_v1 import (
    BlockStatus,
    InMemoryAttemptStore,
    LockoutPolicy,
    LoginAttemptGuard,
    sweep_periodically,
)
from cps_payment_ledger_v1 import (
    calculate_complete_invoice,
    calculate_payment,
    format_currency,
    get_payment_status,
)
from cps_metrics import (
    metrics_registry,
    pending_dues_gauge,
    record_api_request,
    record_invoice_write,
    record_lockout,
    record_login_attempt,
    record_payment_validation_failure,
    record_sweep,
    record_unlock,
)

VERSION = "1.0.0"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("cps.api")

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class LoginRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)

class UnlockRequest(BaseModel):
    secret: str = Field(..., min_length=1)
    # Address to unlock; defaults to the caller's own address
    ip: Optional[str] = None

class ProductRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    quantity: float = Field(..., gt=0)
    unit_cost: float = Field(..., ge=0)
    width: Optional[float] = Field(None, ge=0)
    height: Optional[float] = Field(None, ge=0)
    sqft: Optional[float] = Field(None, ge=0)
    # Accepted for form round-trips; always recomputed server side
    total: Optional[float] = None

class InvoiceWriteRequest(CamelModel):
    invoice_number: Optional[str] = Field(None, min_length=1, max_length=32)
    client_name: str = Field(..., min_length=1, max_length=200)
    client_address: str = Field(..., min_length=1, max_length=500)
    products: List[ProductRequest] = Field(..., min_length=1)
    previous_dues: float = 0
    advance_paid: float = 0
    date_of_issue: Optional[date] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "clientName": "Sharma Traders",
                "clientAddress": "12 Station Road",
                "products": [
                    {"name": "Flex banner", "quantity": 2, "unitCost": 15, "width": 4, "height": 3},
                    {"name": "Visiting cards (box)", "quantity": 5, "unitCost": 120}
                ],
                "previousDues": 150,
                "advancePaid": 500
            }
        }
    )

class PaymentPreviewRequest(CamelModel):
    """Lenient on purpose: malformed numbers are treated as 0 by the ledger."""
    bill_total: Any = 0
    advance_paid: Any = 0
    previous_dues: Any = 0
    products: Optional[List[Dict[str, Any]]] = None

class ProductResponse(CamelModel):
    name: str
    quantity: float
    unit_cost: float
    total: float
    width: Optional[float] = None
    height: Optional[float] = None
    sqft: Optional[float] = None

class InvoiceResponse(CamelModel):
    id: str
    invoice_number: str
    client_name: str
    client_address: str
    products: List[ProductResponse]
    products_total: float
    previous_dues: float
    bill_total: float
    advance_paid: float
    dues: float
    payment_status: str
    date_of_issue: date
    created_at: datetime
    updated_at: datetime

class StatsResponse(CamelModel):
    total_invoices: int
    total_revenue: float
    pending_dues: float
    total_advance_paid: float
    monthly_invoices: int
    status_counts: Dict[str, int]

class HealthResponse(BaseModel):
    status: str
    version: str
    total_invoices: int
    enforcement_checks: int
    ledger_integrity: bool
    lockout_policy: str

# ============================================
# APPLICATION STATE
# ============================================

class AppState:
    """Services shared by every request of one process."""

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = datetime.now):
        self.settings = settings
        self.attempt_store = InMemoryAttemptStore()
        self.login_guard = LoginAttemptGuard(
            self.attempt_store,
            policy=LockoutPolicy(settings.lockout_policy),
            max_attempts=settings.max_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_minutes),
            idle_ttl=timedelta(minutes=settings.attempt_record_ttl_minutes),
            clock=clock
        )
        self.session_issuer = SessionTokenIssuer(
            settings.session_secret,
            ttl=timedelta(hours=settings.session_ttl_hours)
        )
        self.invoice_storage = InvoiceStorage()
        self.decision_ledger = DecisionLedger()
        self.invoice_service = InvoiceService(self.invoice_storage, self.decision_ledger)

def get_state(request: Request) -> AppState:
    return request.app.state.cps

def require_admin(request: Request, state: AppState = Depends(get_state)) -> Dict[str, Any]:
    token = request.cookies.get(state.settings.session_cookie_name)
    claims = state.session_issuer.verify(token)
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return claims

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    state: AppState = app.state.cps
    logger.info("🚀 Chhaya Printing invoice service starting...")
    sweeper = asyncio.create_task(
        sweep_periodically(
            state.login_guard,
            state.settings.sweep_interval_seconds,
            on_sweep=record_sweep
        )
    )
    logger.info(f"✅ Login guard active (policy={state.login_guard.policy.value})")
    yield
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    logger.info("🛑 Chhaya Printing invoice service shutting down...")

# ============================================
# RESPONSE HELPERS
# ============================================

def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        client_name=invoice.client_name,
        client_address=invoice.client_address,
        products=[
            ProductResponse(
                name=p.name,
                quantity=p.quantity,
                unit_cost=p.unit_cost,
                total=p.total,
                width=p.width,
                height=p.height,
                sqft=p.sqft
            )
            for p in invoice.products
        ],
        products_total=invoice.products_total,
        previous_dues=invoice.previous_dues,
        bill_total=invoice.bill_total,
        advance_paid=invoice.advance_paid,
        dues=invoice.dues,
        payment_status=invoice.payment_status.value,
        date_of_issue=invoice.date_of_issue,
        created_at=invoice.created_at,
        updated_at=invoice.updated_at
    )

def _blocked_response(block: BlockStatus) -> JSONResponse:
    headers = {}
    if block.retry_after_seconds is not None:
        headers["Retry-After"] = str(block.retry_after_seconds)
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN if block.permanent else status.HTTP_429_TOO_MANY_REQUESTS,
        content={"error": block.message, **block.to_dict()},
        headers=headers
    )

def _write_kwargs(request: InvoiceWriteRequest) -> Dict[str, Any]:
    return dict(
        client_name=request.client_name,
        client_address=request.client_address,
        products=[item.model_dump(exclude={"total"}) for item in request.products],
        previous_dues=request.previous_dues,
        advance_paid=request.advance_paid,
        invoice_number=request.invoice_number,
        date_of_issue=request.date_of_issue
    )

# ============================================
# API ENDPOINTS
# ============================================

router = APIRouter()

@router.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": "Chhaya Printing Solution",
        "version": VERSION,
        "status": "operational"
    }

@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(state: AppState = Depends(get_state)):
    ledger = state.decision_ledger
    integrity = ledger.verify_chain_integrity()

    return HealthResponse(
        status="healthy" if integrity else "degraded",
        version=VERSION,
        total_invoices=state.invoice_storage.count(),
        enforcement_checks=len(ledger.entries),
        ledger_integrity=integrity,
        lockout_policy=state.login_guard.policy.value
    )

# ----- Auth -----

@router.post("/api/auth/login", tags=["Auth"])
async def login(body: LoginRequest, request: Request, state: AppState = Depends(get_state)):
    """
    Admin login with the shared access code.

    Locked addresses get 429 (timed lock) or 403 (permanent lock) and the
    attempt is not counted. A wrong code returns 401 with attemptsLeft.
    """
    ip = resolve_client_ip(request.headers)
    guard = state.login_guard

    block = guard.check_block(ip)
    if block.blocked:
        record_login_attempt("blocked")
        return _blocked_response(block)

    if verify_access_code(body.code, state.settings.admin_code):
        guard.record_attempt(ip, success=True)
        record_login_attempt("success")
        logger.info(f"Admin login from {ip}")

        response = JSONResponse({"success": True})
        response.set_cookie(
            state.settings.session_cookie_name,
            state.session_issuer.issue(),
            max_age=state.session_issuer.max_age_seconds(),
            httponly=True,
            secure=state.settings.secure_cookies,
            samesite="lax"
        )
        return response

    outcome = guard.record_attempt(ip, success=False)
    record_login_attempt("failure")
    if outcome.should_block:
        record_lockout(guard.policy.value)

    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={
            "error": "Invalid access code",
            "attemptsLeft": outcome.attempts_left,
            "blocked": outcome.should_block,
            "permanent": outcome.permanent,
            "message": outcome.message
        }
    )

@router.get("/api/auth/check-block", tags=["Auth"])
async def check_block(request: Request, state: AppState = Depends(get_state)):
    ip = resolve_client_ip(request.headers)
    return state.login_guard.check_block(ip).to_dict()

def _unlock(secret: Optional[str], target_ip: Optional[str], request: Request, state: AppState):
    if not verify_unlock_key(secret, state.settings.developer_unlock_key):
        record_unlock(False)
        logger.warning(f"Rejected unlock request from {resolve_client_ip(request.headers)}")
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"error": "Invalid unlock key"}
        )

    ip = target_ip or resolve_client_ip(request.headers)
    state.login_guard.unlock(ip)
    record_unlock(True)
    return {"success": True, "message": "Access unlocked successfully", "ip": ip}

@router.post("/api/auth/unlock", tags=["Auth"])
async def unlock(body: UnlockRequest, request: Request, state: AppState = Depends(get_state)):
    return _unlock(body.secret, body.ip, request, state)

@router.get("/api/auth/unlock", tags=["Auth"])
async def unlock_via_link(request: Request, secret: Optional[str] = None,
                          ip: Optional[str] = None, state: AppState = Depends(get_state)):
    return _unlock(secret, ip, request, state)

@router.post("/api/auth/logout", tags=["Auth"])
async def logout(state: AppState = Depends(get_state)):
    response = JSONResponse({"message": "Logout successful"})
    response.delete_cookie(state.settings.session_cookie_name)
    return response

@router.get("/api/auth/verify", tags=["Auth"])
async def verify(request: Request, state: AppState = Depends(get_state)):
    token = request.cookies.get(state.settings.session_cookie_name)
    if state.session_issuer.verify(token) is None:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"authenticated": False}
        )
    return {"authenticated": True}

# ----- Payments -----

@router.post("/api/payments/calculate", tags=["Payments"])
async def calculate(body: PaymentPreviewRequest, state: AppState = Depends(get_state)):
    """
    Ledger preview for invoice forms.

    Products are priced exactly as a saved invoice prices them, so the
    preview and the stored bill always agree.
    """
    if body.products is not None:
        products = price_products(body.products)
        result = calculate_complete_invoice(products, body.previous_dues, body.advance_paid)
    else:
        result = calculate_payment(body.bill_total, body.advance_paid)

    symbol = state.settings.currency_symbol
    return {
        **result.to_dict(),
        "paymentStatus": get_payment_status(result.dues, result.bill_total).value,
        "formatted": {
            "billTotal": format_currency(result.bill_total, symbol),
            "advancePaid": format_currency(result.advance_paid, symbol),
            "dues": format_currency(result.dues, symbol),
        }
    }

# ----- Invoices -----

@router.get("/api/invoices", response_model=List[InvoiceResponse], tags=["Invoices"],
            dependencies=[Depends(require_admin)])
async def list_invoices(state: AppState = Depends(get_state)):
    """List all invoices, newest first."""
    return [_invoice_response(inv) for inv in state.invoice_service.list_invoices()]

@router.post("/api/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED,
             tags=["Invoices"], dependencies=[Depends(require_admin)])
async def create_invoice(request: InvoiceWriteRequest, state: AppState = Depends(get_state)):
    """
    Create a new invoice.

    Product totals, bill total and dues are computed here; values sent by
    the client for them are ignored.
    """
    invoice = state.invoice_service.create_invoice(**_write_kwargs(request))
    record_invoice_write("create", invoice.bill_total)
    return _invoice_response(invoice)

@router.get("/api/invoices/meta/next-number", tags=["Invoices"], dependencies=[Depends(require_admin)])
async def next_invoice_number(state: AppState = Depends(get_state)):
    return {"nextNumber": state.invoice_service.next_invoice_number()}

@router.get("/api/invoices/stats", response_model=StatsResponse, tags=["Invoices"],
            dependencies=[Depends(require_admin)])
async def invoice_stats(state: AppState = Depends(get_state)):
    stats = state.invoice_service.get_stats()
    pending_dues_gauge.set(stats.pending_dues)

    return StatsResponse(
        total_invoices=stats.total_invoices,
        total_revenue=stats.total_revenue,
        pending_dues=stats.pending_dues,
        total_advance_paid=stats.total_advance_paid,
        monthly_invoices=stats.monthly_invoices,
        status_counts=stats.status_counts
    )

@router.get("/api/invoices/{invoice_id}", response_model=InvoiceResponse, tags=["Invoices"],
            dependencies=[Depends(require_admin)])
async def get_invoice(invoice_id: str, state: AppState = Depends(get_state)):
    return _invoice_response(state.invoice_service.get_invoice(invoice_id))

@router.put("/api/invoices/{invoice_id}", response_model=InvoiceResponse, tags=["Invoices"],
            dependencies=[Depends(require_admin)])
async def update_invoice(invoice_id: str, request: InvoiceWriteRequest, state: AppState = Depends(get_state)):
    """Replace an invoice; the ledger is recomputed from the submitted products."""
    invoice = state.invoice_service.update_invoice(invoice_id, **_write_kwargs(request))
    record_invoice_write("update")
    return _invoice_response(invoice)

@router.delete("/api/invoices/{invoice_id}", tags=["Invoices"], dependencies=[Depends(require_admin)])
async def delete_invoice(invoice_id: str, state: AppState = Depends(get_state)):
    state.invoice_service.delete_invoice(invoice_id)
    record_invoice_write("delete")
    return {"message": "Invoice deleted successfully"}

@router.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

# ============================================
# ERROR HANDLERS
# ============================================

async def payment_validation_handler(request: Request, exc: PaymentValidationError):
    record_payment_validation_failure(str(exc))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)}
    )

async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    logger.error(f"Invariant violation: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": f"Invariant violation: {exc}"}
    )

async def invoice_not_found_handler(request: Request, exc: InvoiceNotFound):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)}
    )

# ============================================
# FASTAPI APPLICATION
# ============================================

def create_app(settings: Optional[Settings] = None, state: Optional[AppState] = None) -> FastAPI:
    settings = settings or (state.settings if state else load_settings())
    logging.getLogger().setLevel(settings.log_level)

    if not settings.admin_code:
        logger.warning("ADMIN_CODE is not set; every login will be rejected")

    app = FastAPI(
        title="Chhaya Printing Solution",
        description="Invoice ledger and admin API for the print shop",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    app.state.cps = state or AppState(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def track_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        record_api_request(endpoint, request.method, response.status_code, time.perf_counter() - started)
        return response

    app.add_exception_handler(PaymentValidationError, payment_validation_handler)
    app.add_exception_handler(InvariantViolation, invariant_violation_handler)
    app.add_exception_handler(InvoiceNotFound, invoice_not_found_handler)
    app.include_router(router)
    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "cps_main_api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
