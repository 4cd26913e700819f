"""
Chhaya Printing Solution (CPS) - API Tests
Version: 1.0.0

End-to-end flows through the FastAPI app: login lockout, developer unlock,
session cookie, invoice CRUD and the payment preview.
"""

import pytest
from fastapi.testclient import TestClient

from cps_config import Settings
from cps_login_guard_v1 import PERMANENT_BLOCK_MESSAGE
from cps_main_api import create_app
from cps_payment_ledger_v1 import ADVANCE_EXCEEDS_TOTAL_MESSAGE

ADMIN_CODE = "123456"
UNLOCK_KEY = "dev-key"
IP = "1.2.3.4"

# ============================================
# FIXTURES
# ============================================

def make_settings(**overrides) -> Settings:
    values = dict(
        admin_code=ADMIN_CODE,
        session_secret="test-session-secret-0123456789abcdef",
        developer_unlock_key=UNLOCK_KEY,
        app_env="test",
    )
    values.update(overrides)
    return Settings(**values)

@pytest.fixture
def client():
    with TestClient(create_app(make_settings())) as test_client:
        yield test_client

@pytest.fixture
def permanent_client():
    with TestClient(create_app(make_settings(lockout_policy="permanent"))) as test_client:
        yield test_client

@pytest.fixture
def admin(client):
    response = login(client, ADMIN_CODE, ip="10.0.0.1")
    assert response.status_code == 200
    return client

def login(client, code, ip=IP):
    return client.post("/api/auth/login", json={"code": code}, headers={"x-forwarded-for": ip})

def check_block(client, ip=IP):
    return client.get("/api/auth/check-block", headers={"x-forwarded-for": ip}).json()

INVOICE = {
    "clientName": "Sharma Traders",
    "clientAddress": "12 Station Road",
    "products": [
        {"name": "Flex banner", "quantity": 2, "unitCost": 15, "width": 4, "height": 3},
        {"name": "Visiting cards", "quantity": 5, "unitCost": 120},
    ],
    "previousDues": 150,
    "advancePaid": 500,
}

# ============================================
# HEALTH AND METRICS
# ============================================

class TestHealth:

    def test_root(self, client):
        assert client.get("/").json()["status"] == "operational"

    def test_health(self, client):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["ledger_integrity"] is True
        assert data["lockout_policy"] == "timed"

    def test_metrics(self, client):
        login(client, "wrong")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "cps_login_attempts_total" in response.text

# ============================================
# LOGIN AND LOCKOUT
# ============================================

class TestLogin:

    def test_success_sets_session_cookie(self, client):
        response = login(client, ADMIN_CODE)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("admin-token=")
        assert "HttpOnly" in set_cookie
        assert client.get("/api/auth/verify").json() == {"authenticated": True}

    def test_wrong_code_reports_attempts_left(self, client):
        response = login(client, "000000")

        assert response.status_code == 401
        data = response.json()
        assert data["error"] == "Invalid access code"
        assert data["attemptsLeft"] == 2
        assert data["blocked"] is False

    def test_lockout_after_three_failures(self, client):
        login(client, "000000")
        login(client, "000000")
        assert check_block(client) == {"blocked": False, "attemptsLeft": 1}

        third = login(client, "000000")
        assert third.status_code == 401
        assert third.json()["blocked"] is True
        assert third.json()["attemptsLeft"] == 0

        status = check_block(client)
        assert status["blocked"] is True
        assert status["permanent"] is False

    def test_locked_address_refused_even_with_correct_code(self, client):
        for _ in range(3):
            login(client, "000000")

        response = login(client, ADMIN_CODE)

        assert response.status_code == 429
        assert response.headers["retry-after"] == "1800"
        assert "30 minute(s)" in response.json()["error"]
        assert "set-cookie" not in response.headers

    def test_lockout_is_per_address(self, client):
        for _ in range(3):
            login(client, "000000")

        assert login(client, ADMIN_CODE, ip="5.6.7.8").status_code == 200

    def test_success_resets_counter(self, client):
        login(client, "000000")
        login(client, "000000")
        login(client, ADMIN_CODE)

        assert check_block(client)["attemptsLeft"] == 3

    def test_empty_code_is_rejected_by_validation(self, client):
        assert login(client, "").status_code == 422

    def test_unset_admin_code_never_matches(self):
        with TestClient(create_app(make_settings(admin_code=""))) as test_client:
            assert login(test_client, "anything").status_code == 401

class TestPermanentLockout:

    def test_permanent_block_and_unlock(self, permanent_client):
        for _ in range(3):
            login(permanent_client, "000000")

        blocked = login(permanent_client, ADMIN_CODE)
        assert blocked.status_code == 403
        assert blocked.json()["error"] == PERMANENT_BLOCK_MESSAGE
        assert "retry-after" not in blocked.headers

        rejected = permanent_client.post("/api/auth/unlock", json={"secret": "guess", "ip": IP})
        assert rejected.status_code == 403
        assert rejected.json() == {"error": "Invalid unlock key"}
        assert check_block(permanent_client)["blocked"] is True

        unlocked = permanent_client.post("/api/auth/unlock", json={"secret": UNLOCK_KEY, "ip": IP})
        assert unlocked.status_code == 200
        assert unlocked.json() == {"success": True, "message": "Access unlocked successfully", "ip": IP}

        assert login(permanent_client, ADMIN_CODE).status_code == 200

    def test_unlock_link_defaults_to_caller_address(self, permanent_client):
        for _ in range(3):
            login(permanent_client, "000000")

        response = permanent_client.get(
            "/api/auth/unlock",
            params={"secret": UNLOCK_KEY},
            headers={"x-forwarded-for": IP}
        )

        assert response.status_code == 200
        assert response.json()["ip"] == IP
        assert check_block(permanent_client) == {"blocked": False, "attemptsLeft": 3}

    def test_unlock_without_key_configured(self):
        with TestClient(create_app(make_settings(developer_unlock_key=""))) as test_client:
            response = test_client.get("/api/auth/unlock", params={"secret": ""})
            assert response.status_code == 403

# ============================================
# SESSION
# ============================================

class TestSession:

    def test_verify_without_cookie(self, client):
        response = client.get("/api/auth/verify")

        assert response.status_code == 401
        assert response.json() == {"authenticated": False}

    def test_forged_cookie_rejected(self, client):
        client.cookies.set("admin-token", "forged.token")
        assert client.get("/api/auth/verify").status_code == 401

    @pytest.mark.parametrize("raw_cookie", ["admin-token=a.é", "admin-token=é.é.é", "admin-token=a.b.ü"])
    def test_non_ascii_cookie_is_unauthenticated(self, client, raw_cookie):
        headers = {"Cookie": raw_cookie.encode("latin-1")}

        assert client.get("/api/auth/verify", headers=headers).status_code == 401
        assert client.get("/api/invoices", headers=headers).status_code == 401

    def test_logout_clears_cookie(self, admin):
        response = admin.post("/api/auth/logout")

        assert response.json() == {"message": "Logout successful"}
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("admin-token=")
        assert "Max-Age=0" in set_cookie

    def test_invoices_require_session(self, client):
        assert client.get("/api/invoices").status_code == 401
        assert client.post("/api/invoices", json=INVOICE).status_code == 401
        assert client.get("/api/invoices/stats").status_code == 401

# ============================================
# PAYMENT PREVIEW
# ============================================

class TestPaymentPreview:

    def test_partial(self, client):
        data = client.post("/api/payments/calculate", json={"billTotal": 200, "advancePaid": 180}).json()

        assert data["dues"] == 20.0
        assert data["isValid"] is True
        assert data["paymentStatus"] == "partial"
        assert data["formatted"]["dues"] == "₹20.00"

    def test_advance_exceeds_bill(self, client):
        data = client.post("/api/payments/calculate", json={"billTotal": 200, "advancePaid": 250}).json()

        assert data["isValid"] is False
        assert data["errorMessage"] == ADVANCE_EXCEEDS_TOTAL_MESSAGE
        assert data["dues"] == -50.0

    def test_malformed_numbers_treated_as_zero(self, client):
        data = client.post("/api/payments/calculate", json={"billTotal": "abc", "advancePaid": None}).json()

        assert data["billTotal"] == 0
        assert data["dues"] == 0
        assert data["paymentStatus"] == "paid"

    def test_with_products(self, client):
        body = {
            "products": [
                {"name": "Poster", "quantity": 3, "unitCost": 100},
                {"name": "Sticker", "quantity": 7, "unitCost": 21.5},
            ],
            "previousDues": 49.5,
            "advancePaid": 200,
        }
        data = client.post("/api/payments/calculate", json=body).json()

        assert data["productsTotal"] == 450.5
        assert data["billTotal"] == 500.0
        assert data["dues"] == 300.0

    def test_client_sent_totals_are_repriced(self, client):
        body = {"products": [{"name": "Poster", "quantity": 2, "unitCost": 50, "total": 9999}]}
        data = client.post("/api/payments/calculate", json=body).json()

        assert data["billTotal"] == 100.0

    def test_preview_matches_saved_invoice(self, admin):
        preview = admin.post("/api/payments/calculate", json=INVOICE).json()
        saved = admin.post("/api/invoices", json=INVOICE).json()

        assert preview["productsTotal"] == saved["productsTotal"] == 960.0
        assert preview["billTotal"] == saved["billTotal"] == 1110.0
        assert preview["dues"] == saved["dues"]
        assert preview["paymentStatus"] == saved["paymentStatus"]

# ============================================
# INVOICES
# ============================================

class TestInvoices:

    def test_create(self, admin):
        response = admin.post("/api/invoices", json=INVOICE)

        assert response.status_code == 201
        data = response.json()
        assert data["invoiceNumber"] == "INV-0001"
        assert data["products"][0]["total"] == 360.0
        assert data["products"][0]["sqft"] == 12.0
        assert data["productsTotal"] == 960.0
        assert data["billTotal"] == 1110.0
        assert data["dues"] == 610.0
        assert data["paymentStatus"] == "partial"

    def test_advance_exceeding_bill_rejected(self, admin):
        response = admin.post("/api/invoices", json={**INVOICE, "advancePaid": 5000})

        assert response.status_code == 400
        assert response.json() == {"detail": ADVANCE_EXCEEDS_TOTAL_MESSAGE}
        assert admin.get("/api/invoices").json() == []

    def test_duplicate_number_rejected(self, admin):
        admin.post("/api/invoices", json={**INVOICE, "invoiceNumber": "INV-0042"})
        response = admin.post("/api/invoices", json={**INVOICE, "invoiceNumber": "INV-0042"})

        assert response.status_code == 400
        assert "inv_001_unique_invoice_numbers" in response.json()["detail"]

    def test_missing_products_rejected(self, admin):
        assert admin.post("/api/invoices", json={**INVOICE, "products": []}).status_code == 422

    def test_crud_flow(self, admin):
        created = admin.post("/api/invoices", json=INVOICE).json()
        invoice_id = created["id"]

        assert admin.get(f"/api/invoices/{invoice_id}").json()["id"] == invoice_id
        assert [inv["id"] for inv in admin.get("/api/invoices").json()] == [invoice_id]
        assert admin.get("/api/invoices/meta/next-number").json() == {"nextNumber": "INV-0002"}

        updated = admin.put(f"/api/invoices/{invoice_id}", json={**INVOICE, "advancePaid": 1110})
        assert updated.status_code == 200
        assert updated.json()["dues"] == 0
        assert updated.json()["paymentStatus"] == "paid"
        assert updated.json()["invoiceNumber"] == "INV-0001"

        deleted = admin.delete(f"/api/invoices/{invoice_id}")
        assert deleted.json() == {"message": "Invoice deleted successfully"}
        assert admin.get(f"/api/invoices/{invoice_id}").status_code == 404

    def test_unknown_invoice(self, admin):
        assert admin.get("/api/invoices/missing").status_code == 404
        assert admin.delete("/api/invoices/missing").status_code == 404
        assert admin.put("/api/invoices/missing", json=INVOICE).status_code == 404

    def test_stats(self, admin):
        admin.post("/api/invoices", json=INVOICE)
        admin.post("/api/invoices", json={**INVOICE, "previousDues": 0, "advancePaid": 960})

        stats = admin.get("/api/invoices/stats").json()

        assert stats["totalInvoices"] == 2
        assert stats["totalRevenue"] == 2070.0
        assert stats["pendingDues"] == 610.0
        assert stats["totalAdvancePaid"] == 1460.0
        assert stats["monthlyInvoices"] == 2
        assert stats["statusCounts"] == {"paid": 1, "partial": 1, "unpaid": 0}

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
