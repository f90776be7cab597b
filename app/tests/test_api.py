"""
HTTP surface tests: authentication, error response shapes, catalog routes,
the order state machine and the quote routes.
"""
import pytest

from app.core.security import create_access_token, get_password_hash
from app.db.models import OrderStatus, QuoteStatus, User
from app.services.orders import create_order


@pytest.fixture
def order(db, customer):
    return create_order(
        db,
        project_title="Library shelving",
        customer_name=customer.name,
        contact_person="Ellis Grant",
        project_value=1200.0,
        customer_id=customer.id,
    )


# ============= AUTH =============

class TestAuth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_login_and_me(self, client, db):
        db.add(User(
            email="estimator@jobflow.example.com",
            hashed_password=get_password_hash("correct-horse-42"),
            full_name="Estimator",
            role="operator",
        ))
        db.commit()

        login = client.post("/api/auth/login", json={
            "email": "Estimator@jobflow.example.com",
            "password": "correct-horse-42",
        })
        assert login.status_code == 200
        token = login.json()["access_token"]
        assert login.json()["user"]["role"] == "operator"

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["email"] == "estimator@jobflow.example.com"

    def test_bad_password(self, client, db):
        db.add(User(email="someone@jobflow.example.com", hashed_password=get_password_hash("right-password-1")))
        db.commit()

        response = client.post("/api/auth/login", json={
            "email": "someone@jobflow.example.com",
            "password": "wrong-password-1",
        })
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid email or password"}

    def test_disabled_account(self, client, db):
        db.add(User(
            email="leaver@jobflow.example.com",
            hashed_password=get_password_hash("right-password-1"),
            is_active=False,
        ))
        db.commit()

        response = client.post("/api/auth/login", json={
            "email": "leaver@jobflow.example.com",
            "password": "right-password-1",
        })
        assert response.status_code == 401
        assert response.json() == {"error": "Account is disabled"}

    def test_me_for_removed_user(self, client):
        token = create_access_token({"sub": "9999", "role": "viewer"})
        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 404
        assert response.json() == {"error": "User with ID 9999 not found"}

    @pytest.mark.parametrize("path", ["/api/quotes", "/api/auth/me"])
    def test_non_numeric_subject(self, client, path):
        token = create_access_token({"sub": "estimator", "role": "operator"})
        response = client.get(path, headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid token payload"}

    def test_missing_token(self, client):
        response = client.get("/api/quotes")
        assert response.status_code == 401
        assert response.json()["error"] == "User authentication required"

    def test_garbage_token(self, client):
        response = client.get("/api/quotes", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_viewer_can_read_but_not_write(self, client, viewer_headers, customer):
        assert client.get("/api/customers", headers=viewer_headers).status_code == 200

        response = client.post("/api/customers", headers=viewer_headers,
                               json={"name": "New Co", "email": "hello@newco.example.com"})
        assert response.status_code == 403
        assert "Insufficient permissions" in response.json()["error"]


# ============= ERROR SHAPES =============

class TestErrorShapes:

    def test_not_found(self, client, operator_headers):
        response = client.get("/api/quotes/12345", headers=operator_headers)
        assert response.status_code == 404
        assert response.json() == {"error": "Quote with ID 12345 not found"}

    def test_malformed_body(self, client, operator_headers, customer):
        response = client.post("/api/quotes", headers=operator_headers, json={
            "customer_id": customer.id,
            "title": "No items",
            "line_items": [],
        })
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        assert "line_items" in body["details"]

    def test_missing_order_fields_listed(self, client, operator_headers):
        response = client.post("/api/orders", headers=operator_headers, json={
            "project_title": " ",
            "customer_name": "Walk-in",
            "contact_person": "",
            "project_value": 100,
        })
        assert response.status_code == 400
        assert response.json() == {
            "error": "Missing required order fields",
            "details": "project title, contact person",
        }

    def test_duplicate_customer_conflict(self, client, operator_headers, customer):
        response = client.post("/api/customers", headers=operator_headers, json={
            "name": "Harbour Joinery (again)",
            "email": customer.email.upper(),
        })
        assert response.status_code == 409
        assert "error" in response.json()


# ============= CATALOG =============

class TestCatalog:

    def test_material_codes_are_normalised(self, client, operator_headers):
        created = client.post("/api/materials", headers=operator_headers, json={
            "code": "mdf-18",
            "name": "MDF sheet 18mm",
            "unit_price": 22.0,
            "current_stock": 5,
            "reorder_point": 10,
        })
        assert created.status_code == 201
        assert created.json()["code"] == "MDF-18"

        low = client.get("/api/materials?low_stock=true", headers=operator_headers)
        assert [m["code"] for m in low.json()] == ["MDF-18"]

    def test_customer_lookup(self, client, operator_headers, customer):
        response = client.get(f"/api/customers/{customer.id}", headers=operator_headers)
        assert response.status_code == 200
        assert response.json()["payment_terms"] == "FOURTEEN_DAYS"


# ============= ORDERS =============

class TestOrderStateMachine:

    def test_direct_order_is_draft_with_vat_split(self, order):
        assert order.status == OrderStatus.DRAFT.value
        assert order.order_type == "CUSTOMER_LINKED"
        assert (order.sub_total, order.total_tax, order.total_amount) == (1000.0, 200.0, 1200.0)
        assert order.payment_terms == "FOURTEEN_DAYS"

    @pytest.mark.parametrize("path", [
        ["PENDING_APPROVAL", "APPROVED"],
        ["APPROVED", "ON_HOLD", "APPROVED"],
        ["CANCELLED"],
    ])
    def test_allowed_paths(self, client, operator_headers, order, path):
        for target in path:
            response = client.patch(f"/api/orders/{order.id}/status", headers=operator_headers,
                                    json={"status": target})
            assert response.status_code == 200, response.json()
            assert response.json()["status"] == target

    def test_production_requires_job(self, client, operator_headers, order):
        client.patch(f"/api/orders/{order.id}/status", headers=operator_headers, json={"status": "APPROVED"})
        client.patch(f"/api/orders/{order.id}/status", headers=operator_headers, json={"status": "ON_HOLD"})

        response = client.patch(f"/api/orders/{order.id}/status", headers=operator_headers,
                                json={"status": "IN_PRODUCTION"})
        assert response.status_code == 400
        assert "converted to a job" in response.json()["error"]

    @pytest.mark.parametrize("target", ["IN_PRODUCTION", "COMPLETED", "READY_FOR_DELIVERY"])
    def test_draft_cannot_skip_ahead(self, client, operator_headers, order, target):
        response = client.patch(f"/api/orders/{order.id}/status", headers=operator_headers,
                                json={"status": target})
        assert response.status_code == 400
        assert response.json()["current_status"] == "DRAFT"

    def test_cancelled_is_terminal(self, client, operator_headers, order):
        client.patch(f"/api/orders/{order.id}/status", headers=operator_headers, json={"status": "CANCELLED"})
        response = client.patch(f"/api/orders/{order.id}/status", headers=operator_headers,
                                json={"status": "DRAFT"})
        assert response.status_code == 400

    def test_available_orders(self, client, operator_headers, order):
        response = client.get("/api/orders/available", headers=operator_headers)
        assert [o["id"] for o in response.json()] == [order.id]


# ============= QUOTES =============

class TestQuoteRoutes:

    def test_version_and_history(self, client, operator_headers, make_quote):
        quote = make_quote()

        version = client.post(f"/api/quotes/{quote.id}/versions", headers=operator_headers, json={
            "change_reason": "Added fitting",
            "line_items": [
                {"description": "Widget", "quantity": 2, "unit_price": 10},
                {"description": "Fitting", "quantity": 1, "unit_price": 30},
            ],
        })
        assert version.status_code == 201
        assert version.json()["version_number"] == 2
        assert version.json()["total_amount"] == 60.0

        history = client.get(f"/api/quotes/history/{quote.quote_reference}", headers=operator_headers)
        assert [(q["version_number"], q["is_latest_version"]) for q in history.json()] == [(1, False), (2, True)]

        listed = client.get("/api/quotes", headers=operator_headers)
        assert [q["id"] for q in listed.json()] == [version.json()["id"]]

    def test_locked_quote_version_rejected(self, client, operator_headers, make_quote):
        quote = make_quote(status=QuoteStatus.APPROVED)
        response = client.post(f"/api/quotes/{quote.id}/versions", headers=operator_headers,
                               json={"change_reason": "Price rise"})
        assert response.status_code == 400
        assert response.json()["current_status"] == "APPROVED"

    def test_version_status_must_stay_open(self, client, operator_headers, make_quote):
        quote = make_quote(status=QuoteStatus.PENDING)

        response = client.post(f"/api/quotes/{quote.id}/versions", headers=operator_headers,
                               json={"change_reason": "skip ahead", "status": "CONVERTED"})

        assert response.status_code == 400
        assert "DRAFT, SENT or PENDING" in response.json()["details"]
        history = client.get(f"/api/quotes/history/{quote.quote_reference}", headers=operator_headers)
        assert [q["status"] for q in history.json()] == ["PENDING"]

    def test_clone_with_adjustments(self, client, operator_headers, make_quote):
        quote = make_quote(status=QuoteStatus.DECLINED)
        item_id = quote.line_items[0].id

        response = client.post(f"/api/quotes/{quote.id}/clone", headers=operator_headers, json={
            "title": "Second attempt",
            "adjustments": {str(item_id): {"unit_price": 8}},
        })
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "DRAFT"
        assert body["title"] == "Second attempt"
        assert body["line_items"][0]["unit_price"] == 8
        # 2 * 8 * 1.2
        assert body["total_amount"] == 19.2
        assert body["quote_reference"] != quote.quote_reference
        assert body["customer"] == {
            "id": quote.customer_id,
            "name": "Harbour Joinery Ltd",
            "email": "orders@harbourjoinery.example.com",
        }

    def test_edit_draft_only(self, client, operator_headers, make_quote):
        draft = make_quote()
        edited = client.put(f"/api/quotes/{draft.id}", headers=operator_headers, json={"notes": "Deliver Friday"})
        assert edited.status_code == 200
        assert edited.json()["notes"] == "Deliver Friday"

        sent = make_quote(status=QuoteStatus.SENT)
        rejected = client.put(f"/api/quotes/{sent.id}", headers=operator_headers, json={"notes": "Too late"})
        assert rejected.status_code == 400
