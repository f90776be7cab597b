"""
Tests for the quote -> order -> job conversion pipeline.

Covers:
1. Only APPROVED quotes convert, and the quote becomes CONVERTED with the order
2. Orders carry the quote's customer, total and VAT split
3. An order converts to a job at most once
4. A failed commit leaves no half-applied conversion behind
"""
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import PreconditionError
from app.db.models import Job, Order, OrderStatus, Quote, QuoteStatus
from app.db.session import get_db
from app.main import app
from app.services.conversion import convert_order_to_job, convert_quote_to_order, split_vat
from app.services.orders import create_order, update_order_status
from app.tests.conftest import as_utc


def lost_connection(*args, **kwargs):
    raise OperationalError("COMMIT", {}, Exception("connection lost"))


@pytest.fixture
def approved_order(db, make_quote, users):
    quote = make_quote(status=QuoteStatus.APPROVED, total_amount=120.0)
    order, _ = convert_quote_to_order(db, quote.id, users["operator"].id)
    return order


# ============= QUOTE -> ORDER =============

class TestQuoteToOrder:

    def test_approved_quote_becomes_converted_order(self, db, make_quote, customer, users):
        quote = make_quote(status=QuoteStatus.APPROVED, total_amount=120.0)

        order, quote = convert_quote_to_order(db, quote.id, users["operator"].id)

        assert quote.status == QuoteStatus.CONVERTED.value
        assert order.status == OrderStatus.APPROVED.value
        assert order.source_quote_id == quote.id
        assert order.quote_ref == quote.quote_number
        assert order.customer_id == customer.id
        assert order.customer_name == customer.name
        assert order.total_amount == 120.0
        assert (order.sub_total, order.total_tax) == (100.0, 20.0)
        assert order.payment_terms == "FOURTEEN_DAYS"
        assert order.notes == f"Converted from Quote: {quote.quote_number} v1"
        assert order.job_id is None

    def test_items_are_copied_from_line_items(self, db, make_quote, users):
        quote = make_quote(status=QuoteStatus.APPROVED)
        order, _ = convert_quote_to_order(db, quote.id, users["operator"].id)

        assert order.items == [{
            "material_id": None,
            "material_code": None,
            "description": "Widget",
            "quantity": 2.0,
            "unit_price": 10.0,
            "total": 20.0,
        }]

    @pytest.mark.parametrize("status", [
        QuoteStatus.DRAFT, QuoteStatus.SENT, QuoteStatus.PENDING, QuoteStatus.DECLINED, QuoteStatus.EXPIRED,
    ])
    def test_only_approved_quotes_convert(self, db, make_quote, users, status):
        quote = make_quote(status=status)

        with pytest.raises(PreconditionError, match="Only APPROVED quotes"):
            convert_quote_to_order(db, quote.id, users["operator"].id)

        db.refresh(quote)
        assert quote.status == status.value
        assert db.query(Order).count() == 0

    def test_quote_converts_only_once(self, db, make_quote, users):
        quote = make_quote(status=QuoteStatus.APPROVED)
        convert_quote_to_order(db, quote.id, users["operator"].id)

        with pytest.raises(PreconditionError):
            convert_quote_to_order(db, quote.id, users["operator"].id)
        assert db.query(Order).count() == 1

    def test_failed_commit_rolls_back_both_writes(self, db, make_quote, users, session_factory):
        quote = make_quote(status=QuoteStatus.APPROVED)

        with mock.patch.object(db, "commit", side_effect=lost_connection):
            with pytest.raises(OperationalError):
                convert_quote_to_order(db, quote.id, users["operator"].id)

        check = session_factory()
        try:
            assert check.get(Quote, quote.id).status == QuoteStatus.APPROVED.value
            assert check.query(Order).count() == 0
        finally:
            check.close()


# ============= ORDER -> JOB =============

class TestOrderToJob:

    def test_job_created_and_order_in_production(self, db, approved_order, users, customer):
        job, order = convert_order_to_job(db, approved_order.id, users["operator"].id)

        assert job.status == "ACTIVE"
        assert job.customer_id == customer.id
        assert job.title == order.project_title
        assert order.job_id == job.id
        assert order.status == OrderStatus.IN_PRODUCTION.value

    def test_expected_end_follows_lead_time(self, db, customer, users):
        order = create_order(
            db,
            project_title="Reception desk",
            customer_name=customer.name,
            contact_person="Ellis Grant",
            project_value=2400.0,
            customer_id=customer.id,
            lead_time_weeks=2,
            actor_id=users["operator"].id,
        )
        update_order_status(db, order.id, OrderStatus.APPROVED)

        job, _ = convert_order_to_job(db, order.id, users["operator"].id)

        expected = datetime.now(timezone.utc) + timedelta(days=14)
        assert abs(as_utc(job.expected_end_date) - expected) < timedelta(minutes=1)
        assert abs(as_utc(job.start_date) - datetime.now(timezone.utc)) < timedelta(minutes=1)

    def test_default_duration_without_lead_time(self, db, customer, users):
        order = create_order(
            db,
            project_title="Stock shelving",
            customer_name=customer.name,
            contact_person="Ellis Grant",
            project_value=600.0,
            customer_id=customer.id,
        )
        update_order_status(db, order.id, OrderStatus.APPROVED)

        job, _ = convert_order_to_job(db, order.id, None)

        expected = datetime.now(timezone.utc) + timedelta(days=30)
        assert abs(as_utc(job.expected_end_date) - expected) < timedelta(minutes=1)

    def test_second_conversion_reports_existing_job(self, db, approved_order, users):
        job, _ = convert_order_to_job(db, approved_order.id, users["operator"].id)

        with pytest.raises(PreconditionError) as excinfo:
            convert_order_to_job(db, approved_order.id, users["operator"].id)

        assert excinfo.value.status_code == 409
        assert excinfo.value.to_payload()["existing_job_id"] == job.id
        assert db.query(Job).count() == 1

    def test_losing_a_race_reports_the_winning_job(self, db, session_factory, approved_order, users):
        winner = {}

        def rival_converts_first():
            other = session_factory()
            try:
                rival = Job(
                    title="Rival", status="ACTIVE", customer_id=approved_order.customer_id,
                )
                other.add(rival)
                other.flush()
                order = other.get(Order, approved_order.id)
                order.job_id = rival.id
                order.status = OrderStatus.IN_PRODUCTION.value
                other.commit()
                winner["job_id"] = rival.id
            finally:
                other.close()
            return datetime.now(timezone.utc)

        with mock.patch("app.services.conversion._now", side_effect=rival_converts_first):
            with pytest.raises(PreconditionError) as excinfo:
                convert_order_to_job(db, approved_order.id, users["operator"].id)

        assert excinfo.value.status_code == 409
        assert excinfo.value.to_payload()["existing_job_id"] == winner["job_id"]
        assert [job.title for job in db.query(Job).all()] == ["Rival"]
        assert db.get(Order, approved_order.id).job_id == winner["job_id"]

    def test_unapproved_order_does_not_convert(self, db, customer):
        order = create_order(
            db,
            project_title="Draft job",
            customer_name=customer.name,
            contact_person="Ellis Grant",
            project_value=100.0,
            customer_id=customer.id,
        )
        with pytest.raises(PreconditionError, match="must be approved"):
            convert_order_to_job(db, order.id, None)
        assert db.query(Job).count() == 0

    def test_internal_order_needs_a_customer(self, db):
        order = create_order(
            db,
            project_title="Workshop jig",
            customer_name="Internal",
            contact_person="Workshop lead",
            project_value=50.0,
        )
        update_order_status(db, order.id, OrderStatus.APPROVED)

        with pytest.raises(PreconditionError, match="no linked customer"):
            convert_order_to_job(db, order.id, None)

    def test_failed_commit_leaves_order_unconverted(self, db, approved_order, session_factory):
        with mock.patch.object(db, "commit", side_effect=lost_connection):
            with pytest.raises(OperationalError):
                convert_order_to_job(db, approved_order.id, None)

        check = session_factory()
        try:
            order = check.get(Order, approved_order.id)
            assert order.status == OrderStatus.APPROVED.value
            assert order.job_id is None
            assert check.query(Job).count() == 0
        finally:
            check.close()


class TestVatSplit:

    @pytest.mark.parametrize("total, rate, expected", [
        (120.0, 20.0, (100.0, 20.0)),
        (100.0, 0.0, (100.0, 0.0)),
        (240.0, 20.0, (200.0, 40.0)),
    ])
    def test_split(self, total, rate, expected):
        assert split_vat(total, rate) == expected


# ============= API =============

class TestConversionApi:

    def test_full_pipeline(self, client, operator_headers, admin_headers, customer):
        created = client.post("/api/quotes", headers=operator_headers, json={
            "customer_id": customer.id,
            "title": "Fitted wardrobes",
            "line_items": [{"description": "Wardrobe unit", "quantity": 2, "unit_price": 500}],
        })
        assert created.status_code == 201
        quote_id = created.json()["id"]

        approved = client.patch(f"/api/quotes/{quote_id}/status", headers=operator_headers,
                                json={"status": "APPROVED"})
        assert approved.status_code == 200

        converted = client.post(f"/api/quotes/{quote_id}/convert-to-order", headers=operator_headers)
        assert converted.status_code == 201
        body = converted.json()
        assert body["quote"]["status"] == "CONVERTED"
        assert body["order"]["status"] == "APPROVED"
        assert body["order"]["total_amount"] == 1200.0
        order_id = body["order"]["id"]

        to_job = client.post(f"/api/orders/{order_id}/convert-to-job", headers=operator_headers)
        assert to_job.status_code == 201
        job_id = to_job.json()["job"]["id"]
        assert to_job.json()["order"]["job_id"] == job_id
        assert to_job.json()["order"]["status"] == "IN_PRODUCTION"

        again = client.post(f"/api/orders/{order_id}/convert-to-job", headers=operator_headers)
        assert again.status_code == 409
        assert again.json()["existing_job_id"] == job_id

        timeline = client.get(f"/api/audit/timeline?job_id={job_id}", headers=admin_headers)
        assert timeline.status_code == 200
        change_types = [(r["entity_type"], r["change_type"]) for r in timeline.json()]
        assert change_types == [
            ("quote", "CREATE"),
            ("quote", "STATUS_CHANGE"),
            ("quote", "CONVERTED_TO_ORDER"),
            ("order", "CONVERTED_TO_JOB"),
        ]

    def test_converting_draft_quote_is_rejected(self, client, operator_headers, make_quote):
        quote = make_quote()
        response = client.post(f"/api/quotes/{quote.id}/convert-to-order", headers=operator_headers)

        assert response.status_code == 400
        assert response.json()["current_status"] == "DRAFT"

    def test_convert_missing_order(self, client, operator_headers):
        response = client.post("/api/orders/999/convert-to-job", headers=operator_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "Order with ID 999 not found"

    def test_store_failure_returns_500_and_keeps_order(self, client, operator_headers, approved_order,
                                                       session_factory):
        def failing_db():
            session = session_factory()
            session.commit = lost_connection
            try:
                yield session
            finally:
                session.close()

        app.dependency_overrides[get_db] = failing_db
        response = client.post(f"/api/orders/{approved_order.id}/convert-to-job", headers=operator_headers)

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"

        check = session_factory()
        try:
            order = check.get(Order, approved_order.id)
            assert order.status == OrderStatus.APPROVED.value
            assert order.job_id is None
            assert check.query(Job).count() == 0
        finally:
            check.close()
