"""
Tests for quote creation, re-versioning, cloning and status rules.
"""
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import NotFoundError, PreconditionError, ValidationError
from app.db.models import Customer, Quote, QuoteStatus
from app.services.quotes import (
    calculate_quote_total,
    clone_quote,
    create_quote,
    create_quote_version,
    get_quote_history_by_reference,
    list_quotes,
    update_draft_quote,
    update_quote_status,
)
from app.tests.conftest import as_utc


def latest_count(db, reference: str) -> int:
    return db.query(Quote).filter(
        Quote.quote_reference == reference,
        Quote.is_latest_version.is_(True),
    ).count()


class TestCreateQuote:

    def test_first_version_is_latest_with_no_parent(self, make_quote):
        quote = make_quote()

        assert quote.version_number == 1
        assert quote.is_latest_version is True
        assert quote.parent_quote_id is None
        assert quote.quote_reference == "QR-0001"
        assert quote.quote_number == "QR-0001-v1"
        assert quote.status == QuoteStatus.DRAFT.value

    def test_references_are_sequential(self, make_quote):
        first = make_quote()
        second = make_quote()
        assert (first.quote_reference, second.quote_reference) == ("QR-0001", "QR-0002")

    def test_total_includes_vat_when_not_given(self, db, customer):
        quote = create_quote(
            db,
            customer_id=customer.id,
            title="Shelving",
            line_items=[
                {"description": "Shelf", "quantity": 3, "unit_price": 10},
                {"description": "Bracket", "quantity": 4, "unit_price": 2.5},
            ],
        )
        # (30 + 10) * 1.2
        assert quote.total_amount == 48.0
        assert calculate_quote_total([{"quantity": 1, "unit_price": 100}], vat_rate=0) == 100.0

    def test_contact_details_default_to_customer(self, make_quote, customer):
        quote = make_quote()
        assert quote.contact_email == customer.email
        assert quote.contact_person == customer.contact_person

    def test_material_code_links_known_material(self, db, customer, material):
        quote = create_quote(
            db,
            customer_id=customer.id,
            title="Oak desk",
            line_items=[{"description": "Desk top", "quantity": 1, "unit_price": 90, "material_code": "OAK-25"}],
        )
        assert quote.line_items[0].material_id == material.id

    def test_unknown_material_code_is_stored_unlinked(self, db, customer, caplog):
        quote = create_quote(
            db,
            customer_id=customer.id,
            title="Mystery",
            line_items=[{"description": "Thing", "quantity": 1, "unit_price": 5, "material_code": "NOPE"}],
        )
        assert quote.line_items[0].material_id is None
        assert "NOPE" in caplog.text

    @pytest.mark.parametrize("overrides, message", [
        ({"customer_id": None}, "Customer is required"),
        ({"title": "   "}, "Title is required"),
        ({"line_items": []}, "At least one line item is required"),
    ])
    def test_missing_required_input(self, make_quote, overrides, message):
        with pytest.raises(ValidationError, match=message):
            make_quote(**overrides)

    def test_unknown_customer(self, make_quote):
        with pytest.raises(NotFoundError):
            make_quote(customer_id=9999)


class TestQuoteVersions:

    def test_new_version_takes_latest_flag(self, db, make_quote, users):
        v1 = make_quote()
        v2 = create_quote_version(db, v1.id, change_reason="Customer asked for oak", actor_id=users["operator"].id)

        db.refresh(v1)
        assert v2.version_number == 2
        assert v2.quote_number == f"{v1.quote_reference}-v2"
        assert v2.parent_quote_id == v1.id
        assert v2.is_latest_version is True
        assert v1.is_latest_version is False
        assert latest_count(db, v1.quote_reference) == 1

    def test_versioning_older_row_still_uses_max_plus_one(self, db, make_quote):
        v1 = make_quote()
        create_quote_version(db, v1.id, change_reason="second")
        v3 = create_quote_version(db, v1.id, change_reason="branch from v1")

        assert v3.version_number == 3
        assert latest_count(db, v1.quote_reference) == 1

    def test_new_version_copies_line_items_and_total(self, db, make_quote):
        v1 = make_quote()
        v2 = create_quote_version(db, v1.id, change_reason="same items")

        assert [(i.description, i.quantity, i.unit_price) for i in v2.line_items] == [("Widget", 2, 10)]
        assert v2.total_amount == 20.0

    def test_new_line_items_recompute_total(self, db, make_quote):
        v1 = make_quote()
        v2 = create_quote_version(
            db, v1.id, change_reason="more widgets",
            line_items=[{"description": "Widget", "quantity": 5, "unit_price": 10}],
        )
        assert v2.total_amount == 60.0

    @pytest.mark.parametrize("status", [
        QuoteStatus.APPROVED, QuoteStatus.DECLINED, QuoteStatus.EXPIRED, QuoteStatus.CONVERTED,
    ])
    def test_closed_quotes_cannot_be_reversioned(self, db, make_quote, status):
        quote = make_quote(status=status)
        with pytest.raises(PreconditionError, match="Clone it instead"):
            create_quote_version(db, quote.id, change_reason="too late")
        assert latest_count(db, quote.quote_reference) == 1

    def test_new_version_cannot_claim_converted(self, db, make_quote):
        quote = make_quote(status=QuoteStatus.PENDING)

        with pytest.raises(PreconditionError, match="converting them to an order"):
            create_quote_version(db, quote.id, change_reason="skip ahead", status=QuoteStatus.CONVERTED)

        history = get_quote_history_by_reference(db, quote.quote_reference)
        assert [(q.version_number, q.status) for q in history] == [(1, "PENDING")]
        assert history[0].is_latest_version is True

    def test_history_is_ordered_oldest_first(self, db, make_quote):
        v1 = make_quote()
        create_quote_version(db, v1.id, change_reason="v2")
        create_quote_version(db, v1.id, change_reason="v3")

        history = get_quote_history_by_reference(db, v1.quote_reference)
        assert [q.version_number for q in history] == [1, 2, 3]
        assert [q.is_latest_version for q in history] == [False, False, True]

    def test_history_of_unknown_reference(self, db):
        with pytest.raises(NotFoundError):
            get_quote_history_by_reference(db, "QR-9999")

    def test_list_latest_only(self, db, make_quote):
        v1 = make_quote()
        create_quote_version(db, v1.id, change_reason="v2")

        assert [q.version_number for q in list_quotes(db)] == [2]
        assert len(list_quotes(db, latest_only=False)) == 2


class TestCloneQuote:

    def test_clone_is_independent_draft(self, db, make_quote, users):
        source = make_quote(status=QuoteStatus.APPROVED)
        clone = clone_quote(db, source.id, actor_id=users["operator"].id)

        assert clone.status == QuoteStatus.DRAFT.value
        assert clone.quote_reference != source.quote_reference
        assert clone.version_number == 1
        assert clone.is_latest_version is True
        assert clone.parent_quote_id is None
        assert clone.title == "Widget supply (Copy)"
        assert clone.total_amount == source.total_amount
        assert [(i.description, i.quantity) for i in clone.line_items] == [("Widget", 2)]
        assert clone.customer.name == "Harbour Joinery Ltd"

    def test_clone_never_touches_source_lineage(self, db, make_quote):
        source = make_quote()
        for _ in range(3):
            clone_quote(db, source.id, actor_id=None)

        db.refresh(source)
        assert source.is_latest_version is True
        assert latest_count(db, source.quote_reference) == 1
        # every clone is its own lineage with exactly one latest row
        for reference, in db.query(Quote.quote_reference).distinct():
            assert latest_count(db, reference) == 1

    def test_clone_valid_until_is_reset(self, db, make_quote):
        source = make_quote(valid_until=datetime.now(timezone.utc) - timedelta(days=3))
        clone = clone_quote(db, source.id, actor_id=None)
        assert as_utc(clone.valid_until) > datetime.now(timezone.utc) + timedelta(days=29)

    def test_clone_overrides(self, db, make_quote):
        other = Customer(name="Northgate", email="projects@northgate.example.com")
        db.add(other)
        db.commit()
        source = make_quote()

        clone = clone_quote(db, source.id, actor_id=None, customer_id=other.id, title="Northgate widgets",
                            total_amount=99.0)
        assert clone.customer_id == other.id
        assert clone.title == "Northgate widgets"
        assert clone.total_amount == 99.0

    def test_clone_adjustments_recompute_total(self, db, make_quote):
        source = make_quote()
        item_id = source.line_items[0].id

        clone = clone_quote(db, source.id, actor_id=None, adjustments={str(item_id): {"quantity": 3}})
        assert clone.line_items[0].quantity == 3
        # 3 * 10 * 1.2
        assert clone.total_amount == 36.0

    def test_clone_missing_source(self, db):
        with pytest.raises(NotFoundError):
            clone_quote(db, 4242, actor_id=None)

    def test_clone_to_missing_customer(self, db, make_quote):
        source = make_quote()
        with pytest.raises(NotFoundError):
            clone_quote(db, source.id, actor_id=None, customer_id=4242)


class TestQuoteStatus:

    def test_sent_stamps_sent_at(self, db, make_quote):
        quote = make_quote()
        quote, previous = update_quote_status(db, quote.id, QuoteStatus.SENT)
        assert previous == QuoteStatus.DRAFT.value
        assert quote.sent_at is not None

    def test_same_status_is_noop(self, db, make_quote):
        quote = make_quote(status=QuoteStatus.PENDING)
        quote, previous = update_quote_status(db, quote.id, QuoteStatus.PENDING)
        assert previous == quote.status == QuoteStatus.PENDING.value

    def test_converted_only_via_conversion(self, db, make_quote):
        quote = make_quote(status=QuoteStatus.APPROVED)
        with pytest.raises(PreconditionError):
            update_quote_status(db, quote.id, QuoteStatus.CONVERTED)

    @pytest.mark.parametrize("terminal", [QuoteStatus.DECLINED, QuoteStatus.EXPIRED])
    def test_terminal_statuses(self, db, make_quote, terminal):
        quote = make_quote(status=terminal)
        with pytest.raises(PreconditionError, match="Consider cloning"):
            update_quote_status(db, quote.id, QuoteStatus.APPROVED)

    def test_only_drafts_are_editable(self, db, make_quote):
        draft = make_quote()
        updated = update_draft_quote(
            db, draft.id, title="Renamed",
            line_items=[{"description": "Gadget", "quantity": 1, "unit_price": 50}],
        )
        assert updated.title == "Renamed"
        assert updated.total_amount == 60.0

        sent = make_quote(status=QuoteStatus.SENT)
        with pytest.raises(PreconditionError):
            update_draft_quote(db, sent.id, title="Nope")
