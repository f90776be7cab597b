"""
Database seeding script for demo data.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from sqlalchemy.orm import Session

from app.db.session import SessionLocal
from app.db.models import (
    User, UserRole, Customer, Supplier, Material, CompanySettings,
    Quote, QuoteLineItem, QuoteStatus, PaymentTerms
)
from app.core.config import settings
from app.core.security import get_password_hash
from app.core.logging import get_logger

logger = get_logger(__name__)


def seed_demo_data(db: Optional[Session] = None):
    """Seed users, customers, catalog and one approved quote. Skips if already seeded."""
    owns_session = db is None
    db = db or SessionLocal()

    try:
        if db.query(Customer).first():
            logger.info("Database already seeded. Skipping...")
            return

        logger.info("Seeding demo data...")

        if not db.query(User).filter(User.email == "admin@jobflow.example.com").first():
            db.add(User(
                email="admin@jobflow.example.com",
                hashed_password=get_password_hash("admin12345"),
                full_name="System Administrator",
                role=UserRole.OWNER.value,
                is_active=True,
            ))
        users_data = [
            ("operator@jobflow.example.com", "Workshop Operator", UserRole.OPERATOR),
            ("viewer@jobflow.example.com", "Office Viewer", UserRole.VIEWER),
        ]
        for email, name, role in users_data:
            db.add(User(
                email=email,
                hashed_password=get_password_hash("password12345"),
                full_name=name,
                role=role.value,
            ))

        if not db.query(CompanySettings).first():
            db.add(CompanySettings(
                quote_reference_prefix=settings.QUOTE_REFERENCE_PREFIX,
                last_quote_reference_seq=0,
            ))

        customers_data = [
            ("Harbour Joinery Ltd", "orders@harbourjoinery.co.uk", "Ellis Grant", PaymentTerms.THIRTY_DAYS),
            ("Northgate Developments", "projects@northgate.co.uk", "Sam Patel", PaymentTerms.SIXTY_DAYS),
            ("Willow Lane Interiors", "hello@willowlane.co.uk", "Robin Hale", PaymentTerms.FOURTEEN_DAYS),
        ]
        customers = []
        for name, email, contact, terms in customers_data:
            customer = Customer(name=name, email=email, contact_person=contact, payment_terms=terms.value)
            db.add(customer)
            customers.append(customer)

        supplier = Supplier(name="Timber Merchants UK", email="sales@timbermerchants.co.uk")
        db.add(supplier)
        db.flush()

        materials_data = [
            ("OAK-25", "Oak board 25mm", "m2", 48.50, 120),
            ("MDF-18", "MDF sheet 18mm", "sheet", 22.00, 300),
            ("HNG-SC", "Soft-close hinge", "unit", 3.75, 800),
        ]
        materials = {}
        for code, name, unit, price, stock in materials_data:
            material = Material(
                code=code, name=name, unit=unit, unit_price=price,
                current_stock=stock, min_stock=stock / 10, reorder_point=stock / 5,
                supplier_id=supplier.id,
            )
            db.add(material)
            materials[code] = material
        db.flush()

        quote = Quote(
            quote_reference="QR-DEMO",
            quote_number="QR-DEMO-v1",
            version_number=1,
            is_latest_version=True,
            title="Fitted kitchen units",
            status=QuoteStatus.APPROVED.value,
            customer_id=customers[0].id,
            contact_person=customers[0].contact_person,
            contact_email=customers[0].email,
            valid_until=datetime.now(timezone.utc) + timedelta(days=settings.QUOTE_VALIDITY_DAYS),
            total_amount=0.0,
        )
        quote.line_items = [
            QuoteLineItem(position=0, description="Oak worktop", quantity=6, unit_price=95.0,
                          material_id=materials["OAK-25"].id),
            QuoteLineItem(position=1, description="Carcass units", quantity=10, unit_price=120.0,
                          material_id=materials["MDF-18"].id),
        ]
        subtotal = sum(item.line_total for item in quote.line_items)
        quote.total_amount = round(subtotal * (1 + settings.DEFAULT_VAT_RATE / 100), 2)
        db.add(quote)

        db.commit()
        logger.info("Demo data seeded: login admin@jobflow.example.com / admin12345")

    except Exception:
        db.rollback()
        logger.exception("Error seeding database")
        raise
    finally:
        if owns_session:
            db.close()


if __name__ == "__main__":
    from app.db.session import init_db
    from app.core.logging import setup_logging

    setup_logging()
    init_db()
    seed_demo_data()
