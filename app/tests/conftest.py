"""
Shared fixtures: a throwaway SQLite database per test, users with tokens, and an
API client wired to both.
"""
import os

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-jobflow-suite-0123456789abcdef")
os.environ.setdefault("DATABASE_URL", "sqlite:///./jobflow_test_bootstrap.db")

from datetime import timezone  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.api.deps import get_audit_sink  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.db import models  # noqa: E402,F401
from app.db.models import Customer, Material, QuoteStatus, User, UserRole  # noqa: E402
from app.db.session import Base, build_engine, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.services.audit_trail import DatabaseAuditSink  # noqa: E402
from app.services.quotes import create_quote  # noqa: E402


def as_utc(value):
    """SQLite hands datetimes back naive; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============= DATABASE =============

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'jobflow.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============= DOMAIN DATA =============

@pytest.fixture
def users(db):
    """One user per role that the routes distinguish."""
    created = {}
    for role in (UserRole.ADMIN, UserRole.OPERATOR, UserRole.VIEWER):
        user = User(
            email=f"{role.value}@jobflow.example.com",
            hashed_password="not-a-real-hash",
            full_name=f"{role.value.title()} User",
            role=role.value,
        )
        db.add(user)
        created[role.value] = user
    db.commit()
    return created


def auth_headers(user: User) -> dict:
    token = create_access_token({"sub": str(user.id), "email": user.email, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def operator_headers(users):
    return auth_headers(users["operator"])


@pytest.fixture
def admin_headers(users):
    return auth_headers(users["admin"])


@pytest.fixture
def viewer_headers(users):
    return auth_headers(users["viewer"])


@pytest.fixture
def customer(db):
    customer = Customer(
        name="Harbour Joinery Ltd",
        email="orders@harbourjoinery.example.com",
        contact_person="Ellis Grant",
        phone="01234 567890",
        payment_terms="FOURTEEN_DAYS",
    )
    db.add(customer)
    db.commit()
    return customer


@pytest.fixture
def material(db):
    material = Material(code="OAK-25", name="Oak board 25mm", unit="m2", unit_price=48.5, current_stock=100)
    db.add(material)
    db.commit()
    return material


@pytest.fixture
def make_quote(db, customer, users):
    """Factory for a quote in a given status (one 'Widget' line: 2 x 10.00, total 20.00)."""

    def factory(status: QuoteStatus = QuoteStatus.DRAFT, **overrides):
        fields = dict(
            customer_id=customer.id,
            title="Widget supply",
            line_items=[{"description": "Widget", "quantity": 2, "unit_price": 10}],
            total_amount=20.0,
            created_by_id=users["operator"].id,
            status=status,
        )
        fields.update(overrides)
        return create_quote(db, **fields)

    return factory


# ============= API CLIENT =============

@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_audit_sink] = lambda: DatabaseAuditSink(session_factory)
    # Unhandled errors must surface as 500 responses, not test exceptions
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
