# tests/conftest.py
from decimal import Decimal
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database import build_session_factory, get_session_context
from main import create_app
from models import Base
from models.invoice import InvoiceItemType
from schemas.invoice import InvoiceItemCreate
from services.invoice_service import InvoiceService
from services.mpesa_gateway import MpesaGateway
from services.notifier import CompletionNotifier
from services.reconciliation_service import ReconciliationService

JWT_SECRET = "test-secret"


@pytest.fixture
def engine():
     engine = create_engine(
          "sqlite://",
          connect_args={"check_same_thread": False},
          poolclass=StaticPool,
     )
     Base.metadata.create_all(engine)
     yield engine
     engine.dispose()


@pytest.fixture
def session_factory(engine):
     return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
     session = session_factory()
     yield session
     session.close()


@pytest.fixture
def settings():
     return Settings(
          database_url="sqlite://",
          jwt_secret=JWT_SECRET,
          mpesa_shortcode="174379",
          mpesa_passkey="passkey",
          mpesa_callback_url="https://billing.example.com/api/mpesa",
          stk_wait_seconds=5,
          manual_wait_seconds=5,
          vat_rate=Decimal("0.16"),
          business_name="Test Hospital",
     )


@pytest.fixture
def notifier():
     return CompletionNotifier()


@pytest.fixture
def reconciliation(notifier):
     return ReconciliationService(notifier)


@pytest.fixture
def gateway():
     return Mock(spec=MpesaGateway)


@pytest.fixture
def app(settings, session_factory, gateway):
     return create_app(settings, session_factory=session_factory, gateway=gateway)


@pytest.fixture
def client(app):
     with TestClient(app) as client:
          yield client


@pytest.fixture
def auth_headers():
     def make(role: str = "admin", user_id: str = "staff-1") -> dict:
          token = jwt.encode({"id": user_id, "role": role}, JWT_SECRET, algorithm="HS256")
          return {"Authorization": f"Bearer {token}"}
     return make


@pytest.fixture
def make_invoice(session_factory):
     """Committed single-line invoice without VAT, so the total equals ``amount``."""
     def make(amount="1000.00", invoice_number=None, draft=False, patient_id="PAT-0001"):
          with get_session_context(session_factory) as session:
               return InvoiceService.create_invoice(
                    session,
                    patient_id=patient_id,
                    items=[InvoiceItemCreate(
                         item_type=InvoiceItemType.CONSULTATION,
                         description="General consultation",
                         unit_price=Decimal(amount),
                    )],
                    created_by="staff-1",
                    draft=draft,
                    vat_rate=Decimal("0"),
                    invoice_number=invoice_number,
               )
     return make
