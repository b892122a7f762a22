# tests/conftest.py
"""
Pytest configuration and shared fixtures for the settlement tests.

Every test gets its own SQLite file database, an in-memory cache, a fake
payment gateway and a recording notifier.

Run:
    pytest tests -v
"""
import json
import time
import hashlib
import hmac
import uuid
from decimal import Decimal

import httpx
import pytest

from app.api.v1.payments.paymongo_client import PayMongoClient
from app.core.cache import RedisCache
from app.core.circuit_breaker import CircuitBreaker
from app.core.database import build_engine, build_session_factory, get_db
from app.core.exceptions import ExternalServiceError
from app.models import Base, WalletOwnerType, ReferenceType
from app.services.ledger_service import LedgerService
from app.utils.dependencies import get_cache

WEBHOOK_SECRET = "whsk_test_secret"


# =============================================================================
# FAKES
# =============================================================================

class FakeGateway:
    """In-process stand-in for the PayMongo client."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        self.webhook_secret = webhook_secret
        self.live_mode = False
        self.intents = {}
        self.refunds = []
        self.calls = []
        self.fail_on = set()

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail_on:
            raise ExternalServiceError("Payment gateway is unreachable")

    def _intent(self, intent_id):
        state = self.intents[intent_id]
        return {
            "data": {
                "id": intent_id,
                "attributes": {
                    "status": state["status"],
                    "amount": state["amount"],
                    "client_key": f"{intent_id}_client",
                    "payments": state["payments"],
                    "next_action": state.get("next_action"),
                    "last_payment_error": state.get("error"),
                },
            }
        }

    async def create_payment_intent(self, amount, description, metadata=None, allowed_methods=None,
                                    idempotency_key=None):
        self._call("create_payment_intent")
        intent_id = f"pi_{uuid.uuid4().hex[:20]}"
        self.intents[intent_id] = {
            "status": "awaiting_payment_method",
            "amount": amount,
            "payments": [],
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        return self._intent(intent_id)

    async def create_payment_method(self, method_type, details=None, billing=None):
        self._call("create_payment_method")
        return {"data": {"id": f"pm_{uuid.uuid4().hex[:20]}", "attributes": {"type": method_type}}}

    async def attach_payment_method(self, payment_intent_id, payment_method_id, return_url=None):
        self._call("attach_payment_method")
        state = self.intents[payment_intent_id]
        state["status"] = "awaiting_next_action"
        state["next_action"] = {
            "type": "consume_qr",
            "code": {"image_url": f"https://qr.example.test/{payment_intent_id}.png"},
        }
        return self._intent(payment_intent_id)

    async def retrieve_payment_intent(self, payment_intent_id):
        self._call("retrieve_payment_intent")
        return self._intent(payment_intent_id)

    async def create_refund(self, payment_id, amount, reason="requested_by_customer", metadata=None, notes=None):
        self._call("create_refund")
        self.refunds.append({"payment_id": payment_id, "amount": amount, "reason": reason})
        return {"data": {"id": f"ref_{uuid.uuid4().hex[:20]}", "attributes": {"amount": amount, "status": "pending"}}}

    def verify_webhook_signature(self, raw_body, signature_header):
        return PayMongoClient.verify_webhook_signature(self, raw_body, signature_header)

    async def aclose(self):
        pass

    # -- test helpers --------------------------------------------------------

    def mark_paid(self, intent_id):
        state = self.intents[intent_id]
        state["status"] = "succeeded"
        state["payments"] = [{"id": f"pay_{intent_id[3:]}", "attributes": {"amount": state["amount"]}}]
        return state["payments"][0]["id"]

    def mark_failed(self, intent_id, message="Card declined"):
        state = self.intents[intent_id]
        state["status"] = "failed"
        state["error"] = {"message": message}

    def sign(self, raw_body: bytes) -> str:
        timestamp = str(int(time.time()))
        digest = hmac.new(
            self.webhook_secret.encode("utf-8"),
            timestamp.encode("utf-8") + b"." + raw_body,
            hashlib.sha256,
        ).hexdigest()
        return f"t={timestamp},te={digest},li="


class RecordingNotifier:
    """Collects admin alerts instead of sending email."""

    def __init__(self):
        self.alerts = []

    async def notify_admin(self, subject, text):
        self.alerts.append((subject, text))
        return True


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def webhook_body(event_type, intent_id, charge_id=None, error=None):
    """Serialized PayMongo event envelope."""
    attributes = {"payment_intent_id": intent_id, "status": "paid"}
    if error:
        attributes["last_payment_error"] = {"message": error}
    payload = {
        "data": {
            "id": f"evt_{uuid.uuid4().hex[:20]}",
            "type": "event",
            "attributes": {
                "type": event_type,
                "data": {"id": charge_id or f"pay_{uuid.uuid4().hex[:20]}", "type": "payment",
                         "attributes": attributes},
            },
        }
    }
    return json.dumps(payload).encode("utf-8")


def checkout_snapshot(vendor_ids, price="150.00", quantity=2, **extra):
    """Pay-first cart snapshot with one line per vendor."""
    data = {
        "items": [
            {
                "vendor_id": str(vendor_id),
                "product_id": f"prod-{index}",
                "option_id": None,
                "name": f"Product {index}",
                "price": price,
                "quantity": quantity,
            }
            for index, vendor_id in enumerate(vendor_ids)
        ],
        "shipping_address": {"street": "1 Rizal Ave", "city": "Manila"},
        "customer_name": "Juan Dela Cruz",
        "phone": "09171234567",
        "shipping_fee": "50.00",
    }
    data.update(extra)
    return data


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite file database per test."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    """Primary session for a test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def other_db(session_factory):
    """Second, independent session for concurrency tests."""
    async with session_factory() as session:
        yield session


# =============================================================================
# COLLABORATOR FIXTURES
# =============================================================================

@pytest.fixture
def cache():
    """Cache that never connected, so it runs on the in-memory fallback."""
    return RedisCache(url="redis://unused")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("commission", threshold=3, reset_timeout=60, clock=clock)


# =============================================================================
# IDENTITY FIXTURES
# =============================================================================

@pytest.fixture
def vendor_id():
    return uuid.uuid4()


@pytest.fixture
def buyer_id():
    return uuid.uuid4()


@pytest.fixture
def admin_id():
    return uuid.uuid4()


# =============================================================================
# HELPER FIXTURES
# =============================================================================

@pytest.fixture
def fund_wallet(db):
    """Credit a vendor wallet and commit."""

    async def _fund(owner_id, amount, owner_type=WalletOwnerType.VENDOR):
        ledger = LedgerService(db)
        await ledger.credit(
            owner_id,
            Decimal(str(amount)),
            reference=f"SEED-{uuid.uuid4().hex[:8]}",
            reference_type=ReferenceType.ADJUSTMENT,
            owner_type=owner_type,
        )
        await db.commit()

    return _fund


@pytest.fixture
def wallet_balance(db):
    """Current stored balance of a vendor wallet."""

    async def _balance(owner_id, owner_type=WalletOwnerType.VENDOR):
        wallet = await LedgerService(db).get_wallet(owner_id, owner_type)
        await db.commit()
        return wallet.balance if wallet else Decimal("0.00")

    return _balance


# =============================================================================
# HTTP FIXTURES
# =============================================================================

@pytest.fixture
async def client(session_factory, cache, gateway, breaker, notifier):
    """ASGI client against the real app with test collaborators on app.state."""
    from app.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_cache] = lambda: cache
    app.state.gateway = gateway
    app.state.commission_breaker = breaker
    app.state.notifier = notifier

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()
