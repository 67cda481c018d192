"""
Shared fixtures for the Kivendi backend tests.

The app runs against an in-memory SQLite database (one shared connection).
External services are replaced with fakes: the KKiaPay gateway, S3 storage
and the FCM sender.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["KKIAPAY_SECRET"] = ""
os.environ["KKIAPAY_SANDBOX"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["FIREBASE_CREDENTIALS_FILE"] = "/nonexistent/firebase.json"

from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from kivendi.api.dependencies import get_gateway, get_push_service, get_storage
from kivendi.core.security import ROLE_ADMIN, issue_token
from kivendi.db.base import Base, utcnow
from kivendi.db.models import AD_VALIDATED, Ad, AdBoost, BoostOffer, Conversation, PAYMENT_COMPLETED, User
from kivendi.db.session import SessionLocal, engine
from kivendi.main import app
from kivendi.realtime.hub import chat_hub, inbox_hub
from kivendi.services.payment_gateway import GatewayError, VerifiedTransaction
from kivendi.services.push import InvalidTokenError, PushError, PushService


class FakeGateway:
    """KKiaPay stand-in. Responses are keyed by transaction id."""

    def __init__(self, sandbox: bool = False):
        self.sandbox = sandbox
        self.responses: Dict[str, Any] = {}
        self.verify_calls: List[str] = []
        self.refund_calls: List[str] = []
        self.refund_error: Exception | None = None

    def succeed(self, transaction_id: str, amount: Any = "5000", status: str = "SUCCESS"):
        self.responses[transaction_id] = VerifiedTransaction(
            transaction_id=transaction_id,
            amount=Decimal(str(amount)),
            status=status,
            state="RECEIVED" if status == "SUCCESS" else status,
            raw={"transactionId": transaction_id, "status": status, "amount": amount},
        )

    def fail(self, transaction_id: str, error: Exception | None = None):
        self.responses[transaction_id] = error or GatewayError("provider unreachable")

    async def verify_transaction(self, transaction_id: str) -> VerifiedTransaction:
        self.verify_calls.append(transaction_id)
        result = self.responses.get(transaction_id)
        if result is None:
            raise GatewayError(f"unknown transaction {transaction_id}")
        if isinstance(result, Exception):
            raise result
        return result

    async def refund(self, transaction_id: str) -> dict:
        self.refund_calls.append(transaction_id)
        if self.refund_error is not None:
            raise self.refund_error
        return {"transactionId": transaction_id, "status": "REFUNDED"}

    async def close(self):
        pass


class FakePushSender:
    """Records sends; tokens listed in ``invalid`` or ``broken`` fail."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.invalid: set = set()
        self.broken: set = set()

    async def send(self, token: str, title: str, body: str, data: Dict[str, str]) -> str:
        if token in self.invalid:
            raise InvalidTokenError("registration-token-not-registered")
        if token in self.broken:
            raise PushError("internal error")
        self.sent.append({"token": token, "title": title, "body": body, "data": data})
        return f"projects/kivendi/messages/{len(self.sent)}"


class FakeStorage:
    def __init__(self):
        self.uploads: List[tuple] = []
        self.error: Exception | None = None

    async def upload_chat_image(self, conversation_id: int, blob: str) -> str:
        if self.error is not None:
            raise self.error
        self.uploads.append((conversation_id, blob))
        return f"https://bucket.s3.eu-west-3.amazonaws.com/chat/{conversation_id}/{len(self.uploads)}.jpg"


class FakeWebSocket:
    """Minimal socket for hub tests: records writes, optionally fails them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: List[str] = []
        self.closed = False

    async def send_text(self, data: str):
        if self.fail:
            raise RuntimeError("socket is gone")
        self.messages.append(data)

    async def close(self, code: int = 1000):
        self.closed = True


@pytest.fixture(autouse=True)
def database():
    """Fresh schema for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_hubs():
    for hub in (chat_hub, inbox_hub):
        hub._connections.clear()
    yield
    for hub in (chat_hub, inbox_hub):
        hub._connections.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def push_service(push_sender):
    return PushService(push_sender)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def client(gateway, storage, push_service):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_push_service] = lambda: push_service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user_id: int, role: str = "user") -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user_id, role=role)}"}


def admin_headers(user_id: int = 999) -> Dict[str, str]:
    return auth_headers(user_id, role=ROLE_ADMIN)


def make_user(db, email: str = "seller@kivendi.test", **kwargs) -> User:
    now = utcnow()
    user = User(email=email, created_at=now, updated_at=now, **kwargs)
    db.add(user)
    db.commit()
    return user


def make_ad(db, user: User, status: str = AD_VALIDATED, title: str = "Vélo de ville", **kwargs) -> Ad:
    now = utcnow()
    ad = Ad(
        user_id=user.id,
        title=title,
        price=Decimal("45000"),
        status=status,
        images=["https://cdn.kivendi.test/velo.jpg"],
        created_at=now,
        updated_at=now,
        **kwargs,
    )
    db.add(ad)
    db.commit()
    return ad


def make_offer(db, duration_days: int = 7, price: str = "5000", name: str = "Boost Premium", **kwargs) -> BoostOffer:
    now = utcnow()
    offer = BoostOffer(
        name=name,
        duration_days=duration_days,
        price=Decimal(price),
        position_priority=kwargs.pop("position_priority", 10),
        features={"badge": True},
        created_at=now,
        updated_at=now,
        **kwargs,
    )
    db.add(offer)
    db.commit()
    return offer


def make_boost(
    db,
    ad: Ad,
    offer: BoostOffer,
    transaction_id: str,
    start=None,
    end=None,
    is_active: bool = True,
    payment_status: str = PAYMENT_COMPLETED,
) -> AdBoost:
    start = start or utcnow()
    end = end or start + timedelta(days=offer.duration_days)
    boost = AdBoost(
        ad_id=ad.id,
        boost_offer_id=offer.id,
        user_id=ad.user_id,
        start_date=start,
        end_date=end,
        is_active=is_active,
        payment_status=payment_status,
        payment_method="kkiapay",
        transaction_id=transaction_id,
        amount_paid=offer.price,
        created_at=start,
        updated_at=start,
    )
    db.add(boost)
    db.commit()
    return boost


def make_conversation(db, ad: Ad, buyer: User) -> Conversation:
    now = utcnow()
    conv = Conversation(ad_id=ad.id, seller_id=ad.user_id, buyer_id=buyer.id, created_at=now, updated_at=now)
    db.add(conv)
    db.commit()
    return conv
