import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./quotebid-test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SCHEDULER_LOCK_ENABLED", "false")
os.environ.setdefault("SYNC_PLACEMENTS_ON_STARTUP", "false")
os.environ.setdefault("EMAIL_PROVIDER", "console")

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import quotebid.models  # noqa: F401  registers tables
from quotebid.core.clock import utcnow
from quotebid.core.exceptions import PaymentError
from quotebid.db.base import Base
from quotebid.middleware.auth import TokenManager
from quotebid.models import PitchStatus
from quotebid.services import build_services
from quotebid.services.email import TEMPLATES, SendResult
from quotebid.services.payments import ChargeResult


class MutableClock:
    """Injectable clock; starts at real UTC so it lines up with row timestamps."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class SentEmail:
    to: str
    template: str
    variables: Dict[str, Any]


class RecordingEmailClient:
    provider = "recording"

    def __init__(self):
        self.sent: List[SentEmail] = []
        self.failed: List[SentEmail] = []
        self.fail_for: Set[str] = set()
        self.raise_for: Set[str] = set()
        self.fail_all = False

    async def send(self, to: str, template: str, variables: Dict[str, Any]) -> SendResult:
        email = SentEmail(to=to, template=template, variables=dict(variables))
        if template not in TEMPLATES:
            self.failed.append(email)
            return SendResult(success=False, error=f"Unknown email template: {template}")
        if to in self.raise_for:
            raise RuntimeError(f"connection reset sending to {to}")
        if self.fail_all or to in self.fail_for:
            self.failed.append(email)
            return SendResult(success=False, error="provider rejected message")
        self.sent.append(email)
        return SendResult(success=True, id=f"msg_{len(self.sent)}")

    def to(self, address: str) -> List[SentEmail]:
        return [email for email in self.sent if email.to == address]


@dataclass
class ChargeCall:
    customer_id: str
    amount: Decimal
    idempotency_key: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class FakePaymentGateway:
    def __init__(self):
        self.customers: List[int] = []
        self.charges: List[ChargeCall] = []
        self.captures: List[Dict[str, str]] = []
        self.intents: Dict[str, str] = {}
        self.decline_message: Optional[str] = None
        self.idempotency_keys: List[str] = []
        self._replays: Dict[str, ChargeResult] = {}

    async def create_customer(self, user) -> str:
        self.customers.append(user.id)
        return f"cus_{user.id}"

    async def charge(
        self,
        customer_id: str,
        amount: Decimal,
        *,
        payment_method_id: Optional[str] = None,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> ChargeResult:
        self.idempotency_keys.append(idempotency_key)
        # the processor answers a repeated key with the original result
        if idempotency_key in self._replays:
            return self._replays[idempotency_key]
        if self.decline_message:
            raise PaymentError(message=self.decline_message)
        self.charges.append(
            ChargeCall(customer_id, Decimal(str(amount)), idempotency_key, dict(metadata or {}))
        )
        number = len(self.charges)
        result = ChargeResult(
            payment_id=f"ch_{number}",
            payment_intent_id=f"pi_direct_{number}",
            invoice_id=None,
            status="succeeded",
        )
        self._replays[idempotency_key] = result
        return result

    async def retrieve_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        if payment_intent_id not in self.intents:
            raise PaymentError(message=f"No such payment_intent: '{payment_intent_id}'")
        return {"id": payment_intent_id, "status": self.intents[payment_intent_id]}

    async def capture_intent(self, payment_intent_id: str, *, idempotency_key: str) -> ChargeResult:
        if self.decline_message:
            raise PaymentError(message=self.decline_message)
        self.captures.append({"payment_intent_id": payment_intent_id, "idempotency_key": idempotency_key})
        self.intents[payment_intent_id] = "succeeded"
        return ChargeResult(
            payment_id=f"ch_captured_{len(self.captures)}",
            payment_intent_id=payment_intent_id,
            invoice_id=None,
            status="succeeded",
        )


class Factory:
    """Row builders with sensible defaults."""

    def __init__(self, storage):
        self.storage = storage
        self._users = 0

    async def publication(self, **fields):
        fields.setdefault("name", "The Wall Street Journal")
        return await self.storage.create_publication(**fields)

    async def user(self, **fields):
        self._users += 1
        fields.setdefault("username", f"expert{self._users}")
        fields.setdefault("full_name", f"Expert Number{self._users}")
        fields.setdefault("email", f"expert{self._users}@example.com")
        fields.setdefault("industry", "Finance")
        fields.setdefault("stripe_payment_method_id", "pm_card_visa")
        return await self.storage.create_user(**fields)

    async def opportunity(self, **fields):
        if "publication_id" not in fields:
            fields["publication_id"] = (await self.publication()).id
        fields.setdefault("title", "Rate cuts and small business lending")
        fields.setdefault("request_type", "Expert Commentary")
        fields.setdefault("industry", "Finance")
        fields.setdefault("minimum_bid", Decimal("300.00"))
        return await self.storage.create_opportunity(**fields)

    async def pitch(self, **fields):
        fields.setdefault("content", "I advised three regional banks on this exact question.")
        fields.setdefault("status", PitchStatus.PENDING)
        return await self.storage.create_pitch(**fields)


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'quotebid.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def email_client() -> RecordingEmailClient:
    return RecordingEmailClient()


@pytest.fixture
def payments() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest_asyncio.fixture
async def services(session_factory, email_client, payments, clock):
    return build_services(session_factory, email_client=email_client, payments=payments, clock=clock)


@pytest.fixture
def storage(services):
    return services.storage


@pytest.fixture
def factory(storage) -> Factory:
    return Factory(storage)


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {TokenManager.create_access_token(1, role='admin')}"}


def auth_headers(user_id: int) -> Dict[str, str]:
    return {"Authorization": f"Bearer {TokenManager.create_access_token(user_id)}"}


@pytest.fixture
def user_headers():
    return auth_headers
