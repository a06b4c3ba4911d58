"""
Shared fixtures.

Every test gets a fresh in-memory sqlite ledger. The payment gateway and
the identity provider are replaced by in-process fakes implementing the
same interfaces, so no test makes a network call.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest

from taxledger.audit import AuditLogger
from taxledger.config import (
    AppSettings,
    AuthSettings,
    DatabaseSettings,
    GoogleSheetsSettings,
    PaystackSettings,
    Settings,
)
from taxledger.errors import GatewayError, UnauthorizedError
from taxledger.models.audit import AuditEvent
from taxledger.models.billing import CheckoutSession, GatewayTransaction
from taxledger.services.gateway import PaymentGatewayInterface
from taxledger.services.identity import IdentityProviderInterface, Principal
from taxledger.services.storage import (
    AuditStorageInterface,
    SqlBillingStorage,
    SqlDatabase,
    SqlLedgerStorage,
    SqlRecurringStorage,
)
from taxledger.settlement import PaymentSettlementGuard, SubscriptionBilling


SERVICE_KEY = "test-service-key"


class FixedClock:
    """Callable clock whose time tests can move."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeGateway(PaymentGatewayInterface):
    """Records checkouts and answers verifies from a dict of transactions."""

    def __init__(self):
        self.transactions: dict[str, GatewayTransaction] = {}
        self.initialized: list[dict[str, Any]] = []
        self.verify_calls: list[str] = []
        self.error: Optional[GatewayError] = None

    def add(
        self,
        reference: str,
        amount_minor: int,
        metadata: dict[str, Any],
        status: str = "success",
        **fields,
    ) -> GatewayTransaction:
        transaction = GatewayTransaction(
            reference=reference,
            status=status,
            amount_minor=amount_minor,
            currency="NGN",
            channel="card",
            paid_at="2025-03-01T10:00:00.000Z",
            metadata=metadata,
            **fields,
        )
        self.transactions[reference] = transaction
        return transaction

    async def initialize_transaction(
        self,
        *,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        channels: Optional[list[str]] = None,
    ) -> CheckoutSession:
        if self.error:
            raise self.error
        self.initialized.append({
            "email": email,
            "amount_minor": amount_minor,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata or {},
            "channels": channels,
        })
        return CheckoutSession(
            authorization_url=f"https://checkout.example/{reference}",
            access_code=f"access_{reference}",
            reference=reference,
            amount_minor=amount_minor,
        )

    async def verify_transaction(self, reference: str) -> GatewayTransaction:
        self.verify_calls.append(reference)
        if self.error:
            raise self.error
        if reference not in self.transactions:
            raise GatewayError(f"Transaction reference not found: {reference}")
        return self.transactions[reference]


class FakeIdentity(IdentityProviderInterface):
    """Maps bearer tokens to principals."""

    def __init__(self):
        self.tokens: dict[str, Principal] = {SERVICE_KEY: Principal.service()}

    def add_user(self, token: str, user_id: UUID, email: str = "saver@example.com") -> Principal:
        principal = Principal(user_id=user_id, email=email)
        self.tokens[token] = principal
        return principal

    async def resolve(self, token: str) -> Principal:
        if token not in self.tokens:
            raise UnauthorizedError("Unauthorized")
        return self.tokens[token]


class MemoryAuditStorage(AuditStorageInterface):
    """Keeps audit events in a list."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        app=AppSettings(
            minimum_deposit=Decimal("1000"),
            annual_interest_rate=Decimal("0.10"),
            timezone="Africa/Lagos",
        ),
        paystack=PaystackSettings(secret_key="sk_test_secret"),
        database=DatabaseSettings(url="sqlite://", create_schema=True),
        auth=AuthSettings(service_key=SERVICE_KEY),
        google_sheets=GoogleSheetsSettings(credentials_path=None, spreadsheet_id=None),
    )


@pytest.fixture
def database(settings):
    db = SqlDatabase(settings.database)
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def ledger_storage(database) -> SqlLedgerStorage:
    return SqlLedgerStorage(database)


@pytest.fixture
def recurring_storage(database) -> SqlRecurringStorage:
    return SqlRecurringStorage(database)


@pytest.fixture
def billing_storage(database) -> SqlBillingStorage:
    return SqlBillingStorage(database)


@pytest.fixture
def audit_storage() -> MemoryAuditStorage:
    return MemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def service_token() -> str:
    return SERVICE_KEY


@pytest.fixture
def clock() -> FixedClock:
    # 2025-03-01 09:00 UTC (10:00 in Lagos)
    return FixedClock(datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def user(user_id) -> Principal:
    return Principal(user_id=user_id, email="saver@example.com")


@pytest.fixture
def subscriptions(billing_storage, settings, audit_logger):
    return SubscriptionBilling(billing_storage, settings.app, audit_logger=audit_logger)


@pytest.fixture
def guard(ledger_storage, billing_storage, gateway, settings, subscriptions, audit_logger, clock):
    return PaymentSettlementGuard(
        ledger_storage,
        billing_storage,
        gateway,
        settings,
        subscriptions,
        audit_logger=audit_logger,
        clock=clock,
    )
