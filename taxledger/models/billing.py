"""
Billing and Payment Gateway Models

Subscriptions, their append-only payment history, and typed views of
the payment gateway's responses.

CRITICAL: Gateway amounts arrive in minor units (kobo). They are
converted to major units by `GatewayTransaction.amount` the moment
they enter the engine.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from taxledger.models.ledger import utcnow
from taxledger.models.money import Money, to_major_units


# =============================================================================
# ENUMS
# =============================================================================

class SubscriptionPlan(str, Enum):
    """
    Subscription plans.

    FREE is the absence of an active paid plan; it can't be purchased.
    """
    FREE = "free"
    MONTHLY = "monthly"
    ANNUAL = "annual"

    @classmethod
    def purchasable(cls) -> set["SubscriptionPlan"]:
        return {cls.MONTHLY, cls.ANNUAL}


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"


class PaymentStatus(str, Enum):
    """Outcome recorded for a subscription settlement attempt."""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class PaymentPurpose(str, Enum):
    """What a gateway payment is for; mirrors metadata.type on the gateway."""
    DEPOSIT = "tax_savings_deposit"
    SUBSCRIPTION = "subscription"


# Gateway statuses after which the reference can never succeed
TERMINAL_FAILURE_STATUSES = {"failed", "abandoned", "reversed"}


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

class Subscription(BaseModel):
    """
    The live subscription state of a user (one row per user).

    Overwritten wholesale on each verified payment.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    plan: SubscriptionPlan = SubscriptionPlan.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    gateway_subscription_code: Optional[str] = None
    gateway_customer_code: Optional[str] = None
    amount: Money = Field(default=Decimal("0.00"), ge=0)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_pro(self, now: datetime) -> bool:
        """Paid plan, active, and the period has not run out."""
        if self.plan == SubscriptionPlan.FREE or self.status != SubscriptionStatus.ACTIVE:
            return False
        return self.current_period_end is None or self.current_period_end >= now


class SubscriptionPayment(BaseModel):
    """
    Append-only record of a subscription settlement outcome.

    `gateway_reference` is unique: it is the idempotency key of the
    subscription settlement path.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    amount: Money = Field(..., ge=0)
    plan: SubscriptionPlan
    status: PaymentStatus
    gateway_reference: str = Field(..., min_length=1, max_length=100)
    billing_period_start: Optional[datetime] = None
    billing_period_end: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# GATEWAY VIEWS
# =============================================================================

class CheckoutSession(BaseModel):
    """Result of initializing a payment: where to send the user."""

    authorization_url: str
    access_code: Optional[str] = None
    reference: str
    amount_minor: Optional[int] = Field(default=None, ge=0)

    @property
    def amount(self) -> Optional[Decimal]:
        return to_major_units(self.amount_minor) if self.amount_minor is not None else None


class GatewayTransaction(BaseModel):
    """
    The gateway's authoritative view of one transaction.

    Only the fields the ledger needs are kept; everything else in the
    gateway response is ignored.
    """
    model_config = ConfigDict(extra="ignore")

    reference: str
    status: str
    amount_minor: int = Field(..., ge=0)
    currency: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    customer_code: Optional[str] = None
    subscription_code: Optional[str] = None

    @property
    def amount(self) -> Decimal:
        return to_major_units(self.amount_minor)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def purpose(self) -> Optional[str]:
        return self.metadata.get("type")

    @property
    def metadata_user_id(self) -> Optional[str]:
        user_id = self.metadata.get("user_id")
        return str(user_id) if user_id is not None else None


class SettlementResult(BaseModel):
    """
    Outcome of `verify_and_settle`.

    `already_processed=True` means an earlier call (or a concurrent one)
    already applied this reference; nothing was written by this call.
    """

    reference: str
    purpose: PaymentPurpose
    already_processed: bool = False
    amount: Optional[Money] = None
    new_balance: Optional[Money] = None
    plan: Optional[SubscriptionPlan] = None
    period_end: Optional[datetime] = None

    def to_response(self) -> dict:
        """Shape returned to HTTP callers inside the success envelope."""
        data: dict[str, Any] = {"reference": self.reference}
        if self.already_processed:
            data["already_processed"] = True
        if self.amount is not None:
            data["amount"] = float(self.amount)
        if self.new_balance is not None:
            data["new_balance"] = float(self.new_balance)
        if self.plan is not None:
            data["plan"] = self.plan.value
        if self.period_end is not None:
            data["period_end"] = self.period_end.isoformat()
        return data
