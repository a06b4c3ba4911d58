"""
Subscription Billing State Machine

States: active, cancelled, expired, past_due (plus "free": no paid plan).

The only transition driven from here: a verified subscription payment
moves the user's subscription to `active` until the end of the current
calendar year, whatever the plan. Billing periods are calendar-year
aligned, not rolling from the purchase date.

DESIGN DECISION: The payment record is written BEFORE the live
subscription row and is never rolled back. If the subscription upsert
fails the history is kept and the error goes back to the caller; a retry
finds the payment and repairs the subscription if it still predates it.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

import structlog

from taxledger.audit import AuditLogger
from taxledger.config import AppSettings
from taxledger.errors import InvalidPlanError
from taxledger.models.audit import AuditEventBuilder
from taxledger.models.billing import (
    GatewayTransaction,
    PaymentPurpose,
    PaymentStatus,
    SettlementResult,
    Subscription,
    SubscriptionPayment,
    SubscriptionPlan,
    SubscriptionStatus,
)
from taxledger.models.ledger import InsertOutcome
from taxledger.services.storage import BillingStorageInterface, StorageError


logger = structlog.get_logger("taxledger.subscription")


class SubscriptionBilling:
    """Applies verified subscription payments to the live subscription."""

    def __init__(
        self,
        billing_storage: BillingStorageInterface,
        settings: AppSettings,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = billing_storage
        self._settings = settings
        self._audit_logger = audit_logger

    # =========================================================================
    # PURE HELPERS
    # =========================================================================

    def period_end_for(self, now: datetime) -> datetime:
        """December 31, 23:59:59.999 of `now`'s year, in the configured timezone."""
        tz = self._settings.tzinfo
        return datetime(now.astimezone(tz).year, 12, 31, 23, 59, 59, 999000, tzinfo=tz)

    def prorated_annual_price(self, now: datetime) -> int:
        """
        Annual price scaled by the share of the calendar year still ahead.

        Returns:
            Price in minor units, never below the configured minimum
        """
        tz = self._settings.tzinfo
        local = now.astimezone(tz)
        start_of_year = datetime(local.year, 1, 1, tzinfo=tz)
        start_of_next = datetime(local.year + 1, 1, 1, tzinfo=tz)

        remaining = Decimal(str((start_of_next - local).total_seconds()))
        total = Decimal(str((start_of_next - start_of_year).total_seconds()))
        prorated = (remaining / total * self._settings.annual_price_minor).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return max(int(prorated), self._settings.minimum_subscription_price_minor)

    def price_for(self, plan: SubscriptionPlan, now: datetime) -> int:
        """Checkout price of a plan, in minor units."""
        if plan == SubscriptionPlan.ANNUAL:
            return self.prorated_annual_price(now)
        if plan == SubscriptionPlan.MONTHLY:
            return self._settings.monthly_price_minor
        raise InvalidPlanError(plan.value)

    @staticmethod
    def status_for(
        subscription: Optional[Subscription],
        now: datetime,
    ) -> tuple[SubscriptionPlan, SubscriptionStatus]:
        """
        Effective (plan, status) for read views.

        No subscription reads as the free plan; an active subscription past
        its period end reads as expired.
        """
        if subscription is None:
            return SubscriptionPlan.FREE, SubscriptionStatus.ACTIVE
        if (
            subscription.status == SubscriptionStatus.ACTIVE
            and subscription.current_period_end is not None
            and subscription.current_period_end < now
        ):
            return subscription.plan, SubscriptionStatus.EXPIRED
        return subscription.plan, subscription.status

    @staticmethod
    def plan_from_metadata(transaction: GatewayTransaction) -> SubscriptionPlan:
        """Plan recorded on the checkout; older checkouts without one were monthly."""
        raw = transaction.metadata.get("plan") or SubscriptionPlan.MONTHLY.value
        try:
            plan = SubscriptionPlan(raw)
        except ValueError:
            raise InvalidPlanError(str(raw))
        if plan not in SubscriptionPlan.purchasable():
            raise InvalidPlanError(plan.value)
        return plan

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def activate(
        self,
        user_id: UUID,
        transaction: GatewayTransaction,
        now: datetime,
    ) -> SettlementResult:
        """
        Record the payment and activate the subscription.

        Returns:
            SettlementResult; `already_processed` if the reference was
            already recorded (a stale subscription is repaired first)

        Raises:
            InvalidPlanError: Metadata names a plan we don't sell
            StorageError: Payment recorded but the subscription upsert failed
        """
        plan = self.plan_from_metadata(transaction)
        period_end = self.period_end_for(now)

        outcome = await self._storage.append_payment(SubscriptionPayment(
            user_id=user_id,
            amount=transaction.amount,
            plan=plan,
            status=PaymentStatus.SUCCESS,
            gateway_reference=transaction.reference,
            billing_period_start=now,
            billing_period_end=period_end,
            created_at=now,
        ))
        if not outcome.inserted:
            return await self.settle_existing(user_id, outcome.record, transaction, now)

        await self._upsert_active(user_id, transaction, plan, now, period_end)
        return SettlementResult(
            reference=transaction.reference,
            purpose=PaymentPurpose.SUBSCRIPTION,
            amount=transaction.amount,
            plan=plan,
            period_end=period_end,
        )

    async def settle_existing(
        self,
        user_id: UUID,
        payment: Optional[SubscriptionPayment],
        transaction: GatewayTransaction,
        now: datetime,
    ) -> SettlementResult:
        """
        Handle a reference whose payment is already recorded.

        Nothing new is written unless the successful payment never made it
        into the live subscription, in which case the upsert is re-applied.
        """
        if payment is not None and payment.status == PaymentStatus.SUCCESS:
            current = await self._storage.get_subscription(user_id)
            if current is None or current.updated_at < payment.created_at:
                logger.warning(
                    "subscription_repair",
                    user_id=str(user_id),
                    reference=payment.gateway_reference,
                )
                await self._upsert_active(
                    user_id,
                    transaction,
                    payment.plan,
                    payment.billing_period_start or now,
                    payment.billing_period_end or self.period_end_for(now),
                )

        return SettlementResult(
            reference=transaction.reference,
            purpose=PaymentPurpose.SUBSCRIPTION,
            already_processed=True,
            plan=payment.plan if payment else None,
            period_end=payment.billing_period_end if payment else None,
        )

    async def record_failed(
        self,
        user_id: UUID,
        transaction: GatewayTransaction,
        now: datetime,
    ) -> InsertOutcome[SubscriptionPayment]:
        """Append a `failed` payment for a terminally failed checkout."""
        try:
            plan = self.plan_from_metadata(transaction)
        except InvalidPlanError:
            plan = SubscriptionPlan.MONTHLY

        return await self._storage.append_payment(SubscriptionPayment(
            user_id=user_id,
            amount=transaction.amount,
            plan=plan,
            status=PaymentStatus.FAILED,
            gateway_reference=transaction.reference,
            created_at=now,
        ))

    async def _upsert_active(
        self,
        user_id: UUID,
        transaction: GatewayTransaction,
        plan: SubscriptionPlan,
        period_start: datetime,
        period_end: datetime,
    ) -> Subscription:
        existing = await self._storage.get_subscription(user_id)
        subscription = Subscription(
            user_id=user_id,
            plan=plan,
            status=SubscriptionStatus.ACTIVE,
            gateway_subscription_code=transaction.subscription_code,
            gateway_customer_code=transaction.customer_code,
            amount=transaction.amount,
            current_period_start=period_start,
            current_period_end=period_end,
            cancelled_at=None,
            created_at=existing.created_at if existing else period_start,
            updated_at=period_start,
        )

        try:
            stored = await self._storage.upsert_subscription(subscription)
        except StorageError as e:
            logger.error("subscription_upsert_failed", user_id=str(user_id), error=str(e))
            if self._audit_logger:
                await self._audit_logger.log(AuditEventBuilder.subscription_upsert_failed(
                    user_id=user_id,
                    reference=transaction.reference,
                    error_message=str(e),
                ))
            raise

        logger.info(
            "subscription_activated",
            user_id=str(user_id),
            plan=plan.value,
            period_end=period_end.isoformat(),
        )
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.subscription_activated(
                subscription_id=stored.id,
                user_id=user_id,
                reference=transaction.reference,
                plan=plan.value,
                period_end=period_end.isoformat(),
            ))
        return stored
