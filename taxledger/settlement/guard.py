"""
Payment Settlement Guard

Turns a gateway reference into exactly one ledger effect, however many
times (and however concurrently) it is verified.

FLOW:
1. Ask the gateway for the authoritative status of the reference
2. Not success -> PaymentNotSuccessfulError (nothing written)
3. Reference already settled -> success with already_processed=True
4. Check the checkout belongs to the caller and matches the purpose
5. Write: deposit -> atomic balance credit + ledger entry,
   subscription -> payment history + live subscription

CRITICAL: Step 3 is only a fast path. Two concurrent verifies can both
pass it; the unique constraint on gateway_reference decides which one
writes, and the loser reports already_processed. Never "fix" this by
adding an in-process lock.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union

import structlog

from taxledger.audit import AuditLogger
from taxledger.config import Settings
from taxledger.errors import (
    AccountNotFoundError,
    BelowMinimumError,
    GatewayError,
    InvalidPlanError,
    PaymentNotSuccessfulError,
    ValidationError,
)
from taxledger.models.audit import AuditEventBuilder
from taxledger.models.billing import (
    TERMINAL_FAILURE_STATUSES,
    CheckoutSession,
    GatewayTransaction,
    PaymentPurpose,
    SettlementResult,
    SubscriptionPlan,
)
from taxledger.models.ledger import EntryType, NewLedgerEntry, utcnow
from taxledger.models.money import round_money, to_major_units, to_minor_units
from taxledger.services.gateway import PaymentGatewayInterface
from taxledger.services.identity import Principal
from taxledger.services.storage import BillingStorageInterface, LedgerStorageInterface
from taxledger.settlement.subscription import SubscriptionBilling


logger = structlog.get_logger("taxledger.settlement")

DEPOSIT_DESCRIPTION = "Deposit via Paystack"


def _epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _parse_amount(value: Union[Decimal, int, float, str, None]) -> Decimal:
    try:
        amount = round_money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount


class PaymentSettlementGuard:
    """
    Initializes checkouts and settles verified payments, idempotently.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        billing_storage: BillingStorageInterface,
        gateway: PaymentGatewayInterface,
        settings: Settings,
        subscription_billing: SubscriptionBilling,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._billing_storage = billing_storage
        self._gateway = gateway
        self._settings = settings
        self._subscriptions = subscription_billing
        self._audit_logger = audit_logger
        self._clock = clock

    async def _gateway_failed(self, principal: Principal, error: GatewayError) -> None:
        logger.warning("gateway_error", user_id=str(principal.user_id), error=str(error))
        if self._audit_logger:
            await self._audit_logger.log_external_service_error(
                service="paystack",
                error_message=str(error),
                actor_id=principal.user_id,
            )

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def initialize_deposit(
        self,
        principal: Principal,
        amount: Union[Decimal, int, float, str],
        callback_url: Optional[str] = None,
        email: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Start a deposit checkout.

        The minimum is enforced here, before the gateway is contacted.

        Raises:
            BelowMinimumError: Amount under the configured minimum
            ValidationError: Amount unparseable or no email available
            GatewayError: Gateway unreachable or rejected the checkout
        """
        user_id = principal.require_user()
        amount = _parse_amount(amount)
        minimum = self._settings.app.minimum_deposit
        if amount < minimum:
            raise BelowMinimumError(amount, minimum)

        email = email or principal.email
        if not email:
            raise ValidationError("An email address is required for checkout")

        account = await self._storage.get_or_create_account(user_id)
        reference = f"TAX_SAV_{str(user_id)[:8]}_{_epoch_millis(self._clock())}"

        try:
            session = await self._gateway.initialize_transaction(
                email=email,
                amount_minor=to_minor_units(amount),
                reference=reference,
                callback_url=callback_url,
                metadata={
                    "user_id": str(user_id),
                    "account_id": str(account.id),
                    "type": PaymentPurpose.DEPOSIT.value,
                },
                channels=self._settings.paystack.deposit_channels_list,
            )
        except GatewayError as e:
            await self._gateway_failed(principal, e)
            raise

        logger.info("deposit_initialized", user_id=str(user_id), reference=session.reference)
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.deposit_initialized(
                user_id=user_id,
                reference=session.reference,
                amount=str(amount),
            ))
        return session

    async def initialize_subscription(
        self,
        principal: Principal,
        plan: Union[SubscriptionPlan, str],
        callback_url: Optional[str] = None,
        email: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Start a subscription checkout.

        Annual is priced pro rata for the rest of the calendar year (with a
        floor); monthly is a flat price.

        Raises:
            InvalidPlanError: Plan is not monthly or annual
            GatewayError: Gateway unreachable or rejected the checkout
        """
        user_id = principal.require_user()
        try:
            plan = SubscriptionPlan(plan)
        except ValueError:
            raise InvalidPlanError(str(plan))
        if plan not in SubscriptionPlan.purchasable():
            raise InvalidPlanError(plan.value)

        email = email or principal.email
        if not email:
            raise ValidationError("An email address is required for checkout")

        now = self._clock()
        amount_minor = self._subscriptions.price_for(plan, now)
        reference = f"TAX_SUB_{str(user_id)[:8]}_{_epoch_millis(now)}"

        try:
            session = await self._gateway.initialize_transaction(
                email=email,
                amount_minor=amount_minor,
                reference=reference,
                callback_url=callback_url,
                metadata={
                    "user_id": str(user_id),
                    "type": PaymentPurpose.SUBSCRIPTION.value,
                    "plan": plan.value,
                    "year": now.astimezone(self._settings.app.tzinfo).year,
                    "prorated_amount": amount_minor,
                },
                channels=self._settings.paystack.subscription_channels_list,
            )
        except GatewayError as e:
            await self._gateway_failed(principal, e)
            raise

        logger.info(
            "subscription_checkout_initialized",
            user_id=str(user_id),
            plan=plan.value,
            reference=session.reference,
        )
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.subscription_checkout_initialized(
                user_id=user_id,
                reference=session.reference,
                plan=plan.value,
                amount=str(to_major_units(amount_minor)),
            ))
        return session

    # =========================================================================
    # SETTLEMENT
    # =========================================================================

    async def verify_and_settle(
        self,
        principal: Principal,
        reference: str,
        purpose: Union[PaymentPurpose, str],
    ) -> SettlementResult:
        """
        Verify a reference with the gateway and apply it exactly once.

        Returns:
            SettlementResult; `already_processed=True` when an earlier (or
            concurrent) call already applied this reference

        Raises:
            ValidationError: Missing reference, unknown purpose, or the
                checkout belongs to another user / purpose
            GatewayError: Gateway unreachable or timed out (retryable)
            PaymentNotSuccessfulError: Gateway status is not success
            AccountNotFoundError: Deposit for a user without an account
            StorageError: Write failed; retrying is safe
        """
        user_id = principal.require_user()
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("Reference is required")
        try:
            purpose = PaymentPurpose(purpose)
        except ValueError:
            raise ValidationError(f"Unknown payment purpose: {purpose}")

        try:
            transaction = await self._gateway.verify_transaction(reference)
        except GatewayError as e:
            await self._gateway_failed(principal, e)
            raise

        now = self._clock()

        if not transaction.succeeded:
            await self._reject_unsuccessful(principal, transaction, purpose, now)

        if await self._already_settled(transaction.reference):
            return await self._already_processed_result(principal, transaction, purpose, now)

        self._check_ownership(principal, transaction, purpose)

        if purpose == PaymentPurpose.DEPOSIT:
            return await self._settle_deposit(principal, transaction)
        return await self._settle_subscription(principal, transaction, now)

    async def _reject_unsuccessful(
        self,
        principal: Principal,
        transaction: GatewayTransaction,
        purpose: PaymentPurpose,
        now: datetime,
    ) -> None:
        logger.info(
            "payment_not_successful",
            reference=transaction.reference,
            status=transaction.status,
        )
        if self._audit_logger:
            await self._audit_logger.log_payment_not_successful(
                user_id=principal.user_id,
                reference=transaction.reference,
                status=transaction.status,
            )

        if (
            purpose == PaymentPurpose.SUBSCRIPTION
            and transaction.status in TERMINAL_FAILURE_STATUSES
            and transaction.purpose in (None, PaymentPurpose.SUBSCRIPTION.value)
            and transaction.metadata_user_id in (None, str(principal.user_id))
        ):
            await self._subscriptions.record_failed(principal.user_id, transaction, now)

        raise PaymentNotSuccessfulError(transaction.status, transaction.reference)

    async def _already_settled(self, reference: str) -> bool:
        if await self._storage.find_entry_by_gateway_reference(reference):
            return True
        return await self._billing_storage.find_payment_by_reference(reference) is not None

    async def _already_processed_result(
        self,
        principal: Principal,
        transaction: GatewayTransaction,
        purpose: PaymentPurpose,
        now: datetime,
    ) -> SettlementResult:
        if self._audit_logger:
            await self._audit_logger.log_payment_already_processed(
                user_id=principal.user_id,
                reference=transaction.reference,
                purpose=purpose.value,
            )

        if purpose == PaymentPurpose.SUBSCRIPTION:
            payment = await self._billing_storage.find_payment_by_reference(transaction.reference)
            if payment is not None and payment.user_id == principal.user_id:
                return await self._subscriptions.settle_existing(
                    principal.user_id, payment, transaction, now
                )

        return SettlementResult(
            reference=transaction.reference,
            purpose=purpose,
            already_processed=True,
        )

    @staticmethod
    def _check_ownership(
        principal: Principal,
        transaction: GatewayTransaction,
        purpose: PaymentPurpose,
    ) -> None:
        owner = transaction.metadata_user_id
        if owner is not None and owner != str(principal.user_id):
            raise ValidationError("Payment reference does not belong to this user")
        if transaction.purpose is not None and transaction.purpose != purpose.value:
            raise ValidationError(
                f"Payment reference is for {transaction.purpose}, not {purpose.value}"
            )

    async def _settle_deposit(
        self,
        principal: Principal,
        transaction: GatewayTransaction,
    ) -> SettlementResult:
        user_id = principal.user_id
        account = await self._storage.get_account_by_user(user_id)
        if account is None:
            raise AccountNotFoundError("No tax savings account found for this user")

        amount = transaction.amount
        if amount <= 0:
            raise ValidationError("Gateway reported a zero amount")

        outcome = await self._storage.apply_entry(
            account.id,
            NewLedgerEntry(
                type=EntryType.DEPOSIT,
                amount=amount,
                gateway_reference=transaction.reference,
                description=DEPOSIT_DESCRIPTION,
                metadata={
                    "channel": transaction.channel,
                    "paid_at": transaction.paid_at,
                },
            ),
        )

        if not outcome.inserted:
            # Lost the race to a concurrent verify of the same reference
            if self._audit_logger:
                await self._audit_logger.log_payment_already_processed(
                    user_id=user_id,
                    reference=transaction.reference,
                    purpose=PaymentPurpose.DEPOSIT.value,
                )
            return SettlementResult(
                reference=transaction.reference,
                purpose=PaymentPurpose.DEPOSIT,
                already_processed=True,
            )

        applied = outcome.record
        logger.info(
            "deposit_credited",
            account_id=str(account.id),
            reference=transaction.reference,
            amount=str(amount),
        )
        if self._audit_logger:
            await self._audit_logger.log_deposit_credited(
                account_id=account.id,
                user_id=user_id,
                reference=transaction.reference,
                amount=str(amount),
                balance_after=str(applied.entry.balance_after),
            )
        return SettlementResult(
            reference=transaction.reference,
            purpose=PaymentPurpose.DEPOSIT,
            amount=amount,
            new_balance=applied.account.balance,
        )

    async def _settle_subscription(
        self,
        principal: Principal,
        transaction: GatewayTransaction,
        now: datetime,
    ) -> SettlementResult:
        return await self._subscriptions.activate(principal.user_id, transaction, now)
