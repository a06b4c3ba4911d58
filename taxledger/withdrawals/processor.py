"""
Withdrawal Processor

Users ask for money out of their tax-savings account; an admin approves
or rejects each request.

pending -> completed   (approve: balance debited, ledger entry written)
pending -> cancelled   (reject: nothing moves)

DESIGN DECISION: Approval claims the request (pending -> completed) and
writes the debit, keyed by `WDR_<request id>`, in one storage transaction.
A reject that lands first leaves approve nothing to claim, and a failed
debit leaves the request pending. No balance moves without a completed
request to explain it.
"""

from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Union
from uuid import UUID

import structlog

from taxledger.audit import AuditLogger
from taxledger.errors import (
    AccountNotFoundError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
    validated,
)
from taxledger.models.audit import AuditEventBuilder
from taxledger.models.ledger import (
    EntryType,
    NewLedgerEntry,
    WithdrawalRequest,
    WithdrawalRequestCreate,
    WithdrawalStatus,
    WithdrawalType,
    utcnow,
)
from taxledger.services.identity import Principal
from taxledger.services.storage import LedgerStorageInterface


logger = structlog.get_logger("taxledger.withdrawals")

ADMIN_ROLE = "admin"
DEFAULT_REJECTION_NOTE = "Rejected by admin"

WITHDRAWAL_DESCRIPTIONS = {
    WithdrawalType.BANK_TRANSFER: "Withdrawal - Bank Transfer",
    WithdrawalType.TAX_PAYMENT: "Withdrawal - Tax Payment",
}


class WithdrawalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


def withdrawal_reference(withdrawal_id: UUID) -> str:
    """Idempotency key of the ledger entry an approval writes."""
    return f"WDR_{withdrawal_id}"


class WithdrawalProcessor:
    """Creates withdrawal requests and settles admin decisions on them."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._clock = clock

    async def request_withdrawal(
        self,
        principal: Principal,
        request: Union[WithdrawalRequestCreate, dict],
    ) -> WithdrawalRequest:
        """
        File a pending withdrawal request.

        Raises:
            ValidationError: Bad amount or missing bank details
            AccountNotFoundError: User has no savings account
            InsufficientFundsError: Amount exceeds the current balance
        """
        user_id = principal.require_user()
        request = validated(WithdrawalRequestCreate, request)

        account = await self._storage.get_account_by_user(user_id)
        if account is None:
            raise AccountNotFoundError("No tax savings account found for this user")
        if request.amount > account.balance:
            raise InsufficientFundsError(
                f"Insufficient balance: {account.balance} available"
            )

        now = self._clock()
        stored = await self._storage.create_withdrawal_request(WithdrawalRequest(
            user_id=user_id,
            account_id=account.id,
            amount=request.amount,
            withdrawal_type=request.withdrawal_type,
            bank_name=request.bank_name,
            account_number=request.account_number,
            account_name=request.account_name,
            created_at=now,
            updated_at=now,
        ))

        logger.info("withdrawal_requested", withdrawal_id=str(stored.id), amount=str(stored.amount))
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.withdrawal_requested(
                withdrawal_id=stored.id,
                user_id=user_id,
                amount=str(stored.amount),
            ))
        return stored

    async def process_withdrawal(
        self,
        principal: Principal,
        withdrawal_id: UUID,
        action: Union[WithdrawalAction, str],
        notes: Optional[str] = None,
    ) -> WithdrawalRequest:
        """
        Approve or reject a pending request.

        Raises:
            ForbiddenError: Caller is not an admin
            ValidationError: Unknown action, or the request is not pending
            NotFoundError: No such request
            InsufficientFundsError: Approval would overdraw the account
        """
        admin_id = principal.require_user()
        if not await self._storage.has_role(admin_id, ADMIN_ROLE):
            raise ForbiddenError("Admin access required")

        try:
            action = WithdrawalAction(action)
        except ValueError:
            raise ValidationError("Invalid action. Must be 'approve' or 'reject'")

        request = await self._storage.get_withdrawal_request(withdrawal_id)
        if request is None:
            raise NotFoundError("Withdrawal request not found")
        if request.status != WithdrawalStatus.PENDING:
            raise ValidationError("Withdrawal request is not pending")

        now = self._clock()
        balance_after = None

        if action == WithdrawalAction.APPROVE:
            applied = await self._storage.complete_withdrawal_request(
                request.id,
                NewLedgerEntry(
                    type=EntryType.WITHDRAWAL,
                    amount=request.amount,
                    reference=withdrawal_reference(request.id),
                    description=WITHDRAWAL_DESCRIPTIONS[request.withdrawal_type],
                    metadata={
                        "withdrawal_id": str(request.id),
                        "bank_name": request.bank_name,
                        "account_number": request.account_number,
                    },
                ),
                processed_by=admin_id,
                processed_at=now,
                notes=notes,
            )
            closed = applied is not None
            if closed:
                balance_after = str(applied.entry.balance_after)
        else:
            notes = notes or DEFAULT_REJECTION_NOTE
            closed = await self._storage.close_withdrawal_request(
                request.id,
                status=WithdrawalStatus.CANCELLED,
                processed_by=admin_id,
                processed_at=now,
                notes=notes,
            )

        if not closed:
            raise ValidationError("Withdrawal request is not pending")

        logger.info(
            "withdrawal_processed",
            withdrawal_id=str(request.id),
            action=action.value,
        )
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.withdrawal_processed(
                withdrawal_id=request.id,
                admin_id=admin_id,
                approved=action == WithdrawalAction.APPROVE,
                notes=notes,
                balance_after=balance_after,
            ))

        updated = await self._storage.get_withdrawal_request(request.id)
        return updated or request
