"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run on sqlite locally and PostgreSQL in production
2. Keep business logic decoupled from the storage implementation
3. Push every concurrency guarantee into one place

CRITICAL: Implementations must enforce these guarantees themselves,
not rely on callers checking first:
- `gateway_reference` and `reference` are unique across ledger entries
- one account and one subscription per user
- (recurring_id, transaction_date) is unique for materialised transactions
- balance changes are single atomic updates, never read-then-write

Idempotency-keyed inserts return an `InsertOutcome` instead of raising
on a uniqueness conflict.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from taxledger.errors import LedgerError
from taxledger.models.audit import AuditEvent
from taxledger.models.billing import Subscription, SubscriptionPayment
from taxledger.models.ledger import (
    Account,
    AppliedEntry,
    InsertOutcome,
    LedgerEntry,
    NewLedgerEntry,
    RecurringRule,
    UserTransaction,
    WithdrawalRequest,
    WithdrawalStatus,
)


class LedgerStorageInterface(ABC):
    """
    Savings accounts, their ledger entries, withdrawal requests and roles.
    """

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        """Retrieve an account by its ID."""
        pass

    @abstractmethod
    async def get_account_by_user(self, user_id: UUID) -> Optional[Account]:
        """Retrieve the (single) account owned by a user."""
        pass

    @abstractmethod
    async def get_or_create_account(self, user_id: UUID) -> Account:
        """
        Return the user's account, creating an empty one if absent.

        Safe under concurrent calls: the one-account-per-user constraint
        decides the winner and the loser re-reads it.
        """
        pass

    @abstractmethod
    async def list_interest_eligible_accounts(self) -> list[Account]:
        """Accounts with a positive balance and no withdrawal this quarter."""
        pass

    @abstractmethod
    async def apply_entry(
        self,
        account_id: UUID,
        entry: NewLedgerEntry,
        expected_balance: Optional[Decimal] = None,
    ) -> InsertOutcome[AppliedEntry]:
        """
        Move the balance and append the ledger entry in one transaction.

        Deposits add to balance and total_deposits; interest adds to
        balance and total_interest_earned and stamps last_interest_date;
        withdrawals subtract from balance (only if balance >= amount),
        add to total_withdrawals and set has_withdrawal_this_quarter.

        Args:
            account_id: Account to change
            entry: The entry to append; balance_after is computed here
            expected_balance: If given, only apply when the stored balance
                still equals this value

        Returns:
            `inserted` with the written entry and updated account, or
            `already_exists` if an entry with the same gateway_reference /
            reference exists (nothing written)

        Raises:
            AccountNotFoundError: Account doesn't exist
            InsufficientFundsError: Withdrawal larger than the balance
            ConcurrentUpdateError: Balance no longer equals expected_balance
            StorageError: Any other write failure
        """
        pass

    @abstractmethod
    async def find_entry_by_gateway_reference(self, reference: str) -> Optional[LedgerEntry]:
        """Find the ledger entry written for a gateway reference, if any."""
        pass

    @abstractmethod
    async def find_entry_by_reference(self, reference: str) -> Optional[LedgerEntry]:
        """Find a ledger entry by its internal idempotency key, if any."""
        pass

    @abstractmethod
    async def list_entries(
        self,
        account_id: UUID,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        """List an account's entries, newest first."""
        pass

    @abstractmethod
    async def reset_withdrawal_flags(self) -> int:
        """
        Clear has_withdrawal_this_quarter on every account.

        Returns:
            Number of accounts that had the flag set
        """
        pass

    @abstractmethod
    async def create_withdrawal_request(self, request: WithdrawalRequest) -> WithdrawalRequest:
        """Persist a new (pending) withdrawal request."""
        pass

    @abstractmethod
    async def get_withdrawal_request(self, withdrawal_id: UUID) -> Optional[WithdrawalRequest]:
        """Retrieve a withdrawal request by ID."""
        pass

    @abstractmethod
    async def close_withdrawal_request(
        self,
        withdrawal_id: UUID,
        status: WithdrawalStatus,
        processed_by: UUID,
        processed_at: datetime,
        notes: Optional[str] = None,
    ) -> bool:
        """
        Move a request out of `pending`.

        Returns:
            True if this call changed it; False if it was no longer pending
        """
        pass

    @abstractmethod
    async def complete_withdrawal_request(
        self,
        withdrawal_id: UUID,
        entry: NewLedgerEntry,
        processed_by: UUID,
        processed_at: datetime,
        notes: Optional[str] = None,
    ) -> Optional[AppliedEntry]:
        """
        Move a pending request to `completed` and debit its account.

        Both happen in one transaction: either the request is closed and
        the withdrawal entry written, or nothing changes.

        Returns:
            The written entry and updated account; None if the request
            was no longer pending (nothing written)

        Raises:
            InsufficientFundsError: Balance no longer covers the request
                (the request stays pending)
        """
        pass

    @abstractmethod
    async def has_role(self, user_id: UUID, role: str) -> bool:
        """Check whether a user holds a role (e.g. 'admin')."""
        pass

    @abstractmethod
    async def grant_role(self, user_id: UUID, role: str) -> None:
        """Grant a role; granting twice is a no-op."""
        pass


class RecurringStorageInterface(ABC):
    """
    Recurring rules and the user transactions they materialise.
    """

    @abstractmethod
    async def create_rule(self, rule: RecurringRule) -> RecurringRule:
        """Persist a new rule."""
        pass

    @abstractmethod
    async def get_rule(self, rule_id: UUID) -> Optional[RecurringRule]:
        """Retrieve a rule by ID."""
        pass

    @abstractmethod
    async def list_rules(self, user_id: UUID) -> list[RecurringRule]:
        """List a user's rules, newest first."""
        pass

    @abstractmethod
    async def update_rule(self, rule: RecurringRule) -> RecurringRule:
        """
        Overwrite a rule's mutable fields.

        Raises:
            RecordNotFoundError: If the rule doesn't exist
        """
        pass

    @abstractmethod
    async def delete_rule(self, rule_id: UUID) -> bool:
        """Delete a rule. Returns False if it didn't exist."""
        pass

    @abstractmethod
    async def list_due_rules(self, as_of: date) -> list[RecurringRule]:
        """Active rules with next_occurrence on or before `as_of`."""
        pass

    @abstractmethod
    async def advance_rule(
        self,
        rule_id: UUID,
        expected_next: date,
        new_next: date,
        processed_at: datetime,
    ) -> bool:
        """
        Compare-and-set the rule's next_occurrence.

        Returns:
            True if next_occurrence was still `expected_next` and is now
            `new_next`; False if someone else already moved it
        """
        pass

    @abstractmethod
    async def set_rule_active(self, rule_id: UUID, is_active: bool) -> bool:
        """Flip is_active. Returns False if the rule doesn't exist."""
        pass

    @abstractmethod
    async def insert_transaction(self, transaction: UserTransaction) -> InsertOutcome[UserTransaction]:
        """
        Insert a materialised transaction.

        Returns `already_exists` (with the stored row) when a transaction
        for the same (recurring_id, transaction_date) is already there.
        """
        pass

    @abstractmethod
    async def list_rule_transactions(self, rule_id: UUID) -> list[UserTransaction]:
        """Transactions materialised from a rule, oldest first."""
        pass


class BillingStorageInterface(ABC):
    """
    Subscriptions and their payment history.
    """

    @abstractmethod
    async def get_subscription(self, user_id: UUID) -> Optional[Subscription]:
        """Retrieve a user's subscription, if any."""
        pass

    @abstractmethod
    async def upsert_subscription(self, subscription: Subscription) -> Subscription:
        """
        Insert or overwrite the user's subscription (conflict on user_id).

        Returns:
            The stored subscription
        """
        pass

    @abstractmethod
    async def append_payment(self, payment: SubscriptionPayment) -> InsertOutcome[SubscriptionPayment]:
        """
        Append a payment record.

        Returns `already_exists` (with the stored row) when the
        gateway_reference was already recorded.
        """
        pass

    @abstractmethod
    async def find_payment_by_reference(self, reference: str) -> Optional[SubscriptionPayment]:
        """Find the payment recorded for a gateway reference, if any."""
        pass

    @abstractmethod
    async def list_payments(self, user_id: UUID, limit: int = 100) -> list[SubscriptionPayment]:
        """A user's payment history, newest first."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass


class StorageError(LedgerError):
    """Base exception for storage operations."""
    pass


class RecordNotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """A write violated a uniqueness constraint."""
    pass


class StoreUnavailableError(StorageError):
    """Could not reach the storage backend (including timeouts)."""

    retryable = True


class ConcurrentUpdateError(StorageError):
    """A guarded update found the row changed since it was read."""

    retryable = True
