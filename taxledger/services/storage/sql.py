"""
SQL Storage Implementation

DESIGN DECISION: The ledger lives in a relational database (sqlite for
local runs and tests, PostgreSQL in production) because:
1. Unique constraints give us idempotency for free
2. Balance changes can be single atomic UPDATE statements
3. A balance move and its ledger entry commit or roll back together

Every public method runs in exactly one database transaction, so a
method that raises has written nothing. Sessions are blocking, so each
transaction runs on a worker thread via `SqlDatabase.run`.

CRITICAL: Balances are never read, modified in Python and written back.
They are changed with `balance_minor = balance_minor + :delta` and read
back inside the same transaction.
"""

import asyncio
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterator, Optional, TypeVar
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import create_engine, delete, func, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from taxledger.config import DatabaseSettings, get_settings
from taxledger.errors import AccountNotFoundError, InsufficientFundsError
from taxledger.models.billing import Subscription, SubscriptionPayment
from taxledger.models.ledger import (
    Account,
    AppliedEntry,
    EntryType,
    InsertOutcome,
    LedgerEntry,
    NewLedgerEntry,
    RecurringRule,
    UserTransaction,
    WithdrawalRequest,
    WithdrawalStatus,
    utcnow,
)
from taxledger.models.money import to_major_units, to_minor_units
from taxledger.services.storage.interface import (
    BillingStorageInterface,
    ConcurrentUpdateError,
    DuplicateError,
    LedgerStorageInterface,
    RecordNotFoundError,
    RecurringStorageInterface,
    StorageError,
    StoreUnavailableError,
)
from taxledger.services.storage.tables import (
    AccountRow,
    Base,
    LedgerEntryRow,
    RecurringRuleRow,
    SubscriptionPaymentRow,
    SubscriptionRow,
    UserRoleRow,
    UserTransactionRow,
    WithdrawalRequestRow,
)


logger = structlog.get_logger("taxledger.storage.sql")

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

# Only whole transactions are retried, so a retry never half-applies anything
retry_when_unavailable = retry(
    retry=retry_if_exception_type(StoreUnavailableError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


def _validated(model: type[M], **fields) -> M:
    """Build a model from a row; a row that doesn't validate is a storage error."""
    try:
        return model(**fields)
    except PydanticValidationError as e:
        raise StorageError(f"Invalid {model.__name__} row: {e}") from e


class SqlDatabase:
    """
    Engine and transaction wrapper.

    Translates driver errors into the storage exception hierarchy:
    uniqueness violations become DuplicateError, connection failures
    and lock timeouts become StoreUnavailableError.
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None,
    ):
        self._settings = settings or get_settings().database
        self._engine = engine or self._create_engine()
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)

    @property
    def engine(self) -> Engine:
        return self._engine

    def _create_engine(self) -> Engine:
        url = make_url(self._settings.url)
        options: dict = {"echo": self._settings.echo}

        if url.get_backend_name() == "sqlite":
            options["connect_args"] = {
                "timeout": self._settings.timeout_seconds,
                "check_same_thread": False,
            }
            if url.database in (None, "", ":memory:"):
                # One shared connection, otherwise every session sees an empty db
                options["poolclass"] = StaticPool
        else:
            options["pool_timeout"] = self._settings.timeout_seconds
            options["pool_pre_ping"] = True

        return create_engine(url, **options)

    def create_schema(self) -> None:
        """Create all tables that don't exist yet."""
        try:
            Base.metadata.create_all(self._engine)
        except OperationalError as e:
            raise StoreUnavailableError(f"Failed to create schema: {e}") from e

    def dispose(self) -> None:
        self._engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Open a session inside a transaction.

        Commits on normal exit, rolls back on any exception.
        """
        try:
            with self._sessions.begin() as session:
                yield session
        except IntegrityError as e:
            raise DuplicateError(f"Constraint violation: {e.orig}") from e
        except OperationalError as e:
            logger.warning("database_unavailable", error=str(e.orig))
            raise StoreUnavailableError(f"Database unavailable: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Database error: {e}") from e

    def _run_in_transaction(self, work: Callable[[Session], T]) -> T:
        with self.transaction() as session:
            return work(session)

    async def run(self, work: Callable[[Session], T]) -> T:
        """
        Run `work(session)` in one transaction on a worker thread.

        The event loop keeps serving other requests while the driver blocks.
        """
        return await asyncio.to_thread(self._run_in_transaction, work)


# =============================================================================
# ROW CONVERSION
# =============================================================================

def _account_from_row(row: AccountRow) -> Account:
    return _validated(
        Account,
        id=row.id,
        user_id=row.user_id,
        balance=to_major_units(row.balance_minor),
        total_deposits=to_major_units(row.total_deposits_minor),
        total_withdrawals=to_major_units(row.total_withdrawals_minor),
        total_interest_earned=to_major_units(row.total_interest_minor),
        has_withdrawal_this_quarter=row.has_withdrawal_this_quarter,
        last_interest_date=row.last_interest_date,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _entry_from_row(row: LedgerEntryRow) -> LedgerEntry:
    return _validated(
        LedgerEntry,
        id=row.id,
        account_id=row.account_id,
        user_id=row.user_id,
        type=row.type,
        amount=to_major_units(row.amount_minor),
        balance_after=to_major_units(row.balance_after_minor),
        gateway_reference=row.gateway_reference,
        reference=row.reference,
        description=row.description,
        metadata=row.entry_metadata or {},
        created_at=row.created_at,
    )


def _rule_from_row(row: RecurringRuleRow) -> RecurringRule:
    return _validated(
        RecurringRule,
        id=row.id,
        user_id=row.user_id,
        description=row.description,
        amount=to_major_units(row.amount_minor),
        type=row.type,
        frequency=row.frequency,
        start_date=row.start_date,
        end_date=row.end_date,
        next_occurrence=row.next_occurrence,
        category_id=row.category_id,
        notes=row.notes,
        is_active=row.is_active,
        last_processed_at=row.last_processed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _rule_values(rule: RecurringRule) -> dict:
    return {
        "description": rule.description,
        "amount_minor": to_minor_units(rule.amount),
        "type": rule.type.value,
        "category_id": rule.category_id,
        "frequency": rule.frequency.value,
        "start_date": rule.start_date,
        "end_date": rule.end_date,
        "next_occurrence": rule.next_occurrence,
        "notes": rule.notes,
        "is_active": rule.is_active,
        "last_processed_at": rule.last_processed_at,
        "updated_at": rule.updated_at,
    }


def _transaction_from_row(row: UserTransactionRow) -> UserTransaction:
    return _validated(
        UserTransaction,
        id=row.id,
        user_id=row.user_id,
        description=row.description,
        amount=to_major_units(row.amount_minor),
        type=row.type,
        category_id=row.category_id,
        transaction_date=row.transaction_date,
        notes=row.notes,
        is_recurring=row.is_recurring,
        recurring_id=row.recurring_id,
        tax_year=row.tax_year,
        status=row.status,
        created_at=row.created_at,
    )


def _subscription_from_row(row: SubscriptionRow) -> Subscription:
    return _validated(
        Subscription,
        id=row.id,
        user_id=row.user_id,
        plan=row.plan,
        status=row.status,
        gateway_subscription_code=row.gateway_subscription_code,
        gateway_customer_code=row.gateway_customer_code,
        amount=to_major_units(row.amount_minor),
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        cancelled_at=row.cancelled_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _payment_from_row(row: SubscriptionPaymentRow) -> SubscriptionPayment:
    return _validated(
        SubscriptionPayment,
        id=row.id,
        user_id=row.user_id,
        amount=to_major_units(row.amount_minor),
        plan=row.plan,
        status=row.status,
        gateway_reference=row.gateway_reference,
        billing_period_start=row.billing_period_start,
        billing_period_end=row.billing_period_end,
        created_at=row.created_at,
    )


def _withdrawal_from_row(row: WithdrawalRequestRow) -> WithdrawalRequest:
    return _validated(
        WithdrawalRequest,
        id=row.id,
        user_id=row.user_id,
        account_id=row.account_id,
        amount=to_major_units(row.amount_minor),
        withdrawal_type=row.withdrawal_type,
        bank_name=row.bank_name,
        account_number=row.account_number,
        account_name=row.account_name,
        status=row.status,
        notes=row.notes,
        processed_at=row.processed_at,
        processed_by=row.processed_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


# =============================================================================
# LEDGER
# =============================================================================

def _raise_guard_failure(
    session: Session,
    account_id: UUID,
    amount_minor: int,
    entry_type: EntryType,
) -> None:
    row = session.get(AccountRow, account_id)
    if row is None:
        raise AccountNotFoundError(f"Account not found: {account_id}")
    if entry_type == EntryType.WITHDRAWAL and row.balance_minor < amount_minor:
        raise InsufficientFundsError(
            f"Insufficient balance: {to_major_units(row.balance_minor)} available"
        )
    raise ConcurrentUpdateError(f"Balance of account {account_id} changed concurrently")


def _apply_entry(
    session: Session,
    account_id: UUID,
    entry: NewLedgerEntry,
    expected_balance: Optional[Decimal],
    now: datetime,
) -> AppliedEntry:
    """Move the balance and append the entry inside the caller's transaction."""
    amount_minor = to_minor_units(entry.amount)

    values = {
        "balance_minor": AccountRow.balance_minor + entry.type.sign * amount_minor,
        "updated_at": now,
    }
    if entry.type == EntryType.DEPOSIT:
        values["total_deposits_minor"] = AccountRow.total_deposits_minor + amount_minor
    elif entry.type == EntryType.INTEREST:
        values["total_interest_minor"] = AccountRow.total_interest_minor + amount_minor
        values["last_interest_date"] = now
    else:
        values["total_withdrawals_minor"] = AccountRow.total_withdrawals_minor + amount_minor
        values["has_withdrawal_this_quarter"] = True

    stmt = update(AccountRow).where(AccountRow.id == account_id)
    if expected_balance is not None:
        stmt = stmt.where(AccountRow.balance_minor == to_minor_units(expected_balance))
    if entry.type == EntryType.WITHDRAWAL:
        stmt = stmt.where(AccountRow.balance_minor >= amount_minor)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    result = session.execute(stmt)
    if result.rowcount == 0:
        _raise_guard_failure(session, account_id, amount_minor, entry.type)

    account_row = session.get(AccountRow, account_id, populate_existing=True)
    entry_row = LedgerEntryRow(
        id=uuid4(),
        account_id=account_id,
        user_id=account_row.user_id,
        type=entry.type.value,
        amount_minor=amount_minor,
        balance_after_minor=account_row.balance_minor,
        gateway_reference=entry.gateway_reference,
        reference=entry.reference,
        description=entry.description,
        entry_metadata=entry.metadata,
        created_at=now,
    )
    session.add(entry_row)
    session.flush()
    return AppliedEntry(
        entry=_entry_from_row(entry_row),
        account=_account_from_row(account_row),
    )


def _close_withdrawal(
    withdrawal_id: UUID,
    status: WithdrawalStatus,
    processed_by: UUID,
    processed_at: datetime,
    notes: Optional[str],
):
    return (
        update(WithdrawalRequestRow)
        .where(WithdrawalRequestRow.id == withdrawal_id)
        .where(WithdrawalRequestRow.status == WithdrawalStatus.PENDING.value)
        .values(
            status=status.value,
            processed_by=processed_by,
            processed_at=processed_at,
            notes=notes,
            updated_at=processed_at,
        )
        .execution_options(synchronize_session=False)
    )


class SqlLedgerStorage(LedgerStorageInterface):
    """
    Accounts, ledger entries, withdrawal requests and roles.
    """

    def __init__(self, database: SqlDatabase):
        self._db = database

    @retry_when_unavailable
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        def query(session: Session) -> Optional[Account]:
            row = session.get(AccountRow, account_id)
            return _account_from_row(row) if row else None

        return await self._db.run(query)

    @retry_when_unavailable
    async def get_account_by_user(self, user_id: UUID) -> Optional[Account]:
        def query(session: Session) -> Optional[Account]:
            row = session.scalar(select(AccountRow).where(AccountRow.user_id == user_id))
            return _account_from_row(row) if row else None

        return await self._db.run(query)

    async def get_or_create_account(self, user_id: UUID) -> Account:
        existing = await self.get_account_by_user(user_id)
        if existing:
            return existing

        def create(session: Session) -> Account:
            now = utcnow()
            row = AccountRow(id=uuid4(), user_id=user_id, created_at=now, updated_at=now)
            session.add(row)
            session.flush()
            return _account_from_row(row)

        try:
            account = await self._db.run(create)
        except DuplicateError:
            # Lost the race to a concurrent first deposit
            account = await self.get_account_by_user(user_id)
            if account is None:
                raise StorageError(f"Account for user {user_id} vanished after conflict")
            return account

        logger.info("account_created", account_id=str(account.id), user_id=str(user_id))
        return account

    @retry_when_unavailable
    async def list_interest_eligible_accounts(self) -> list[Account]:
        def query(session: Session) -> list[Account]:
            rows = session.scalars(
                select(AccountRow)
                .where(AccountRow.balance_minor > 0)
                .where(AccountRow.has_withdrawal_this_quarter.is_(False))
                .order_by(AccountRow.created_at)
            ).all()
            return [_account_from_row(row) for row in rows]

        return await self._db.run(query)

    async def apply_entry(
        self,
        account_id: UUID,
        entry: NewLedgerEntry,
        expected_balance: Optional[Decimal] = None,
    ) -> InsertOutcome[AppliedEntry]:
        try:
            applied = await self._db.run(
                lambda session: _apply_entry(session, account_id, entry, expected_balance, utcnow())
            )
        except DuplicateError:
            logger.info(
                "ledger_entry_already_exists",
                account_id=str(account_id),
                gateway_reference=entry.gateway_reference,
                reference=entry.reference,
            )
            return InsertOutcome.exists()

        return InsertOutcome.created(applied)

    @retry_when_unavailable
    async def find_entry_by_gateway_reference(self, reference: str) -> Optional[LedgerEntry]:
        def query(session: Session) -> Optional[LedgerEntry]:
            row = session.scalar(
                select(LedgerEntryRow).where(LedgerEntryRow.gateway_reference == reference)
            )
            return _entry_from_row(row) if row else None

        return await self._db.run(query)

    @retry_when_unavailable
    async def find_entry_by_reference(self, reference: str) -> Optional[LedgerEntry]:
        def query(session: Session) -> Optional[LedgerEntry]:
            row = session.scalar(select(LedgerEntryRow).where(LedgerEntryRow.reference == reference))
            return _entry_from_row(row) if row else None

        return await self._db.run(query)

    @retry_when_unavailable
    async def list_entries(
        self,
        account_id: UUID,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        def query(session: Session) -> list[LedgerEntry]:
            rows = session.scalars(
                select(LedgerEntryRow)
                .where(LedgerEntryRow.account_id == account_id)
                .order_by(LedgerEntryRow.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return [_entry_from_row(row) for row in rows]

        return await self._db.run(query)

    async def reset_withdrawal_flags(self) -> int:
        def write(session: Session) -> int:
            result = session.execute(
                update(AccountRow)
                .where(AccountRow.has_withdrawal_this_quarter.is_(True))
                .values(has_withdrawal_this_quarter=False, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        return await self._db.run(write)

    async def create_withdrawal_request(self, request: WithdrawalRequest) -> WithdrawalRequest:
        def write(session: Session) -> WithdrawalRequest:
            row = WithdrawalRequestRow(
                id=request.id,
                user_id=request.user_id,
                account_id=request.account_id,
                amount_minor=to_minor_units(request.amount),
                withdrawal_type=request.withdrawal_type.value,
                bank_name=request.bank_name,
                account_number=request.account_number,
                account_name=request.account_name,
                status=request.status.value,
                notes=request.notes,
                created_at=request.created_at,
                updated_at=request.updated_at,
            )
            session.add(row)
            session.flush()
            return _withdrawal_from_row(row)

        return await self._db.run(write)

    @retry_when_unavailable
    async def get_withdrawal_request(self, withdrawal_id: UUID) -> Optional[WithdrawalRequest]:
        def query(session: Session) -> Optional[WithdrawalRequest]:
            row = session.get(WithdrawalRequestRow, withdrawal_id)
            return _withdrawal_from_row(row) if row else None

        return await self._db.run(query)

    async def close_withdrawal_request(
        self,
        withdrawal_id: UUID,
        status: WithdrawalStatus,
        processed_by: UUID,
        processed_at: datetime,
        notes: Optional[str] = None,
    ) -> bool:
        stmt = _close_withdrawal(withdrawal_id, status, processed_by, processed_at, notes)
        return await self._db.run(lambda session: session.execute(stmt).rowcount == 1)

    async def complete_withdrawal_request(
        self,
        withdrawal_id: UUID,
        entry: NewLedgerEntry,
        processed_by: UUID,
        processed_at: datetime,
        notes: Optional[str] = None,
    ) -> Optional[AppliedEntry]:
        stmt = _close_withdrawal(
            withdrawal_id, WithdrawalStatus.COMPLETED, processed_by, processed_at, notes
        )

        def write(session: Session) -> Optional[AppliedEntry]:
            # Claiming the request row first serialises approve against reject
            if session.execute(stmt).rowcount == 0:
                return None
            request_row = session.get(WithdrawalRequestRow, withdrawal_id, populate_existing=True)
            return _apply_entry(session, request_row.account_id, entry, None, utcnow())

        return await self._db.run(write)

    @retry_when_unavailable
    async def has_role(self, user_id: UUID, role: str) -> bool:
        def query(session: Session) -> bool:
            count = session.scalar(
                select(func.count())
                .select_from(UserRoleRow)
                .where(UserRoleRow.user_id == user_id, UserRoleRow.role == role)
            )
            return bool(count)

        return await self._db.run(query)

    async def grant_role(self, user_id: UUID, role: str) -> None:
        try:
            await self._db.run(lambda session: session.add(UserRoleRow(id=uuid4(), user_id=user_id, role=role)))
        except DuplicateError:
            return


# =============================================================================
# RECURRING RULES
# =============================================================================

class SqlRecurringStorage(RecurringStorageInterface):
    """
    Recurring rules and the transactions they materialise.
    """

    def __init__(self, database: SqlDatabase):
        self._db = database

    async def create_rule(self, rule: RecurringRule) -> RecurringRule:
        def write(session: Session) -> RecurringRule:
            row = RecurringRuleRow(
                id=rule.id,
                user_id=rule.user_id,
                created_at=rule.created_at,
                **_rule_values(rule),
            )
            session.add(row)
            session.flush()
            return _rule_from_row(row)

        return await self._db.run(write)

    @retry_when_unavailable
    async def get_rule(self, rule_id: UUID) -> Optional[RecurringRule]:
        def query(session: Session) -> Optional[RecurringRule]:
            row = session.get(RecurringRuleRow, rule_id)
            return _rule_from_row(row) if row else None

        return await self._db.run(query)

    @retry_when_unavailable
    async def list_rules(self, user_id: UUID) -> list[RecurringRule]:
        def query(session: Session) -> list[RecurringRule]:
            rows = session.scalars(
                select(RecurringRuleRow)
                .where(RecurringRuleRow.user_id == user_id)
                .order_by(RecurringRuleRow.created_at.desc())
            ).all()
            return [_rule_from_row(row) for row in rows]

        return await self._db.run(query)

    async def update_rule(self, rule: RecurringRule) -> RecurringRule:
        def write(session: Session) -> RecurringRule:
            row = session.get(RecurringRuleRow, rule.id)
            if row is None:
                raise RecordNotFoundError(f"Recurring rule not found: {rule.id}")
            for column, value in _rule_values(rule).items():
                setattr(row, column, value)
            session.flush()
            return _rule_from_row(row)

        return await self._db.run(write)

    async def delete_rule(self, rule_id: UUID) -> bool:
        def write(session: Session) -> bool:
            # Materialised transactions stay; they just lose the link
            session.execute(
                update(UserTransactionRow)
                .where(UserTransactionRow.recurring_id == rule_id)
                .values(recurring_id=None)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(
                delete(RecurringRuleRow)
                .where(RecurringRuleRow.id == rule_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return await self._db.run(write)

    @retry_when_unavailable
    async def list_due_rules(self, as_of: date) -> list[RecurringRule]:
        def query(session: Session) -> list[RecurringRule]:
            rows = session.scalars(
                select(RecurringRuleRow)
                .where(RecurringRuleRow.is_active.is_(True))
                .where(RecurringRuleRow.next_occurrence <= as_of)
                .order_by(RecurringRuleRow.next_occurrence, RecurringRuleRow.created_at)
            ).all()
            return [_rule_from_row(row) for row in rows]

        return await self._db.run(query)

    async def advance_rule(
        self,
        rule_id: UUID,
        expected_next: date,
        new_next: date,
        processed_at: datetime,
    ) -> bool:
        stmt = (
            update(RecurringRuleRow)
            .where(RecurringRuleRow.id == rule_id)
            .where(RecurringRuleRow.next_occurrence == expected_next)
            .values(
                next_occurrence=new_next,
                last_processed_at=processed_at,
                updated_at=processed_at,
            )
            .execution_options(synchronize_session=False)
        )
        return await self._db.run(lambda session: session.execute(stmt).rowcount == 1)

    async def set_rule_active(self, rule_id: UUID, is_active: bool) -> bool:
        stmt = (
            update(RecurringRuleRow)
            .where(RecurringRuleRow.id == rule_id)
            .values(is_active=is_active, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return await self._db.run(lambda session: session.execute(stmt).rowcount == 1)

    async def insert_transaction(self, transaction: UserTransaction) -> InsertOutcome[UserTransaction]:
        def write(session: Session) -> UserTransaction:
            row = UserTransactionRow(
                id=transaction.id,
                user_id=transaction.user_id,
                description=transaction.description,
                amount_minor=to_minor_units(transaction.amount),
                type=transaction.type.value,
                category_id=transaction.category_id,
                transaction_date=transaction.transaction_date,
                notes=transaction.notes,
                is_recurring=transaction.is_recurring,
                recurring_id=transaction.recurring_id,
                tax_year=transaction.tax_year,
                status=transaction.status.value,
                created_at=transaction.created_at,
            )
            session.add(row)
            session.flush()
            return _transaction_from_row(row)

        try:
            return InsertOutcome.created(await self._db.run(write))
        except DuplicateError:
            if transaction.recurring_id is None:
                raise
            existing = await self._find_materialised(transaction.recurring_id, transaction.transaction_date)
            return InsertOutcome.exists(existing)

    async def _find_materialised(self, rule_id: UUID, due_date: date) -> Optional[UserTransaction]:
        def query(session: Session) -> Optional[UserTransaction]:
            row = session.scalar(
                select(UserTransactionRow)
                .where(UserTransactionRow.recurring_id == rule_id)
                .where(UserTransactionRow.transaction_date == due_date)
            )
            return _transaction_from_row(row) if row else None

        return await self._db.run(query)

    @retry_when_unavailable
    async def list_rule_transactions(self, rule_id: UUID) -> list[UserTransaction]:
        def query(session: Session) -> list[UserTransaction]:
            rows = session.scalars(
                select(UserTransactionRow)
                .where(UserTransactionRow.recurring_id == rule_id)
                .order_by(UserTransactionRow.transaction_date)
            ).all()
            return [_transaction_from_row(row) for row in rows]

        return await self._db.run(query)


# =============================================================================
# BILLING
# =============================================================================

class SqlBillingStorage(BillingStorageInterface):
    """
    Subscriptions (one per user) and the append-only payment log.
    """

    def __init__(self, database: SqlDatabase):
        self._db = database

    @retry_when_unavailable
    async def get_subscription(self, user_id: UUID) -> Optional[Subscription]:
        def query(session: Session) -> Optional[Subscription]:
            row = session.scalar(select(SubscriptionRow).where(SubscriptionRow.user_id == user_id))
            return _subscription_from_row(row) if row else None

        return await self._db.run(query)

    async def upsert_subscription(self, subscription: Subscription) -> Subscription:
        values = {
            "plan": subscription.plan.value,
            "status": subscription.status.value,
            "gateway_subscription_code": subscription.gateway_subscription_code,
            "gateway_customer_code": subscription.gateway_customer_code,
            "amount_minor": to_minor_units(subscription.amount),
            "current_period_start": subscription.current_period_start,
            "current_period_end": subscription.current_period_end,
            "cancelled_at": subscription.cancelled_at,
            "updated_at": subscription.updated_at,
        }
        by_user = select(SubscriptionRow).where(SubscriptionRow.user_id == subscription.user_id)

        def upsert(session: Session) -> Subscription:
            row = session.scalar(by_user)
            if row is None:
                row = SubscriptionRow(
                    id=subscription.id,
                    user_id=subscription.user_id,
                    created_at=subscription.created_at,
                    **values,
                )
                session.add(row)
            else:
                for column, value in values.items():
                    setattr(row, column, value)
            session.flush()
            return _subscription_from_row(row)

        def overwrite(session: Session) -> Subscription:
            session.execute(
                update(SubscriptionRow)
                .where(SubscriptionRow.user_id == subscription.user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return _subscription_from_row(session.scalar(by_user))

        try:
            return await self._db.run(upsert)
        except DuplicateError:
            # A concurrent insert for the same user won; overwrite it
            return await self._db.run(overwrite)

    async def append_payment(self, payment: SubscriptionPayment) -> InsertOutcome[SubscriptionPayment]:
        def write(session: Session) -> SubscriptionPayment:
            row = SubscriptionPaymentRow(
                id=payment.id,
                user_id=payment.user_id,
                amount_minor=to_minor_units(payment.amount),
                plan=payment.plan.value,
                status=payment.status.value,
                gateway_reference=payment.gateway_reference,
                billing_period_start=payment.billing_period_start,
                billing_period_end=payment.billing_period_end,
                created_at=payment.created_at,
            )
            session.add(row)
            session.flush()
            return _payment_from_row(row)

        try:
            return InsertOutcome.created(await self._db.run(write))
        except DuplicateError:
            return InsertOutcome.exists(await self.find_payment_by_reference(payment.gateway_reference))

    @retry_when_unavailable
    async def find_payment_by_reference(self, reference: str) -> Optional[SubscriptionPayment]:
        def query(session: Session) -> Optional[SubscriptionPayment]:
            row = session.scalar(
                select(SubscriptionPaymentRow).where(SubscriptionPaymentRow.gateway_reference == reference)
            )
            return _payment_from_row(row) if row else None

        return await self._db.run(query)

    @retry_when_unavailable
    async def list_payments(self, user_id: UUID, limit: int = 100) -> list[SubscriptionPayment]:
        def query(session: Session) -> list[SubscriptionPayment]:
            rows = session.scalars(
                select(SubscriptionPaymentRow)
                .where(SubscriptionPaymentRow.user_id == user_id)
                .order_by(SubscriptionPaymentRow.created_at.desc())
                .limit(limit)
            ).all()
            return [_payment_from_row(row) for row in rows]

        return await self._db.run(query)
