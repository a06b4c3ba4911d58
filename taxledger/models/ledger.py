"""
Core Ledger Models

These models define the strict schemas for everything the ledger stores:
savings accounts, their immutable entries, recurring rules and the
user transactions those rules materialise.

DESIGN DECISION: Store rows are converted into these models on every read.
A row that does not validate is a storage error, never a loosely-typed dict.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from taxledger.models.money import Money


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class Frequency(str, Enum):
    """How often a recurring rule fires."""
    DAILY = "daily"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class EntryType(str, Enum):
    """
    Kinds of savings ledger entries.

    Deposits and interest add to the balance, withdrawals subtract.
    """
    DEPOSIT = "deposit"
    INTEREST = "interest"
    WITHDRAWAL = "withdrawal"

    @property
    def sign(self) -> int:
        return -1 if self is EntryType.WITHDRAWAL else 1


class TransactionType(str, Enum):
    """Direction of a user (dashboard) transaction."""
    INCOME = "income"
    EXPENSE = "expense"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WithdrawalType(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    TAX_PAYMENT = "tax_payment"


class WithdrawalStatus(str, Enum):
    """
    Withdrawal request lifecycle.

    pending -> completed (approved) or pending -> cancelled (rejected).
    """
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InsertStatus(str, Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


# =============================================================================
# SAVINGS ACCOUNT & LEDGER ENTRIES
# =============================================================================

class Account(BaseModel):
    """
    A user's tax-savings account.

    Exactly one per user. Created lazily on the first deposit attempt.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    balance: Money = Field(default=Decimal("0.00"), ge=0)
    total_deposits: Money = Field(default=Decimal("0.00"), ge=0)
    total_withdrawals: Money = Field(default=Decimal("0.00"), ge=0)
    total_interest_earned: Money = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Never decreases"
    )
    has_withdrawal_this_quarter: bool = Field(
        default=False,
        description="Set on withdrawal; reset by the start-of-quarter maintenance task"
    )
    last_interest_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class NewLedgerEntry(BaseModel):
    """
    An entry about to be applied to an account.

    `balance_after` is not known yet: the store computes it inside
    the same atomic update that moves the balance.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    type: EntryType
    amount: Money = Field(..., gt=0)
    gateway_reference: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Payment gateway reference; unique across the ledger"
    )
    reference: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Internal idempotency key; unique across the ledger"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)


class LedgerEntry(BaseModel):
    """
    One immutable balance-affecting event (a.k.a. savings transaction).
    """
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    user_id: UUID
    type: EntryType
    amount: Money = Field(..., gt=0)
    balance_after: Money = Field(..., ge=0)
    gateway_reference: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * self.type.sign


class AppliedEntry(BaseModel):
    """Result of applying an entry: the written entry and the account after it."""

    entry: LedgerEntry
    account: Account


T = TypeVar("T")


class InsertOutcome(BaseModel, Generic[T]):
    """
    Tagged result of an idempotency-keyed insert.

    `inserted`: the row was written by this call.
    `already_exists`: a row with the same unique key was already there;
    nothing was written.
    """

    status: InsertStatus
    record: Optional[T] = None

    @property
    def inserted(self) -> bool:
        return self.status == InsertStatus.INSERTED

    @classmethod
    def created(cls, record: T) -> "InsertOutcome[T]":
        return cls(status=InsertStatus.INSERTED, record=record)

    @classmethod
    def exists(cls, record: Optional[T] = None) -> "InsertOutcome[T]":
        return cls(status=InsertStatus.ALREADY_EXISTS, record=record)


# =============================================================================
# RECURRING RULES
# =============================================================================

class RecurringRuleTemplate(BaseModel):
    """
    What the owner submits to create a recurring rule.

    An unknown frequency fails validation here, before the schedule
    calculator is ever reached.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(..., min_length=1, max_length=200)
    amount: Money = Field(..., gt=0)
    type: TransactionType
    frequency: Frequency
    start_date: date
    end_date: Optional[date] = None
    category_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode='after')
    def validate_dates(self) -> 'RecurringRuleTemplate':
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self


class RecurringRulePatch(BaseModel):
    """Partial update of a rule. Only fields that are set are applied."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[Money] = None
    type: Optional[TransactionType] = None
    frequency: Optional[Frequency] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    is_active: Optional[bool] = None

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v <= 0:
            raise ValueError("Amount must be greater than zero")
        return v

    @property
    def reschedules(self) -> bool:
        """Does this patch move the schedule (so next_occurrence must be re-seeded)?"""
        return "frequency" in self.model_fields_set or "start_date" in self.model_fields_set


class RecurringRule(BaseModel):
    """A user's rule for generating a transaction on a schedule."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    description: str = Field(..., min_length=1, max_length=200)
    amount: Money = Field(..., gt=0)
    type: TransactionType
    frequency: Frequency
    start_date: date
    end_date: Optional[date] = None
    next_occurrence: date
    category_id: Optional[UUID] = None
    notes: Optional[str] = None
    is_active: bool = True
    last_processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_due(self, today: date) -> bool:
        return self.next_occurrence <= today

    @property
    def has_ended(self) -> bool:
        """The next due date is past end_date, so nothing is left to materialise."""
        return self.end_date is not None and self.next_occurrence > self.end_date


class UserTransaction(BaseModel):
    """
    An income/expense transaction on the user's dashboard.

    Recurring rules materialise these; (recurring_id, transaction_date)
    is unique so a due date is never materialised twice.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    description: str
    amount: Money = Field(..., gt=0)
    type: TransactionType
    category_id: Optional[UUID] = None
    transaction_date: date
    notes: Optional[str] = None
    is_recurring: bool = False
    recurring_id: Optional[UUID] = None
    tax_year: int
    status: TransactionStatus = TransactionStatus.COMPLETED
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('tax_year')
    @classmethod
    def validate_tax_year(cls, v: int) -> int:
        if v < 2000 or v > 2200:
            raise ValueError(f"Implausible tax year: {v}")
        return v


# =============================================================================
# WITHDRAWALS
# =============================================================================

class WithdrawalRequestCreate(BaseModel):
    """What a user submits to ask for a withdrawal."""
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Money = Field(..., gt=0)
    withdrawal_type: WithdrawalType = WithdrawalType.BANK_TRANSFER
    bank_name: Optional[str] = Field(default=None, max_length=100)
    account_number: Optional[str] = Field(default=None, max_length=20)
    account_name: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode='after')
    def validate_bank_details(self) -> 'WithdrawalRequestCreate':
        if self.withdrawal_type == WithdrawalType.BANK_TRANSFER:
            if not self.bank_name or not self.account_number:
                raise ValueError("Bank transfers need a bank name and account number")
        return self


class WithdrawalRequest(BaseModel):
    """A pending or processed withdrawal request."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    account_id: UUID
    amount: Money = Field(..., gt=0)
    withdrawal_type: WithdrawalType
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# BATCH RESULTS
# =============================================================================

class AccrualError(BaseModel):
    """One account that failed during an interest run."""

    account_id: UUID
    error: str


class InterestRunResult(BaseModel):
    """
    Outcome of an interest accrual run.

    The run never fails wholesale; failed accounts are listed.
    """

    processed: int = Field(default=0, ge=0)
    total_interest: Money = Field(default=Decimal("0.00"), ge=0)
    errors: list[AccrualError] = Field(default_factory=list)
    ran_at: datetime = Field(default_factory=utcnow)


class ProcessOutcome(str, Enum):
    """What `process_due` did with a rule."""
    MATERIALIZED = "materialized"
    INACTIVE = "inactive"
    NOT_DUE = "not_due"
    EXPIRED = "expired"


class RuleProcessResult(BaseModel):
    """Summary of one `process_due` call."""

    rule_id: UUID
    outcome: ProcessOutcome
    transaction: Optional[UserTransaction] = None
    created: bool = Field(
        default=False,
        description="False when the transaction for this due date already existed"
    )
    advanced: bool = False
    next_occurrence: Optional[date] = None


class RuleError(BaseModel):
    rule_id: UUID
    error: str


class RecurringBatchResult(BaseModel):
    """Outcome of a batch due-scan."""

    created: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    results: list[RuleProcessResult] = Field(default_factory=list)
    errors: list[RuleError] = Field(default_factory=list)
