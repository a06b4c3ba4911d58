"""
Data Models Package

This package contains all Pydantic models used by the ledger and billing engine.
All data flowing through the system must conform to these schemas.
"""

from taxledger.models.ledger import (
    Account,
    AccrualError,
    AppliedEntry,
    EntryType,
    Frequency,
    InsertOutcome,
    InsertStatus,
    InterestRunResult,
    LedgerEntry,
    NewLedgerEntry,
    ProcessOutcome,
    RecurringBatchResult,
    RecurringRule,
    RecurringRulePatch,
    RecurringRuleTemplate,
    RuleError,
    RuleProcessResult,
    TransactionStatus,
    TransactionType,
    UserTransaction,
    WithdrawalRequest,
    WithdrawalRequestCreate,
    WithdrawalStatus,
    WithdrawalType,
)
from taxledger.models.billing import (
    CheckoutSession,
    GatewayTransaction,
    PaymentPurpose,
    PaymentStatus,
    SettlementResult,
    Subscription,
    SubscriptionPayment,
    SubscriptionPlan,
    SubscriptionStatus,
)
from taxledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from taxledger.models.money import Money, round_money, to_major_units, to_minor_units

__all__ = [
    # Ledger models
    "Account",
    "AccrualError",
    "AppliedEntry",
    "EntryType",
    "Frequency",
    "InsertOutcome",
    "InsertStatus",
    "InterestRunResult",
    "LedgerEntry",
    "NewLedgerEntry",
    "ProcessOutcome",
    "RecurringBatchResult",
    "RecurringRule",
    "RecurringRulePatch",
    "RecurringRuleTemplate",
    "RuleError",
    "RuleProcessResult",
    "TransactionStatus",
    "TransactionType",
    "UserTransaction",
    "WithdrawalRequest",
    "WithdrawalRequestCreate",
    "WithdrawalStatus",
    "WithdrawalType",
    # Billing models
    "CheckoutSession",
    "GatewayTransaction",
    "PaymentPurpose",
    "PaymentStatus",
    "SettlementResult",
    "Subscription",
    "SubscriptionPayment",
    "SubscriptionPlan",
    "SubscriptionStatus",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Money
    "Money",
    "round_money",
    "to_major_units",
    "to_minor_units",
]
