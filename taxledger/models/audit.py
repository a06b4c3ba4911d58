"""
Audit Models for the Tax Ledger

Every money-moving action in the system is logged for audit purposes.
This provides:
1. Traceability of every balance change back to its trigger
2. Debugging information when a settlement or batch run goes wrong
3. A record of admin decisions on withdrawals

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from taxledger.models.ledger import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Grouped by the component that emits them.
    """
    # Deposits
    DEPOSIT_INITIALIZED = "deposit_initialized"
    DEPOSIT_CREDITED = "deposit_credited"

    # Settlement
    PAYMENT_ALREADY_PROCESSED = "payment_already_processed"
    PAYMENT_NOT_SUCCESSFUL = "payment_not_successful"

    # Subscriptions
    SUBSCRIPTION_CHECKOUT_INITIALIZED = "subscription_checkout_initialized"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPSERT_FAILED = "subscription_upsert_failed"

    # Interest
    INTEREST_CREDITED = "interest_credited"
    INTEREST_ACCOUNT_FAILED = "interest_account_failed"
    INTEREST_RUN_COMPLETED = "interest_run_completed"
    WITHDRAWAL_FLAGS_RESET = "withdrawal_flags_reset"

    # Recurring rules
    RECURRING_RULE_CREATED = "recurring_rule_created"
    RECURRING_RULE_UPDATED = "recurring_rule_updated"
    RECURRING_RULE_DELETED = "recurring_rule_deleted"
    RECURRING_TRANSACTION_MATERIALIZED = "recurring_transaction_materialized"
    RECURRING_RULE_EXPIRED = "recurring_rule_expired"

    # Withdrawals
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every balance change creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'account', 'recurring_rule', 'subscription')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    actor_id: Optional[UUID] = Field(
        default=None,
        description="User who triggered the event; None for scheduled jobs"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., one interest run)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         actor_id, correlation_id, description, details_json, error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.actor_id) if self.actor_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.deposit_credited(account_id, user_id, ...)
        event = AuditEventBuilder.interest_credited(account_id, ...)
    """

    @staticmethod
    def deposit_initialized(
        user_id: UUID,
        reference: str,
        amount: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEPOSIT_INITIALIZED,
            entity_type="payment",
            actor_id=user_id,
            description=f"Deposit checkout initialized: {reference}",
            details={"reference": reference, "amount": amount},
        )

    @staticmethod
    def deposit_credited(
        account_id: UUID,
        user_id: UUID,
        reference: str,
        amount: str,
        balance_after: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEPOSIT_CREDITED,
            entity_type="account",
            entity_id=account_id,
            actor_id=user_id,
            description=f"Deposit of {amount} credited",
            details={
                "reference": reference,
                "amount": amount,
                "balance_after": balance_after,
            },
        )

    @staticmethod
    def payment_already_processed(
        user_id: UUID,
        reference: str,
        purpose: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_ALREADY_PROCESSED,
            entity_type="payment",
            actor_id=user_id,
            description=f"Reference {reference} already settled; nothing written",
            details={"reference": reference, "purpose": purpose},
        )

    @staticmethod
    def payment_not_successful(
        user_id: UUID,
        reference: str,
        status: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_NOT_SUCCESSFUL,
            severity=AuditSeverity.WARNING,
            entity_type="payment",
            actor_id=user_id,
            description=f"Gateway reports payment {status}",
            details={"reference": reference, "status": status},
        )

    @staticmethod
    def subscription_checkout_initialized(
        user_id: UUID,
        reference: str,
        plan: str,
        amount: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_CHECKOUT_INITIALIZED,
            entity_type="payment",
            actor_id=user_id,
            description=f"Subscription checkout initialized for {plan} plan",
            details={"reference": reference, "plan": plan, "amount": amount},
        )

    @staticmethod
    def subscription_activated(
        subscription_id: UUID,
        user_id: UUID,
        reference: str,
        plan: str,
        period_end: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_ACTIVATED,
            entity_type="subscription",
            entity_id=subscription_id,
            actor_id=user_id,
            description=f"Subscription active on {plan} plan until {period_end}",
            details={"reference": reference, "plan": plan, "period_end": period_end},
        )

    @staticmethod
    def subscription_upsert_failed(
        user_id: UUID,
        reference: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_UPSERT_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="subscription",
            actor_id=user_id,
            description="Payment recorded but subscription could not be updated",
            details={"reference": reference},
            error_message=error_message,
        )

    @staticmethod
    def interest_credited(
        account_id: UUID,
        interest: str,
        balance_after: str,
        rate: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTEREST_CREDITED,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Quarterly interest of {interest} credited",
            details={
                "interest": interest,
                "balance_after": balance_after,
                "rate": rate,
            },
        )

    @staticmethod
    def interest_account_failed(
        account_id: UUID,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTEREST_ACCOUNT_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description="Interest could not be credited",
            error_message=error_message,
        )

    @staticmethod
    def interest_run_completed(
        processed: int,
        failed: int,
        total_interest: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTEREST_RUN_COMPLETED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=f"Interest calculated for {processed} accounts",
            details={
                "processed": processed,
                "failed": failed,
                "total_interest": total_interest,
            },
        )

    @staticmethod
    def withdrawal_flags_reset(reset_count: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WITHDRAWAL_FLAGS_RESET,
            description=f"Withdrawal flag cleared on {reset_count} accounts",
            details={"reset_count": reset_count},
        )

    @staticmethod
    def recurring_rule_changed(
        event_type: AuditEventType,
        rule_id: UUID,
        user_id: UUID,
        changes: Optional[dict] = None,
    ) -> AuditEvent:
        verb = event_type.value.rsplit("_", 1)[-1]
        return AuditEvent(
            event_type=event_type,
            entity_type="recurring_rule",
            entity_id=rule_id,
            actor_id=user_id,
            description=f"Recurring rule {verb}",
            details=changes or {},
        )

    @staticmethod
    def recurring_transaction_materialized(
        rule_id: UUID,
        transaction_id: UUID,
        due_date: str,
        next_occurrence: str,
        created: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_TRANSACTION_MATERIALIZED,
            entity_type="recurring_rule",
            entity_id=rule_id,
            description=(
                f"Transaction for {due_date} "
                f"{'created' if created else 'already existed'}; next due {next_occurrence}"
            ),
            details={
                "transaction_id": str(transaction_id),
                "due_date": due_date,
                "next_occurrence": next_occurrence,
                "created": created,
            },
        )

    @staticmethod
    def recurring_rule_expired(rule_id: UUID, end_date: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_RULE_EXPIRED,
            entity_type="recurring_rule",
            entity_id=rule_id,
            description=f"Rule deactivated: end date {end_date} has passed",
            details={"end_date": end_date},
        )

    @staticmethod
    def withdrawal_requested(
        withdrawal_id: UUID,
        user_id: UUID,
        amount: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WITHDRAWAL_REQUESTED,
            entity_type="withdrawal",
            entity_id=withdrawal_id,
            actor_id=user_id,
            description=f"Withdrawal of {amount} requested",
            details={"amount": amount},
        )

    @staticmethod
    def withdrawal_processed(
        withdrawal_id: UUID,
        admin_id: UUID,
        approved: bool,
        notes: Optional[str] = None,
        balance_after: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.WITHDRAWAL_APPROVED if approved
                else AuditEventType.WITHDRAWAL_REJECTED
            ),
            entity_type="withdrawal",
            entity_id=withdrawal_id,
            actor_id=admin_id,
            description=f"Withdrawal {'approved' if approved else 'rejected'}",
            details={"notes": notes, "balance_after": balance_after},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"System error: {error_type}",
            details=details or {},
            error_code=error_type,
            error_message=error_message,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        actor_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            actor_id=actor_id,
            description=f"External service error: {service}",
            details={"service": service},
            error_message=error_message,
        )
