"""
Audit Logger

DESIGN DECISION: Every balance change and every billing decision is logged.
This provides:
1. Complete traceability of money movements
2. Debugging capability for gateway and scheduler incidents
3. Evidence for support when a user disputes a charge

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events (e.g. one interest run)

CRITICAL: The audit trail is NOT the ledger. A lost audit event never
means a lost credit; the ledger entry is written before we log.
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from taxledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from taxledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (always)
    2. An audit store such as Google Sheets (when configured)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("taxledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_deposit_credited(
        self,
        account_id: UUID,
        user_id: UUID,
        reference: str,
        amount: str,
        balance_after: str,
    ) -> None:
        """Log a settled deposit."""
        event = AuditEventBuilder.deposit_credited(
            account_id=account_id,
            user_id=user_id,
            reference=reference,
            amount=amount,
            balance_after=balance_after,
        )
        await self.log(event)

    async def log_payment_already_processed(
        self,
        user_id: UUID,
        reference: str,
        purpose: str,
    ) -> None:
        """Log a duplicate settlement attempt."""
        event = AuditEventBuilder.payment_already_processed(
            user_id=user_id,
            reference=reference,
            purpose=purpose,
        )
        await self.log(event)

    async def log_payment_not_successful(
        self,
        user_id: UUID,
        reference: str,
        status: str,
    ) -> None:
        """Log a verify that found the payment unsuccessful."""
        event = AuditEventBuilder.payment_not_successful(
            user_id=user_id,
            reference=reference,
            status=status,
        )
        await self.log(event)

    async def log_interest_credited(
        self,
        account_id: UUID,
        interest: str,
        balance_after: str,
        rate: str,
        correlation_id: UUID,
    ) -> None:
        """Log one account's interest credit within a run."""
        event = AuditEventBuilder.interest_credited(
            account_id=account_id,
            interest=interest,
            balance_after=balance_after,
            rate=rate,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_interest_account_failed(
        self,
        account_id: UUID,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log an account skipped by an interest run."""
        event = AuditEventBuilder.interest_account_failed(
            account_id=account_id,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_recurring_materialized(
        self,
        rule_id: UUID,
        transaction_id: UUID,
        due_date: str,
        next_occurrence: str,
        created: bool,
    ) -> None:
        """Log a rule that produced (or re-found) its due transaction."""
        event = AuditEventBuilder.recurring_transaction_materialized(
            rule_id=rule_id,
            transaction_id=transaction_id,
            due_date=due_date,
            next_occurrence=next_occurrence,
            created=created,
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        actor_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            actor_id=actor_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a batch (e.g., one interest run or one
    due-scan) and pass it through all subsequent operations.
    """
    return uuid4()
