"""
Recurring Transaction Engine

Owns the lifecycle of recurring rules and turns due rules into concrete
user transactions.

DESIGN DECISION: Materialising a due date is two writes (insert the
transaction, then advance `next_occurrence`) that are NOT wrapped in one
database transaction. Instead each write is individually safe to repeat:
1. The transaction insert is keyed by (rule_id, due_date); a conflict means
   it already exists and counts as success
2. The advance is a compare-and-set on the due date we materialised

So a crash between the two writes, or two schedulers firing at once,
converges on exactly one transaction per due date.
"""

from datetime import date, datetime, timezone, tzinfo
from typing import Callable, Optional, Union
from uuid import UUID

import structlog

from taxledger.audit import AuditLogger, create_correlation_id
from taxledger.errors import NotFoundError, ValidationError, validated
from taxledger.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from taxledger.models.ledger import (
    ProcessOutcome,
    RecurringBatchResult,
    RecurringRule,
    RecurringRulePatch,
    RecurringRuleTemplate,
    RuleError,
    RuleProcessResult,
    TransactionStatus,
    UserTransaction,
    utcnow,
)
from taxledger.scheduling import first_occurrence_on_or_after, next_occurrence
from taxledger.services.storage import RecordNotFoundError, RecurringStorageInterface


logger = structlog.get_logger("taxledger.recurring")

# Patch fields that may be explicitly cleared with null
CLEARABLE_FIELDS = {"end_date", "category_id", "notes"}


class RecurringTransactionEngine:
    """
    Create, edit and process recurring rules.

    All owner-facing operations are scoped to `user_id`: a rule owned by
    someone else is reported as not found.
    """

    def __init__(
        self,
        storage: RecurringStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        tz: tzinfo = timezone.utc,
    ):
        """
        Args:
            storage: Rule and transaction store
            audit_logger: Optional audit trail
            clock: Returns the current aware datetime
            tz: Timezone whose calendar decides what "today" is
        """
        self._storage = storage
        self._audit_logger = audit_logger
        self._clock = clock
        self._tz = tz

    def _today(self) -> date:
        return self._clock().astimezone(self._tz).date()

    async def _audit(self, event: AuditEvent) -> None:
        if self._audit_logger:
            await self._audit_logger.log(event)

    async def _owned_rule(self, user_id: UUID, rule_id: UUID) -> RecurringRule:
        rule = await self._storage.get_rule(rule_id)
        if rule is None or rule.user_id != user_id:
            raise NotFoundError(f"Recurring rule not found: {rule_id}")
        return rule

    # =========================================================================
    # OWNER OPERATIONS
    # =========================================================================

    async def create(
        self,
        user_id: UUID,
        template: Union[RecurringRuleTemplate, dict],
    ) -> RecurringRule:
        """
        Create an active rule.

        `next_occurrence` is the first date of the rule's chain (anchored
        at start_date) that is today or later.

        Raises:
            ValidationError: Unknown frequency, bad amount or dates
        """
        template = validated(RecurringRuleTemplate, template)
        now = self._clock()

        rule = RecurringRule(
            user_id=user_id,
            **template.model_dump(),
            next_occurrence=first_occurrence_on_or_after(
                template.frequency, template.start_date, self._today()
            ),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        stored = await self._storage.create_rule(rule)

        logger.info(
            "recurring_rule_created",
            rule_id=str(stored.id),
            frequency=stored.frequency.value,
            next_occurrence=stored.next_occurrence.isoformat(),
        )
        await self._audit(AuditEventBuilder.recurring_rule_changed(
            AuditEventType.RECURRING_RULE_CREATED,
            rule_id=stored.id,
            user_id=user_id,
            changes={
                "frequency": stored.frequency.value,
                "amount": str(stored.amount),
                "next_occurrence": stored.next_occurrence.isoformat(),
            },
        ))
        return stored

    async def update(
        self,
        user_id: UUID,
        rule_id: UUID,
        patch: Union[RecurringRulePatch, dict],
    ) -> RecurringRule:
        """
        Apply a partial update.

        Changing frequency or start_date re-seeds next_occurrence.

        Raises:
            NotFoundError: Rule missing or owned by someone else
            ValidationError: Patch is invalid or leaves the rule invalid
        """
        patch = validated(RecurringRulePatch, patch)
        rule = await self._owned_rule(user_id, rule_id)

        changes = {
            field: value
            for field, value in patch.model_dump(exclude_unset=True).items()
            if value is not None or field in CLEARABLE_FIELDS
        }
        updated = validated(
            RecurringRule,
            {**rule.model_dump(), **changes, "updated_at": self._clock()},
        )
        if updated.end_date and updated.end_date < updated.start_date:
            raise ValidationError("End date cannot be before start date")
        if patch.reschedules:
            updated.next_occurrence = first_occurrence_on_or_after(
                updated.frequency, updated.start_date, self._today()
            )

        try:
            stored = await self._storage.update_rule(updated)
        except RecordNotFoundError as e:
            raise NotFoundError(f"Recurring rule not found: {rule_id}") from e

        await self._audit(AuditEventBuilder.recurring_rule_changed(
            AuditEventType.RECURRING_RULE_UPDATED,
            rule_id=rule_id,
            user_id=user_id,
            changes={field: str(value) for field, value in changes.items()},
        ))
        return stored

    async def delete(self, user_id: UUID, rule_id: UUID) -> None:
        """
        Delete a rule. Transactions it already produced are kept.

        Raises:
            NotFoundError: Rule missing or owned by someone else
        """
        await self._owned_rule(user_id, rule_id)
        if not await self._storage.delete_rule(rule_id):
            raise NotFoundError(f"Recurring rule not found: {rule_id}")

        await self._audit(AuditEventBuilder.recurring_rule_changed(
            AuditEventType.RECURRING_RULE_DELETED,
            rule_id=rule_id,
            user_id=user_id,
        ))

    async def set_active(self, user_id: UUID, rule_id: UUID, is_active: bool) -> RecurringRule:
        """
        Pause or resume a rule.

        Raises:
            NotFoundError: Rule missing or owned by someone else
        """
        await self._owned_rule(user_id, rule_id)
        if not await self._storage.set_rule_active(rule_id, is_active):
            raise NotFoundError(f"Recurring rule not found: {rule_id}")

        await self._audit(AuditEventBuilder.recurring_rule_changed(
            AuditEventType.RECURRING_RULE_UPDATED,
            rule_id=rule_id,
            user_id=user_id,
            changes={"is_active": is_active},
        ))
        return await self._owned_rule(user_id, rule_id)

    async def list_rules(self, user_id: UUID) -> list[RecurringRule]:
        return await self._storage.list_rules(user_id)

    # =========================================================================
    # PROCESSING
    # =========================================================================

    async def process_due(
        self,
        rule_id: UUID,
        user_id: Optional[UUID] = None,
        today: Optional[date] = None,
    ) -> RuleProcessResult:
        """
        Materialise the rule's current due date, if it is due.

        Args:
            rule_id: Rule to process
            user_id: When given, the rule must belong to this user
            today: Override for the local calendar date (batch runs)

        Returns:
            RuleProcessResult; inactive, expired and not-yet-due rules are
            successful no-ops

        Raises:
            NotFoundError: Rule missing (or not owned by `user_id`)
            StorageError: A store write failed; safe to retry
        """
        rule = await self._storage.get_rule(rule_id)
        if rule is None or (user_id is not None and rule.user_id != user_id):
            raise NotFoundError(f"Recurring rule not found: {rule_id}")

        today = today or self._today()

        if not rule.is_active:
            return RuleProcessResult(
                rule_id=rule_id,
                outcome=ProcessOutcome.INACTIVE,
                next_occurrence=rule.next_occurrence,
            )

        if rule.has_ended:
            await self._storage.set_rule_active(rule_id, False)
            logger.info("recurring_rule_expired", rule_id=str(rule_id))
            await self._audit(AuditEventBuilder.recurring_rule_expired(
                rule_id=rule_id,
                end_date=rule.end_date.isoformat(),
            ))
            return RuleProcessResult(
                rule_id=rule_id,
                outcome=ProcessOutcome.EXPIRED,
                next_occurrence=rule.next_occurrence,
            )

        if not rule.is_due(today):
            return RuleProcessResult(
                rule_id=rule_id,
                outcome=ProcessOutcome.NOT_DUE,
                next_occurrence=rule.next_occurrence,
            )

        now = self._clock()
        due_date = rule.next_occurrence

        outcome = await self._storage.insert_transaction(UserTransaction(
            user_id=rule.user_id,
            description=rule.description,
            amount=rule.amount,
            type=rule.type,
            category_id=rule.category_id,
            transaction_date=due_date,
            notes=rule.notes,
            is_recurring=True,
            recurring_id=rule.id,
            tax_year=due_date.year,
            status=TransactionStatus.COMPLETED,
            created_at=now,
        ))

        new_next = next_occurrence(rule.frequency, due_date)
        advanced = await self._storage.advance_rule(rule_id, due_date, new_next, now)
        if not advanced:
            # Another run advanced it first; report where it is now
            current = await self._storage.get_rule(rule_id)
            new_next = current.next_occurrence if current else new_next
            logger.info("recurring_rule_already_advanced", rule_id=str(rule_id))

        transaction = outcome.record
        logger.info(
            "recurring_transaction_materialized",
            rule_id=str(rule_id),
            due_date=due_date.isoformat(),
            created=outcome.inserted,
            advanced=advanced,
        )
        if transaction is not None:
            await self._audit_materialized(rule_id, transaction.id, due_date, new_next, outcome.inserted)

        return RuleProcessResult(
            rule_id=rule_id,
            outcome=ProcessOutcome.MATERIALIZED,
            transaction=transaction,
            created=outcome.inserted,
            advanced=advanced,
            next_occurrence=new_next,
        )

    async def _audit_materialized(
        self,
        rule_id: UUID,
        transaction_id: UUID,
        due_date: date,
        new_next: date,
        created: bool,
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_recurring_materialized(
                rule_id=rule_id,
                transaction_id=transaction_id,
                due_date=due_date.isoformat(),
                next_occurrence=new_next.isoformat(),
                created=created,
            )

    async def process_all_due(self, as_of: Optional[date] = None) -> RecurringBatchResult:
        """
        Process every active rule due on or before `as_of` (default today).

        Rules are independent: a failing rule is recorded in `errors` and
        the scan moves on.
        """
        as_of = as_of or self._today()
        correlation_id = create_correlation_id()
        rules = await self._storage.list_due_rules(as_of)
        result = RecurringBatchResult()

        logger.info("recurring_batch_started", due_rules=len(rules), as_of=as_of.isoformat())

        for rule in rules:
            try:
                processed = await self.process_due(rule.id, today=as_of)
            except Exception as e:
                logger.error("recurring_rule_failed", rule_id=str(rule.id), error=str(e))
                result.errors.append(RuleError(rule_id=rule.id, error=str(e)))
                if self._audit_logger:
                    await self._audit_logger.log_error(
                        error_type="recurring_rule_failed",
                        error_message=str(e),
                        details={"rule_id": str(rule.id)},
                        correlation_id=correlation_id,
                    )
                continue

            result.results.append(processed)
            if processed.created:
                result.created += 1
            if processed.advanced:
                result.updated += 1

        logger.info(
            "recurring_batch_completed",
            created=result.created,
            updated=result.updated,
            failed=len(result.errors),
        )
        return result
