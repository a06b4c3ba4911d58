"""
Tests for the recurring transaction engine.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest

from taxledger.errors import NotFoundError, ValidationError
from taxledger.models.ledger import (
    Frequency,
    ProcessOutcome,
    TransactionStatus,
    TransactionType,
    UserTransaction,
)
from taxledger.recurring import RecurringTransactionEngine


LAGOS = ZoneInfo("Africa/Lagos")


def template(**overrides) -> dict:
    data = {
        "description": "Rent set-aside",
        "amount": "25000",
        "type": "expense",
        "frequency": "monthly",
        "start_date": "2025-01-31",
    }
    data.update(overrides)
    return data


@pytest.fixture
def engine(recurring_storage, audit_logger, clock):
    clock.now = datetime(2025, 1, 31, 10, 0, tzinfo=LAGOS)
    return RecurringTransactionEngine(recurring_storage, audit_logger=audit_logger, clock=clock, tz=LAGOS)


class TestRuleLifecycle:
    """Tests for creating and editing rules."""

    async def test_create_seeds_next_occurrence(self, engine, user_id):
        """Test a rule starting today is due today."""
        rule = await engine.create(user_id, template())

        assert rule.is_active is True
        assert rule.next_occurrence == date(2025, 1, 31)
        assert rule.amount == Decimal("25000.00")
        assert rule.frequency == Frequency.MONTHLY

    async def test_create_with_past_start_does_not_backfill(self, engine, user_id):
        """Test a past start date is walked forward to today or later."""
        rule = await engine.create(user_id, template(frequency="weekly", start_date="2025-01-01"))
        assert rule.next_occurrence == date(2025, 2, 5)

    async def test_unknown_frequency(self, engine, user_id):
        """Test an unknown frequency is rejected at creation."""
        with pytest.raises(ValidationError) as exc_info:
            await engine.create(user_id, template(frequency="fortnightly"))
        assert "frequency" in str(exc_info.value)

    async def test_end_before_start(self, engine, user_id):
        """Test an end date before the start date is rejected."""
        with pytest.raises(ValidationError):
            await engine.create(user_id, template(end_date="2025-01-01"))

    async def test_non_positive_amount(self, engine, user_id):
        """Test that zero amounts are rejected."""
        with pytest.raises(ValidationError):
            await engine.create(user_id, template(amount="0"))

    async def test_update_fields(self, engine, user_id):
        """Test a partial update changes only what it names."""
        rule = await engine.create(user_id, template(end_date="2025-12-31"))

        updated = await engine.update(user_id, rule.id, {"amount": "30000", "notes": "raised"})

        assert updated.amount == Decimal("30000.00")
        assert updated.notes == "raised"
        assert updated.description == "Rent set-aside"
        assert updated.next_occurrence == rule.next_occurrence

    async def test_update_can_clear_end_date(self, engine, user_id):
        """Test that end_date can be explicitly removed."""
        rule = await engine.create(user_id, template(end_date="2025-12-31"))

        updated = await engine.update(user_id, rule.id, {"end_date": None})

        assert updated.end_date is None

    async def test_update_frequency_reschedules(self, engine, user_id):
        """Test that changing the frequency re-seeds next_occurrence."""
        rule = await engine.create(user_id, template(start_date="2025-01-01"))
        assert rule.next_occurrence == date(2025, 2, 1)

        updated = await engine.update(user_id, rule.id, {"frequency": "weekly"})

        assert updated.next_occurrence == date(2025, 2, 5)

    async def test_update_rejects_bad_patch(self, engine, user_id):
        """Test unknown fields and inverted dates are rejected."""
        rule = await engine.create(user_id, template())

        with pytest.raises(ValidationError):
            await engine.update(user_id, rule.id, {"colour": "red"})
        with pytest.raises(ValidationError):
            await engine.update(user_id, rule.id, {"end_date": "2024-12-31"})

    async def test_other_users_rule_is_not_found(self, engine, user_id):
        """Test a rule can only be touched by its owner."""
        rule = await engine.create(user_id, template())
        stranger = uuid4()

        with pytest.raises(NotFoundError):
            await engine.update(stranger, rule.id, {"amount": "1"})
        with pytest.raises(NotFoundError):
            await engine.delete(stranger, rule.id)
        with pytest.raises(NotFoundError):
            await engine.process_due(rule.id, user_id=stranger)

    async def test_delete_keeps_transactions(self, engine, recurring_storage, user_id):
        """Test deleting a rule leaves its materialised transactions behind, unlinked."""
        rule = await engine.create(user_id, template())
        result = await engine.process_due(rule.id, user_id=user_id)

        await engine.delete(user_id, rule.id)

        assert await recurring_storage.get_rule(rule.id) is None
        assert await recurring_storage.list_rule_transactions(rule.id) == []
        assert await engine.list_rules(user_id) == []
        assert result.transaction is not None

    async def test_pause_and_resume(self, engine, user_id):
        """Test a paused rule is skipped and resumes where it left off."""
        rule = await engine.create(user_id, template())

        paused = await engine.set_active(user_id, rule.id, False)
        skipped = await engine.process_due(rule.id)
        resumed = await engine.set_active(user_id, rule.id, True)
        processed = await engine.process_due(rule.id)

        assert paused.is_active is False
        assert skipped.outcome == ProcessOutcome.INACTIVE
        assert resumed.is_active is True
        assert processed.outcome == ProcessOutcome.MATERIALIZED


class TestProcessDue:
    """Tests for materialising due dates."""

    async def test_month_end_rule(self, engine, recurring_storage, user_id):
        """Test a Jan 31 monthly rule creates one transaction and moves to Feb 28."""
        rule = await engine.create(user_id, template())

        result = await engine.process_due(rule.id, user_id=user_id)

        assert result.outcome == ProcessOutcome.MATERIALIZED
        assert result.created is True
        assert result.advanced is True
        assert result.next_occurrence == date(2025, 2, 28)

        transactions = await recurring_storage.list_rule_transactions(rule.id)
        assert len(transactions) == 1
        transaction = transactions[0]
        assert transaction.transaction_date == date(2025, 1, 31)
        assert transaction.amount == Decimal("25000.00")
        assert transaction.type == TransactionType.EXPENSE
        assert transaction.is_recurring is True
        assert transaction.tax_year == 2025
        assert transaction.status == TransactionStatus.COMPLETED

        stored = await recurring_storage.get_rule(rule.id)
        assert stored.next_occurrence == date(2025, 2, 28)
        assert stored.last_processed_at is not None

    async def test_processing_again_same_day_is_noop(self, engine, recurring_storage, user_id):
        """Test the second call on the same day finds nothing due."""
        rule = await engine.create(user_id, template())

        await engine.process_due(rule.id)
        second = await engine.process_due(rule.id)

        assert second.outcome == ProcessOutcome.NOT_DUE
        assert len(await recurring_storage.list_rule_transactions(rule.id)) == 1

    async def test_catches_up_one_date_per_call(self, engine, recurring_storage, user_id):
        """Test a rule several periods behind advances one due date at a time."""
        rule = await engine.create(user_id, template())
        today = date(2025, 3, 31)

        dates = []
        for _ in range(4):
            result = await engine.process_due(rule.id, today=today)
            if result.outcome != ProcessOutcome.MATERIALIZED:
                break
            dates.append(result.transaction.transaction_date)

        assert dates == [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 28)]
        stored = await recurring_storage.get_rule(rule.id)
        assert stored.next_occurrence == date(2025, 4, 28)

    async def test_crash_between_writes_converges(self, engine, recurring_storage, user_id):
        """Test an already-inserted transaction is found, not duplicated, and the rule advances."""
        rule = await engine.create(user_id, template())
        await recurring_storage.insert_transaction(UserTransaction(
            user_id=user_id,
            description=rule.description,
            amount=rule.amount,
            type=rule.type,
            transaction_date=rule.next_occurrence,
            is_recurring=True,
            recurring_id=rule.id,
            tax_year=2025,
        ))

        result = await engine.process_due(rule.id)

        assert result.created is False
        assert result.advanced is True
        assert result.transaction is not None
        assert len(await recurring_storage.list_rule_transactions(rule.id)) == 1

    async def test_end_date_deactivates(self, engine, recurring_storage, user_id, audit_storage):
        """Test a rule whose next date is past its end date is switched off."""
        rule = await engine.create(user_id, template(end_date="2025-02-15"))

        first = await engine.process_due(rule.id, today=date(2025, 3, 1))
        second = await engine.process_due(rule.id, today=date(2025, 3, 1))

        assert first.outcome == ProcessOutcome.MATERIALIZED
        assert second.outcome == ProcessOutcome.EXPIRED
        stored = await recurring_storage.get_rule(rule.id)
        assert stored.is_active is False
        assert len(await recurring_storage.list_rule_transactions(rule.id)) == 1
        assert "recurring_rule_expired" in audit_storage.types()

    async def test_missing_rule(self, engine):
        """Test processing an unknown rule is not found."""
        with pytest.raises(NotFoundError):
            await engine.process_due(uuid4())

    async def test_local_calendar_decides_today(self, recurring_storage, clock, user_id):
        """Test that 23:30 UTC on Jan 30 is already Jan 31 in Lagos."""
        clock.now = datetime(2025, 1, 30, 23, 30, tzinfo=ZoneInfo("UTC"))
        engine = RecurringTransactionEngine(recurring_storage, clock=clock, tz=LAGOS)
        rule = await engine.create(user_id, template())

        result = await engine.process_due(rule.id)

        assert result.outcome == ProcessOutcome.MATERIALIZED


class TestBatchProcessing:
    """Tests for the scheduler's due-scan."""

    async def test_processes_only_due_rules(self, engine, user_id):
        """Test the batch materialises due rules and leaves future ones alone."""
        await engine.create(user_id, template())
        await engine.create(user_id, template(frequency="weekly"))
        await engine.create(user_id, template(start_date="2025-06-01"))

        result = await engine.process_all_due()

        assert result.created == 2
        assert result.updated == 2
        assert result.errors == []
        assert len(result.results) == 2

    async def test_failing_rule_is_isolated(self, engine, recurring_storage, user_id, monkeypatch, audit_storage):
        """Test one failing rule is reported and the others still run."""
        good = await engine.create(user_id, template())
        bad = await engine.create(user_id, template(description="Broken"))
        original = recurring_storage.insert_transaction

        async def insert_transaction(transaction):
            if transaction.recurring_id == bad.id:
                raise RuntimeError("disk full")
            return await original(transaction)

        monkeypatch.setattr(recurring_storage, "insert_transaction", insert_transaction)

        result = await engine.process_all_due()

        assert result.created == 1
        assert [e.rule_id for e in result.errors] == [bad.id]
        assert "disk full" in result.errors[0].error
        assert len(await recurring_storage.list_rule_transactions(good.id)) == 1
        assert "system_error" in audit_storage.types()
