"""
Budget ledger: recording, concurrent reconciliation, expenses, maintenance
"""
import asyncio
from datetime import date
from decimal import Decimal

import pytest

from procurement_core.budget_ledger import BudgetLedger
from procurement_core.document_store import ANNUAL_BUDGETS, BUDGETS, InMemoryDocumentStore
from procurement_core.errors import (
    NotFoundError,
    PersistenceError,
    ReconciliationConflictError,
    ValidationError,
    WriteConflictError,
)
from procurement_core.models import BudgetInput
from procurement_core.reconciliation import annual_budget_key


def budget_input(category="IT", amount="1000", start_year=2025, **overrides):
    data = dict(
        name=f"{category} budget",
        category=category,
        period="Annual",
        allocated_amount=Decimal(amount),
        start_date=date(start_year, 1, 1),
        end_date=date(start_year, 12, 31),
    )
    data.update(overrides)
    return BudgetInput(**data)


class TestRecordBudget:
    """record_budget and the annual rollup"""

    def test_two_it_entries_accumulate(self, ledger, ctx):
        """IT 1000 + IT 500 in 2025 -> IT 1500, total 1500"""
        async def scenario():
            await ledger.record_budget(ctx, budget_input("IT", "1000"))
            await ledger.record_budget(ctx, budget_input("IT", "500"))
            return await ledger.get_annual_budget(ctx, 2025)

        annual = asyncio.run(scenario())
        assert annual.category_amount("IT") == Decimal("1500.00")
        assert annual.total_amount == Decimal("1500.00")
        assert len(annual.reconciled_entries) == 2

    def test_entry_is_marked_reconciled(self, ledger, ctx):
        async def scenario():
            result = await ledger.record_budget(ctx, budget_input())
            return result, await ledger.get_budget(ctx, result.budget.id)

        result, stored = asyncio.run(scenario())
        assert result.budget.reconciled is True
        assert stored.reconciled is True
        assert stored.year == 2025
        assert stored.created_by == "user-1"

    def test_explicit_year_overrides_start_date(self, ledger, ctx):
        result = asyncio.run(ledger.record_budget(ctx, budget_input(start_year=2025, year=2026)))
        assert result.budget.year == 2026
        assert result.annual_budget.year == 2026

    def test_rollups_are_per_tenant(self, ledger, ctx, other_ctx):
        async def scenario():
            await ledger.record_budget(ctx, budget_input("IT", "1000"))
            await ledger.record_budget(other_ctx, budget_input("IT", "7"))
            return await ledger.get_annual_budget(ctx, 2025), await ledger.get_annual_budget(other_ctx, 2025)

        mine, theirs = asyncio.run(scenario())
        assert mine.total_amount == Decimal("1000.00")
        assert theirs.total_amount == Decimal("7.00")

    def test_concurrent_entries_lose_nothing(self, ledger, ctx):
        amounts = ["100", "200", "300", "400", "500", "600"]
        categories = ["IT", "IT", "Marketing", "IT", "Shipping", "Marketing"]

        async def scenario():
            await asyncio.gather(*(
                ledger.record_budget(ctx, budget_input(category, amount))
                for category, amount in zip(categories, amounts)
            ))
            return await ledger.get_annual_budget(ctx, 2025)

        annual = asyncio.run(scenario())
        assert annual.total_amount == Decimal("2100.00")
        assert annual.category_amount("IT") == Decimal("700.00")
        assert annual.category_amount("Marketing") == Decimal("900.00")
        assert annual.category_amount("Shipping") == Decimal("500.00")
        assert len(annual.reconciled_entries) == 6
        assert asyncio.run(ledger.verify_annual_budget(ctx, 2025))["valid"] is True


class TestBudgetValidation:
    """Input rules"""

    def test_all_messages(self, ledger, ctx):
        with pytest.raises(ValidationError) as exc:
            asyncio.run(ledger.record_budget(ctx, BudgetInput()))
        assert exc.value.errors == {
            "name": "Budget name is required",
            "category": "Please select a category",
            "period": "Please select a period",
            "allocated_amount": "Please enter a valid amount",
            "start_date": "Start date is required",
            "end_date": "End date is required",
        }

    def test_end_before_start(self, ledger, ctx, store):
        bad = budget_input(start_date=date(2025, 6, 1), end_date=date(2025, 5, 1))
        with pytest.raises(ValidationError) as exc:
            asyncio.run(ledger.record_budget(ctx, bad))
        assert exc.value.errors == {"end_date": "End date must be after start date"}
        assert store.write_count == 0

    def test_non_positive_amount(self, ledger, ctx):
        with pytest.raises(ValidationError) as exc:
            asyncio.run(ledger.record_budget(ctx, budget_input(amount="0")))
        assert "allocated_amount" in exc.value.errors


class TestExpenses:
    """record_expense accumulates into spent"""

    def test_expenses_accumulate(self, ledger, ctx):
        async def scenario():
            budget = (await ledger.record_budget(ctx, budget_input(amount="1000"))).budget
            await ledger.record_expense(ctx, budget.id, "600")
            updated = await ledger.record_expense(ctx, budget.id, Decimal("200.50"), "Laptops")
            return updated, await ledger.list_expenses(ctx, budget.id)

        budget, expenses = asyncio.run(scenario())
        assert budget.spent == Decimal("800.50")
        assert budget.remaining == Decimal("199.50")
        assert budget.usage_level == "warning"
        assert sorted(e.amount for e in expenses) == [Decimal("200.50"), Decimal("600.00")]
        assert {e.category for e in expenses} == {"IT"}

    def test_concurrent_expenses(self, ledger, ctx):
        async def scenario():
            budget = (await ledger.record_budget(ctx, budget_input(amount="1000"))).budget
            await asyncio.gather(*(ledger.record_expense(ctx, budget.id, "100") for _ in range(10)))
            return await ledger.get_budget(ctx, budget.id)

        budget = asyncio.run(scenario())
        assert budget.spent == Decimal("1000.00")
        assert budget.usage_level == "error"

    def test_expense_does_not_touch_rollup(self, ledger, ctx):
        async def scenario():
            budget = (await ledger.record_budget(ctx, budget_input(amount="1000"))).budget
            await ledger.record_expense(ctx, budget.id, "10")
            return await ledger.get_annual_budget(ctx, 2025)

        assert asyncio.run(scenario()).total_amount == Decimal("1000.00")

    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    def test_invalid_amount(self, ledger, ctx, amount):
        with pytest.raises(ValidationError):
            asyncio.run(ledger.record_expense(ctx, "whatever", amount))

    def test_unknown_budget(self, ledger, ctx):
        with pytest.raises(NotFoundError):
            asyncio.run(ledger.record_expense(ctx, "missing", "10"))

    def test_failed_increment_leaves_no_expense_row(self, ctx):
        """spent and the expense rows stay in step when the increment fails"""
        class FailingIncrementStore(InMemoryDocumentStore):
            async def increment(self, *args, **kwargs):
                raise PersistenceError("connection reset")

        store = FailingIncrementStore()
        ledger = BudgetLedger(store, retry_delay_ms=1)

        async def scenario():
            budget = (await ledger.record_budget(ctx, budget_input(amount="1000"))).budget
            with pytest.raises(PersistenceError):
                await ledger.record_expense(ctx, budget.id, "250")
            return await ledger.get_budget(ctx, budget.id), await ledger.list_expenses(ctx, budget.id)

        budget, expenses = asyncio.run(scenario())
        assert budget.spent == Decimal("0")
        assert expenses == []


class TestMaintenance:
    """rebuild / verify / reconcile_tenant_associations"""

    def test_rebuild_repairs_drift(self, ledger, store, ctx):
        async def scenario():
            await ledger.record_budget(ctx, budget_input("IT", "1000"))
            await ledger.record_budget(ctx, budget_input("Marketing", "250"))
            await store.merge(ctx.tenant_id, ANNUAL_BUDGETS, annual_budget_key(2025), {"total_amount": Decimal("1")})
            before = await ledger.verify_annual_budget(ctx, 2025)
            rebuilt = await ledger.rebuild_annual_budget(ctx, 2025)
            after = await ledger.verify_annual_budget(ctx, 2025)
            return before, rebuilt, after

        before, rebuilt, after = asyncio.run(scenario())
        assert before["valid"] is False
        assert rebuilt.total_amount == Decimal("1250.00")
        assert after["valid"] is True

    def test_verify_missing_year(self, ledger, ctx):
        report = asyncio.run(ledger.verify_annual_budget(ctx, 1999))
        assert report == {"year": 1999, "exists": False, "valid": True, "discrepancies": []}

    def test_reconcile_tenant_associations_is_idempotent(self, ledger, store, ctx):
        """An entry persisted without its rollup update is repaired exactly once"""
        async def scenario():
            await ledger.record_budget(ctx, budget_input("IT", "1000"))
            orphan = ledger.build_budget(ctx, budget_input("IT", "300"))
            await store.put(ctx.tenant_id, BUDGETS, orphan.id, orphan.to_document())

            first = await ledger.reconcile_tenant_associations(ctx)
            second = await ledger.reconcile_tenant_associations(ctx)
            return orphan, first, second, await ledger.get_annual_budget(ctx, 2025)

        orphan, first, second, annual = asyncio.run(scenario())
        assert first == [orphan.id]
        assert second == []
        assert annual.category_amount("IT") == Decimal("1300.00")

    def test_reconcile_skips_entries_already_in_rollup(self, ledger, store, ctx):
        """Crash after the rollup write but before the flag: no double count"""
        async def scenario():
            result = await ledger.record_budget(ctx, budget_input("IT", "1000"))
            await store.merge(ctx.tenant_id, BUDGETS, result.budget.id, {"reconciled": False})
            repaired = await ledger.reconcile_tenant_associations(ctx)
            return repaired, await ledger.get_annual_budget(ctx, 2025)

        repaired, annual = asyncio.run(scenario())
        assert len(repaired) == 1
        assert annual.total_amount == Decimal("1000.00")

    def test_retry_exhaustion(self, store, ctx):
        class AlwaysConflicting(BudgetLedger):
            async def _write_rollup(self, ctx, current, updated):
                raise WriteConflictError(ANNUAL_BUDGETS, str(updated.year), {"version": 0})

        ledger = AlwaysConflicting(store, max_retries=3, retry_delay_ms=0)
        with pytest.raises(ReconciliationConflictError) as exc:
            asyncio.run(ledger.record_budget(ctx, budget_input()))
        assert exc.value.attempts == 3

        unreconciled = asyncio.run(store.query(ctx.tenant_id, BUDGETS, {"reconciled": False}))
        assert len(unreconciled) == 1

    def test_retry_settings(self, store):
        assert BudgetLedger(store).max_retries == BudgetLedger.MAX_RETRIES
        assert BudgetLedger(store, max_retries=0).max_retries == 0
        assert BudgetLedger(store, retry_delay_ms=0).retry_delay_ms == 0

    def test_zero_retries_leaves_entry_for_repair(self, store, ctx):
        ledger = BudgetLedger(store, max_retries=0)
        with pytest.raises(ReconciliationConflictError) as exc:
            asyncio.run(ledger.record_budget(ctx, budget_input()))
        assert exc.value.attempts == 0

        repaired = asyncio.run(BudgetLedger(store).reconcile_tenant_associations(ctx))
        assert len(repaired) == 1
