"""
BUDGET LEDGER

Budget entries (one per allocation request) and the AnnualBudget rollup.

Write paths:
- record_budget: persist entry, then reconcile into the year rollup
- record_expense: expense row, then atomic increment of the entry's spent amount
- rebuild_annual_budget: explicit full recomputation of a year rollup
- reconcile_tenant_associations: explicit repair of entries whose
  reconciliation never completed

The rollup is the only document with several independent writers. Every
rollup write is conditional on the version that was read; losers re-read
and retry with backoff.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional
import asyncio
import logging

from procurement_core.document_store import (
    ANNUAL_BUDGETS,
    BUDGETS,
    EXPENSES,
    DocumentStore,
)
from procurement_core.errors import (
    NotFoundError,
    PersistenceError,
    ReconciliationConflictError,
    ValidationError,
    WriteConflictError,
)
from procurement_core.financial_precision import (
    FinancialPrecisionError,
    round_financial,
    to_decimal,
)
from procurement_core.models import (
    AnnualBudget,
    Budget,
    BudgetInput,
    Expense,
    TenantContext,
    new_id,
    utc_now,
)
from procurement_core.reconciliation import (
    annual_budget_key,
    find_rollup_discrepancies,
    merge_allocation,
    rebuild_annual_budget,
)

logger = logging.getLogger(__name__)


MESSAGES = {
    "name": "Budget name is required",
    "category": "Please select a category",
    "period": "Please select a period",
    "allocated_amount": "Please enter a valid amount",
    "start_date": "Start date is required",
    "end_date": "End date is required",
    "end_date_order": "End date must be after start date",
    "amount": "Please enter a valid amount",
}


def collect_budget_errors(data: BudgetInput) -> Dict[str, str]:
    errors: Dict[str, str] = {}

    if not data.name or not data.name.strip():
        errors["name"] = MESSAGES["name"]
    if not data.category:
        errors["category"] = MESSAGES["category"]
    if not data.period:
        errors["period"] = MESSAGES["period"]
    if data.allocated_amount is None or data.allocated_amount <= 0:
        errors["allocated_amount"] = MESSAGES["allocated_amount"]
    if data.start_date is None:
        errors["start_date"] = MESSAGES["start_date"]
    if data.end_date is None:
        errors["end_date"] = MESSAGES["end_date"]
    elif data.start_date is not None and data.start_date >= data.end_date:
        errors["end_date"] = MESSAGES["end_date_order"]

    return errors


@dataclass
class BudgetRecordResult:
    budget: Budget
    annual_budget: AnnualBudget


class BudgetLedger:
    """
    Tenant-scoped budget ledger with a concurrency-safe annual rollup.
    """

    MAX_RETRIES = 10
    RETRY_DELAY_MS = 20  # Base delay in milliseconds

    def __init__(
        self,
        store: DocumentStore,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None
    ):
        self.store = store
        self.max_retries = self.MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay_ms = self.RETRY_DELAY_MS if retry_delay_ms is None else retry_delay_ms

    # =========================================================================
    # READS
    # =========================================================================

    async def get_budget(self, ctx: TenantContext, budget_id: str) -> Budget:
        doc = await self.store.get(ctx.tenant_id, BUDGETS, budget_id)
        if doc is None:
            raise NotFoundError(BUDGETS, budget_id)
        return Budget.from_document(doc)

    async def list_budgets(self, ctx: TenantContext, year: Optional[int] = None) -> List[Budget]:
        filters = {"year": year} if year is not None else None
        docs = await self.store.query(ctx.tenant_id, BUDGETS, filters)
        return [Budget.from_document(doc) for doc in docs]

    async def get_annual_budget(self, ctx: TenantContext, year: int) -> Optional[AnnualBudget]:
        doc = await self.store.get(ctx.tenant_id, ANNUAL_BUDGETS, annual_budget_key(year))
        return AnnualBudget.from_document(doc) if doc else None

    # =========================================================================
    # RECORD BUDGET
    # =========================================================================

    def build_budget(self, ctx: TenantContext, data: BudgetInput) -> Budget:
        """Validate input and derive the entry. Raises ValidationError."""
        errors = collect_budget_errors(data)
        if errors:
            raise ValidationError(errors, entity="budget")

        now = utc_now()
        return Budget(
            id=new_id(),
            name=data.name.strip(),
            category=data.category,
            period=data.period,
            allocated_amount=round_financial(data.allocated_amount),
            spent=Decimal("0"),
            start_date=data.start_date,
            end_date=data.end_date,
            status=data.status,
            year=data.year if data.year is not None else data.start_date.year,
            reconciled=False,
            created_by=ctx.user_id,
            created_at=now,
            updated_at=now
        )

    async def record_budget(self, ctx: TenantContext, data: BudgetInput) -> BudgetRecordResult:
        """
        Persist a Budget entry and reconcile it into its year's rollup.

        The entry is written first and unconditionally; if reconciliation
        then fails the entry stays unreconciled and is picked up by
        reconcile_tenant_associations.
        """
        budget = self.build_budget(ctx, data)
        await self.store.put(ctx.tenant_id, BUDGETS, budget.id, budget.to_document())
        logger.info(
            f"[BUDGET_LEDGER] Recorded budget {budget.id} '{budget.name}' "
            f"{budget.category}/{budget.year} {budget.allocated_amount}"
        )

        annual = await self.reconcile(ctx, budget)
        budget = await self._mark_reconciled(ctx, budget)
        return BudgetRecordResult(budget=budget, annual_budget=annual)

    async def reconcile(self, ctx: TenantContext, budget: Budget) -> AnnualBudget:
        """
        Merge one entry into its year rollup with optimistic retry.

        Raises:
            ReconciliationConflictError: if every attempt lost a race
        """
        for attempt in range(self.max_retries):
            current = await self.get_annual_budget(ctx, budget.year)
            if current is not None and budget.id in current.reconciled_entries:
                logger.info(f"[BUDGET_LEDGER] Budget {budget.id} already in annual budget {budget.year}")
                return current

            updated = merge_allocation(current, budget)
            try:
                await self._write_rollup(ctx, current, updated)
            except WriteConflictError:
                logger.warning(
                    f"[BUDGET_LEDGER] Annual budget {budget.year} conflict for {budget.id}, "
                    f"retry {attempt + 1}/{self.max_retries}"
                )
                await asyncio.sleep(self.retry_delay_ms * (attempt + 1) / 1000)
                continue

            logger.info(
                f"[BUDGET_LEDGER] Annual budget {budget.year}: {budget.category} += "
                f"{budget.allocated_amount}, total {updated.total_amount}"
            )
            return updated

        logger.error(f"[BUDGET_LEDGER] Gave up reconciling {budget.id} into {budget.year}")
        raise ReconciliationConflictError(budget.year, budget.id, self.max_retries)

    # =========================================================================
    # EXPENSES
    # =========================================================================

    async def record_expense(
        self,
        ctx: TenantContext,
        budget_id: str,
        amount: Any,
        description: str = ""
    ) -> Budget:
        """
        Add `amount` to the entry's spent total and log an expense row.
        """
        try:
            value = round_financial(to_decimal(amount))
        except FinancialPrecisionError:
            raise ValidationError({"amount": MESSAGES["amount"]}, entity="expense")
        if value <= 0:
            raise ValidationError({"amount": MESSAGES["amount"]}, entity="expense")

        budget = await self.get_budget(ctx, budget_id)
        now = utc_now()

        expense = Expense(
            budget_id=budget_id,
            amount=value,
            category=budget.category,
            year=budget.year,
            description=description or f"Expense for {budget.name}",
            recorded_by=ctx.user_id,
            expense_date=now,
            created_at=now
        )
        # Expense row first: spent never moves without a row behind it
        await self.store.put(ctx.tenant_id, EXPENSES, expense.id, expense.model_dump())

        try:
            doc = await self.store.increment(
                ctx.tenant_id, BUDGETS, budget_id, "spent", value,
                set_fields={"updated_at": now}
            )
        except PersistenceError as e:
            logger.error(
                f"[BUDGET_LEDGER] Could not add {value} to spent on {budget_id}, "
                f"removing expense {expense.id}: {e}"
            )
            await self.store.delete(ctx.tenant_id, EXPENSES, expense.id)
            raise

        updated = Budget.from_document(doc)
        logger.info(f"[BUDGET_LEDGER] Expense {value} on budget {budget_id}, spent now {updated.spent}")
        return updated

    async def list_expenses(self, ctx: TenantContext, budget_id: str) -> List[Expense]:
        docs = await self.store.query(ctx.tenant_id, EXPENSES, {"budget_id": budget_id})
        return [Expense.model_validate(doc) for doc in docs]

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def rebuild_annual_budget(self, ctx: TenantContext, year: int) -> AnnualBudget:
        """
        Recompute a year rollup from every Budget entry of that year.
        """
        for attempt in range(self.max_retries):
            budgets = await self.list_budgets(ctx, year=year)
            current = await self.get_annual_budget(ctx, year)
            rebuilt = rebuild_annual_budget(year, budgets, existing=current)
            try:
                await self._write_rollup(ctx, current, rebuilt)
            except WriteConflictError:
                logger.warning(f"[BUDGET_LEDGER] Rebuild of {year} conflicted, retry {attempt + 1}")
                await asyncio.sleep(self.retry_delay_ms * (attempt + 1) / 1000)
                continue

            for budget in budgets:
                if not budget.reconciled:
                    await self._mark_reconciled(ctx, budget)

            logger.info(
                f"[BUDGET_LEDGER] Rebuilt annual budget {year} from {len(budgets)} entries, "
                f"total {rebuilt.total_amount}"
            )
            return rebuilt

        raise ReconciliationConflictError(year, "<rebuild>", self.max_retries)

    async def verify_annual_budget(self, ctx: TenantContext, year: int) -> Dict[str, Any]:
        """Report (never raise) rollup discrepancies for a year."""
        annual = await self.get_annual_budget(ctx, year)
        if annual is None:
            return {"year": year, "exists": False, "valid": True, "discrepancies": []}

        budgets = await self.list_budgets(ctx, year=year)
        discrepancies = find_rollup_discrepancies(annual, budgets)
        return {
            "year": year,
            "exists": True,
            "valid": not discrepancies,
            "discrepancies": discrepancies,
        }

    async def reconcile_tenant_associations(self, ctx: TenantContext) -> List[str]:
        """
        Reconcile every entry of the tenant still flagged as unreconciled.

        Idempotent: entries already listed in their rollup are only
        re-flagged, never added twice. Returns the ids that were repaired.
        """
        docs = await self.store.query(ctx.tenant_id, BUDGETS, {"reconciled": False})
        repaired: List[str] = []
        for doc in docs:
            budget = Budget.from_document(doc)
            await self.reconcile(ctx, budget)
            await self._mark_reconciled(ctx, budget)
            repaired.append(budget.id)

        if repaired:
            logger.info(f"[BUDGET_LEDGER] Repaired {len(repaired)} unreconciled budgets for {ctx.tenant_id}")
        return repaired

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _write_rollup(
        self,
        ctx: TenantContext,
        current: Optional[AnnualBudget],
        updated: AnnualBudget
    ) -> None:
        key = annual_budget_key(updated.year)
        if current is None:
            await self.store.insert(ctx.tenant_id, ANNUAL_BUDGETS, key, updated.to_document())
        else:
            await self.store.merge(
                ctx.tenant_id,
                ANNUAL_BUDGETS,
                key,
                updated.to_document(),
                expected={"version": current.version}
            )

    async def _mark_reconciled(self, ctx: TenantContext, budget: Budget) -> Budget:
        now = utc_now()
        await self.store.merge(
            ctx.tenant_id, BUDGETS, budget.id, {"reconciled": True, "updated_at": now}
        )
        return budget.model_copy(update={"reconciled": True, "updated_at": now})
