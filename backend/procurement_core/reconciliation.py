"""
ANNUAL BUDGET RECONCILIATION

Pure functions that fold Budget entries into the per-year rollup.

LOCKED RULES:
- A new entry ADDS its allocation to its category (never overwrites)
- Unknown categories are appended
- total_amount is recomputed from the category list on every merge
- An entry already listed in reconciled_entries is not added again

Because merging is a sum keyed by entry id, replaying any set of entries
in any order yields the same rollup.
"""

from typing import Iterable, List, Optional, Dict, Any
from datetime import datetime
import logging

from procurement_core.financial_precision import round_financial, safe_add
from procurement_core.models import AnnualBudget, Budget, CategoryAllocation, utc_now

logger = logging.getLogger(__name__)


def annual_budget_key(year: int) -> str:
    """Rollup key within a tenant namespace."""
    return str(year)


def merge_allocation(
    annual: Optional[AnnualBudget],
    budget: Budget,
    now: Optional[datetime] = None
) -> AnnualBudget:
    """
    Return the rollup with `budget` merged in. Does not mutate `annual`.
    """
    now = now or utc_now()

    if annual is None:
        return AnnualBudget(
            id=annual_budget_key(budget.year),
            year=budget.year,
            total_amount=round_financial(budget.allocated_amount),
            categories=[CategoryAllocation(name=budget.category, amount=round_financial(budget.allocated_amount))],
            reconciled_entries=[budget.id],
            version=1,
            created_at=now,
            updated_at=now
        )

    if annual.year != budget.year:
        raise ValueError(f"Budget {budget.id} belongs to {budget.year}, not {annual.year}")

    if budget.id in annual.reconciled_entries:
        return annual

    categories = [c.model_copy() for c in annual.categories]
    for category in categories:
        if category.name == budget.category:
            category.amount = round_financial(safe_add(category.amount, budget.allocated_amount))
            break
    else:
        categories.append(
            CategoryAllocation(name=budget.category, amount=round_financial(budget.allocated_amount))
        )

    return AnnualBudget(
        id=annual.id,
        year=annual.year,
        total_amount=round_financial(safe_add(*(c.amount for c in categories))),
        categories=categories,
        reconciled_entries=list(annual.reconciled_entries) + [budget.id],
        version=annual.version + 1,
        created_at=annual.created_at,
        updated_at=now
    )


def rebuild_annual_budget(
    year: int,
    budgets: Iterable[Budget],
    existing: Optional[AnnualBudget] = None
) -> AnnualBudget:
    """
    Recompute the rollup from scratch out of every entry of `year`.

    Keeps identity, creation time and version lineage of `existing`.
    """
    now = utc_now()
    rebuilt: Optional[AnnualBudget] = None
    for budget in sorted((b for b in budgets if b.year == year), key=lambda b: b.id):
        rebuilt = merge_allocation(rebuilt, budget, now=now)

    if rebuilt is None:
        rebuilt = AnnualBudget(id=annual_budget_key(year), year=year, created_at=now, updated_at=now)

    if existing is not None:
        rebuilt = rebuilt.model_copy(update={
            "version": existing.version + 1,
            "created_at": existing.created_at,
        })
    return rebuilt


def find_rollup_discrepancies(annual: AnnualBudget, budgets: Iterable[Budget]) -> List[Dict[str, Any]]:
    """
    Compare a stored rollup with the entries it claims to contain.

    Returns one dict per violated rule (empty list when consistent).
    """
    discrepancies: List[Dict[str, Any]] = []

    categories_total = annual.categories_total()
    if round_financial(annual.total_amount) != categories_total:
        discrepancies.append({
            "type": "TOTAL_MISMATCH",
            "total_amount": annual.total_amount,
            "categories_total": categories_total,
        })

    names = [c.name for c in annual.categories]
    if len(names) != len(set(names)):
        discrepancies.append({"type": "DUPLICATE_CATEGORY", "categories": names})

    reconciled = set(annual.reconciled_entries)
    expected: Dict[str, Any] = {}
    for budget in budgets:
        if budget.year == annual.year and budget.id in reconciled:
            expected[budget.category] = safe_add(expected.get(budget.category, 0), budget.allocated_amount)

    for name in set(expected) | set(names):
        want = round_financial(expected.get(name, 0))
        have = round_financial(annual.category_amount(name))
        if want != have:
            discrepancies.append({
                "type": "CATEGORY_MISMATCH",
                "category": name,
                "expected": want,
                "actual": have,
            })

    if discrepancies:
        logger.warning(f"[RECONCILIATION] Annual budget {annual.year}: {len(discrepancies)} discrepancies")
    return discrepancies
