"""
ORDER RECORD MODEL

Pure computation over purchase order drafts. No I/O.

- Line item normalization (display name fallback, line total recompute)
- Subtotal / total derivation
- Validation rules for create / submit / edit

All functions are idempotent: normalizing or validating the same draft
twice yields identical results.
"""

from typing import Dict, List, NamedTuple
from decimal import Decimal
import logging

from procurement_core.errors import ValidationError
from procurement_core.financial_precision import OrderTotals, calculate_order_totals
from procurement_core.models import OrderDraft, OrderLineItem

logger = logging.getLogger(__name__)

UNNAMED_PRODUCT = "Unnamed Product"

# Field -> message, as shown next to the offending input
MESSAGES = {
    "supplier": "Please select a supplier",
    "expected_delivery_date": "Please select an expected delivery date",
    "items": "Please add at least one item",
}


class ValidatedOrder(NamedTuple):
    draft: OrderDraft
    subtotal: Decimal
    total: Decimal


def resolve_item_name(item: OrderLineItem) -> str:
    """Explicit name, then catalog product name, then the placeholder."""
    for candidate in (item.name, item.product_name):
        if candidate and candidate.strip():
            return candidate.strip()
    return UNNAMED_PRODUCT


def normalize_line_item(item: OrderLineItem) -> OrderLineItem:
    data = item.model_dump()
    data["name"] = resolve_item_name(item)
    # Re-validation recomputes line_total from quantity and unit_price
    return OrderLineItem.model_validate(data)


def normalize_order(draft: OrderDraft) -> OrderDraft:
    data = draft.model_dump()
    data["items"] = [normalize_line_item(item).model_dump() for item in draft.items]
    return OrderDraft.model_validate(data)


def calculate_totals(draft: OrderDraft) -> OrderTotals:
    return calculate_order_totals(
        (item.line_total for item in draft.items),
        tax=draft.tax,
        shipping=draft.shipping
    )


def collect_validation_errors(draft: OrderDraft) -> Dict[str, str]:
    """Return field -> message for every failed rule (empty when valid)."""
    errors: Dict[str, str] = {}

    if not draft.supplier.id or not draft.supplier.id.strip():
        errors["supplier"] = MESSAGES["supplier"]

    if draft.expected_delivery_date is None:
        errors["expected_delivery_date"] = MESSAGES["expected_delivery_date"]

    if not draft.items:
        errors["items"] = MESSAGES["items"]

    return errors


def validate_order(draft: OrderDraft) -> ValidatedOrder:
    """
    Normalize and validate a draft.

    Returns:
        ValidatedOrder with the normalized draft and derived totals

    Raises:
        ValidationError with every failing field
    """
    errors = collect_validation_errors(draft)
    if errors:
        logger.debug(f"[ORDER_MODEL] Validation failed: {sorted(errors)}")
        raise ValidationError(errors, entity="purchase_order")

    normalized = normalize_order(draft)
    totals = calculate_totals(normalized)
    return ValidatedOrder(draft=normalized, subtotal=totals.subtotal, total=totals.total)


def line_item_breakdown(items: List[OrderLineItem]) -> List[dict]:
    """Name / quantity / unit price / total rows used by supplier messages."""
    return [
        {
            "name": resolve_item_name(item),
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "total": item.line_total,
        }
        for item in items
    ]
