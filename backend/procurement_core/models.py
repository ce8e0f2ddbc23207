from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from bson import ObjectId

from procurement_core.financial_precision import (
    calculate_line_total,
    percentage_of,
    round_financial,
    safe_add,
)


def new_id() -> str:
    """Store-independent record id (ObjectId hex, as the Mongo adapter expects)."""
    return str(ObjectId())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


# ============================================
# TENANT CONTEXT
# ============================================
class TenantContext(BaseModel):
    """Caller scope supplied by the identity layer. Never authenticated here."""
    tenant_id: str
    user_id: str
    business_name: Optional[str] = None


# ============================================
# ENUMERATIONS
# ============================================
class OrderStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    SENT = "sent"
    RECEIVED = "received"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.RECEIVED.value, OrderStatus.CANCELLED.value})
EDITABLE_STATUSES = frozenset({OrderStatus.DRAFT.value})
DELETABLE_STATUSES = frozenset({OrderStatus.DRAFT.value, OrderStatus.PENDING_APPROVAL.value})


class BudgetCategory(str, Enum):
    INVENTORY = "Inventory"
    RAW_MATERIALS = "Raw Materials"
    OFFICE_SUPPLIES = "Office Supplies"
    PRODUCTION = "Production"
    IT = "IT"
    MARKETING = "Marketing"
    SHIPPING = "Shipping"
    OTHER = "Other"


class BudgetPeriod(str, Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    SEMI_ANNUAL = "Semi-Annual"
    ANNUAL = "Annual"


class BudgetStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"


# ============================================
# PURCHASE ORDER MODELS
# ============================================
class SupplierRef(BaseModel):
    id: str = ""
    name: str = ""
    email: Optional[EmailStr] = None

    @field_validator("email", mode="before")
    @classmethod
    def _blank_email(cls, value):
        return _blank_to_none(value)


class OrderedBy(BaseModel):
    user_id: str
    name: Optional[str] = None


class OrderLineItem(BaseModel):
    id: str = Field(default_factory=new_id)
    product_id: Optional[str] = None
    product_name: Optional[str] = None  # catalog name, display fallback
    name: str = ""
    description: str = ""
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    line_total: Decimal = Decimal("0")  # derived, input ignored

    @field_validator("unit_price", mode="after")
    @classmethod
    def _price_to_cents(cls, value):
        return round_financial(value)

    @model_validator(mode="after")
    def _recompute_line_total(self):
        self.line_total = calculate_line_total(self.quantity, self.unit_price)
        return self


class OrderDraft(BaseModel):
    """
    Editable header and line items of a purchase order.

    This is the only input shape the lifecycle engine accepts for field
    edits, and it is only accepted while the stored order is a draft.
    """
    supplier: SupplierRef = Field(default_factory=SupplierRef)
    order_date: date = Field(default_factory=date.today)
    expected_delivery_date: Optional[date] = None
    delivery_address: str = ""
    items: List[OrderLineItem] = Field(default_factory=list)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    shipping: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "USD"
    budget_category: Optional[BudgetCategory] = None
    notes: str = ""

    class Config:
        use_enum_values = True

    @field_validator("budget_category", "expected_delivery_date", mode="before")
    @classmethod
    def _blank_optional(cls, value):
        return _blank_to_none(value)

    @field_validator("tax", "shipping", mode="after")
    @classmethod
    def _charges_to_cents(cls, value):
        return round_financial(value)


HEADER_FIELDS = tuple(OrderDraft.model_fields)


class StateHistoryEntry(BaseModel):
    from_state: Optional[str] = None
    to_state: str
    event: str
    transitioned_at: datetime = Field(default_factory=utc_now)
    transitioned_by: Optional[str] = None


class PurchaseOrder(OrderDraft):
    id: str = Field(default_factory=new_id)
    order_number: str
    ordered_by: OrderedBy
    status: OrderStatus = OrderStatus.DRAFT.value
    subtotal: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    version: int = 0
    state_history: List[StateHistoryEntry] = Field(default_factory=list)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def header(self) -> OrderDraft:
        return OrderDraft.model_validate(self.model_dump(include=set(HEADER_FIELDS)))

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="python")

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PurchaseOrder":
        return cls.model_validate(doc)


# ============================================
# BUDGET MODELS
# ============================================
class BudgetInput(BaseModel):
    """Allocation request as entered by a user; validated by the ledger."""
    name: str = ""
    category: Optional[BudgetCategory] = None
    period: Optional[BudgetPeriod] = None
    allocated_amount: Decimal = Decimal("0")
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: BudgetStatus = BudgetStatus.DRAFT.value
    year: Optional[int] = None  # overrides year of start_date

    class Config:
        use_enum_values = True

    @field_validator("category", "period", "start_date", "end_date", mode="before")
    @classmethod
    def _blank_optional(cls, value):
        return _blank_to_none(value)


class Budget(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    category: BudgetCategory
    period: BudgetPeriod
    allocated_amount: Decimal
    spent: Decimal = Decimal("0")
    start_date: date
    end_date: date
    status: BudgetStatus = BudgetStatus.DRAFT.value
    year: int
    reconciled: bool = False
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Config:
        use_enum_values = True

    @property
    def remaining(self) -> Decimal:
        return round_financial(self.allocated_amount - self.spent)

    @property
    def usage_level(self) -> str:
        """success below 75% used, warning below 90%, error otherwise."""
        percent_used = percentage_of(self.spent, self.allocated_amount)
        if percent_used >= 90:
            return "error"
        if percent_used >= 75:
            return "warning"
        return "success"

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="python")

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Budget":
        return cls.model_validate(doc)


class CategoryAllocation(BaseModel):
    name: str
    amount: Decimal = Decimal("0")


class AnnualBudget(BaseModel):
    id: str
    year: int
    total_amount: Decimal = Decimal("0")
    categories: List[CategoryAllocation] = Field(default_factory=list)
    reconciled_entries: List[str] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def category_amount(self, name: str) -> Decimal:
        for category in self.categories:
            if category.name == name:
                return category.amount
        return Decimal("0")

    def categories_total(self) -> Decimal:
        return round_financial(safe_add(*(c.amount for c in self.categories)))

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="python")

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "AnnualBudget":
        return cls.model_validate(doc)


class Expense(BaseModel):
    id: str = Field(default_factory=new_id)
    budget_id: str
    amount: Decimal
    category: Optional[str] = None
    year: int
    description: str = ""
    recorded_by: Optional[str] = None
    expense_date: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
