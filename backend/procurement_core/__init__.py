"""
Procurement core: purchase order lifecycle and budget reconciliation
"""
from .errors import (
    ProcurementError,
    ValidationError,
    PreconditionError,
    InvalidTransitionError,
    OrderLockedError,
    NotFoundError,
    PersistenceError,
    WriteConflictError,
    ReconciliationConflictError
)

from .financial_precision import (
    to_decimal,
    round_financial,
    safe_add,
    safe_multiply,
    calculate_line_total,
    calculate_order_totals,
    FinancialPrecisionError,
    NegativeValueError
)

from .models import (
    TenantContext,
    OrderStatus,
    BudgetCategory,
    BudgetPeriod,
    BudgetStatus,
    SupplierRef,
    OrderLineItem,
    OrderDraft,
    PurchaseOrder,
    BudgetInput,
    Budget,
    AnnualBudget,
    CategoryAllocation,
    Expense
)

from .document_store import (
    DocumentStore,
    InMemoryDocumentStore
)

from .notifications import (
    Attachment,
    NotificationResult,
    NotificationSender,
    NotificationWarning,
    SupplierNotifier
)

from .order_lifecycle import (
    OrderLifecycleEngine,
    TransitionResult,
    create_purchase_order_state_machine
)

from .budget_ledger import (
    BudgetLedger,
    BudgetRecordResult
)

__all__ = [
    # Errors
    'ProcurementError',
    'ValidationError',
    'PreconditionError',
    'InvalidTransitionError',
    'OrderLockedError',
    'NotFoundError',
    'PersistenceError',
    'WriteConflictError',
    'ReconciliationConflictError',
    # Financial Precision
    'to_decimal',
    'round_financial',
    'safe_add',
    'safe_multiply',
    'calculate_line_total',
    'calculate_order_totals',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Models
    'TenantContext',
    'OrderStatus',
    'BudgetCategory',
    'BudgetPeriod',
    'BudgetStatus',
    'SupplierRef',
    'OrderLineItem',
    'OrderDraft',
    'PurchaseOrder',
    'BudgetInput',
    'Budget',
    'AnnualBudget',
    'CategoryAllocation',
    'Expense',
    # Store
    'DocumentStore',
    'InMemoryDocumentStore',
    # Notifications
    'Attachment',
    'NotificationResult',
    'NotificationSender',
    'NotificationWarning',
    'SupplierNotifier',
    # Engines
    'OrderLifecycleEngine',
    'TransitionResult',
    'create_purchase_order_state_machine',
    'BudgetLedger',
    'BudgetRecordResult',
]
