"""
Error taxonomy for the procurement core.

- ValidationError: structured field -> message map, nothing written
- PreconditionError: transition or edit not permitted from the current status
- NotFoundError: the addressed record does not exist for the tenant
- PersistenceError: store unavailable or write conflict, surfaced to caller

Notification failures are NOT exceptions; see notifications.NotificationWarning.
"""

from typing import Dict, List, Optional


class ProcurementError(Exception):
    """Base exception for procurement core errors."""
    pass


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(ProcurementError):
    """Raised when a record fails validation. Carries field -> message map."""
    def __init__(self, errors: Dict[str, str], entity: str = "record"):
        self.errors = dict(errors)
        self.entity = entity
        fields = ", ".join(sorted(self.errors))
        super().__init__(f"Validation failed for {entity}: {fields}")


# =============================================================================
# PRECONDITIONS
# =============================================================================

class PreconditionError(ProcurementError):
    """Raised when an operation is not permitted in the record's current state."""
    pass


class InvalidTransitionError(PreconditionError):
    """Raised when attempting an event from a state that does not allow it."""
    def __init__(self, entity: str, from_state: str, event: str, allowed: Optional[List[str]] = None):
        self.entity = entity
        self.from_state = from_state
        self.event = event
        self.allowed = allowed or []

        allowed_str = f" Allowed events from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{event}' not permitted from '{from_state}'.{allowed_str}"
        super().__init__(message)


class OrderLockedError(PreconditionError):
    """Raised when editing or deleting an order outside its editable states."""
    def __init__(self, order_id: str, status: str, action: str = "edit"):
        self.order_id = order_id
        self.status = status
        self.action = action
        super().__init__(
            f"Purchase order {order_id} cannot {action} in status '{status}'"
        )


# =============================================================================
# LOOKUP
# =============================================================================

class NotFoundError(ProcurementError):
    """Raised when a record is missing for the given tenant."""
    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(f"{collection} {key} not found")


# =============================================================================
# PERSISTENCE
# =============================================================================

class PersistenceError(ProcurementError):
    """Raised when the document store fails. Never retried by the core."""
    pass


class WriteConflictError(PersistenceError):
    """Raised when a conditional write loses against a concurrent writer."""
    def __init__(self, collection: str, key: str, expected: Optional[dict] = None):
        self.collection = collection
        self.key = key
        self.expected = expected or {}
        super().__init__(f"Write conflict on {collection} {key} (expected {self.expected})")


class ReconciliationConflictError(PersistenceError):
    """Raised when the annual rollup could not be updated after max retries."""
    def __init__(self, year: int, budget_id: str, attempts: int):
        self.year = year
        self.budget_id = budget_id
        self.attempts = attempts
        super().__init__(
            f"Failed to reconcile budget {budget_id} into annual budget {year} "
            f"after {attempts} attempts"
        )
