"""
ORDER LIFECYCLE ENGINE

Purchase order state machine and the operations that drive it.

States: draft → pending_approval → approved → sent → received
        any non-terminal state → cancelled

Rules:
- Header fields change only through save_draft / submit_for_approval while
  the stored order is a draft; the write is conditional on that status
- Every write is conditional on the (status, version) that was read
- Validation and precondition failures happen before any write
- Supplier notifications run after the write and are advisory
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from procurement_core.atomic_numbering import AtomicDocumentNumbering
from procurement_core.document_store import DocumentStore, PURCHASE_ORDERS
from procurement_core.errors import (
    NotFoundError,
    OrderLockedError,
    WriteConflictError,
)
from procurement_core.models import (
    DELETABLE_STATUSES,
    OrderDraft,
    OrderedBy,
    OrderStatus,
    PurchaseOrder,
    TenantContext,
    new_id,
    utc_now,
)
from procurement_core.notifications import NotificationWarning, SupplierNotifier
from procurement_core.order_model import validate_order
from procurement_core.state_machine import StateMachine

logger = logging.getLogger(__name__)


# =============================================================================
# EVENTS
# =============================================================================

SAVE_DRAFT = "save_draft"
SUBMIT_FOR_APPROVAL = "submit_for_approval"
APPROVE = "approve"
SEND_TO_SUPPLIER = "send_to_supplier"
MARK_RECEIVED = "mark_received"
CANCEL = "cancel"

DRAFT = OrderStatus.DRAFT.value
PENDING_APPROVAL = OrderStatus.PENDING_APPROVAL.value
APPROVED = OrderStatus.APPROVED.value
SENT = OrderStatus.SENT.value
RECEIVED = OrderStatus.RECEIVED.value
CANCELLED = OrderStatus.CANCELLED.value

# Status-specific timestamp / actor fields written with the transition
_TRANSITION_STAMPS = {
    APPROVED: ("approved_at", "approved_by"),
    SENT: ("sent_at", None),
    RECEIVED: ("received_at", None),
    CANCELLED: ("cancelled_at", None),
}


def create_purchase_order_state_machine() -> StateMachine:
    """
    States: draft → pending_approval → approved → sent → received, plus cancelled.
    """
    machine = StateMachine("purchase_order", status_field="status")

    machine.register(SAVE_DRAFT, [DRAFT], DRAFT, description="Save as draft")
    machine.register(SUBMIT_FOR_APPROVAL, [DRAFT], PENDING_APPROVAL, description="Submit for approval")
    machine.register(APPROVE, [PENDING_APPROVAL], APPROVED, notify=True, description="Approve")
    machine.register(SEND_TO_SUPPLIER, [APPROVED], SENT, notify=True, description="Send to supplier")
    machine.register(MARK_RECEIVED, [SENT], RECEIVED, notify=True, description="Mark received")
    machine.register(
        CANCEL,
        [DRAFT, PENDING_APPROVAL, APPROVED, SENT],
        CANCELLED,
        description="Cancel from any non-terminal state"
    )
    machine.mark_terminal(RECEIVED, CANCELLED)

    return machine


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class TransitionResult:
    """Outcome of a successful lifecycle operation."""
    order: PurchaseOrder
    event: str
    from_state: Optional[str]
    to_state: str
    notification_attempted: bool = False
    warnings: List[NotificationWarning] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "success",
            "event": self.event,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "order": self.order.model_dump(),
            "notification_attempted": self.notification_attempted,
            "warnings": [w.to_dict() for w in self.warnings],
        }


# =============================================================================
# ENGINE
# =============================================================================

class OrderLifecycleEngine:
    """
    Applies lifecycle events to purchase orders stored in a DocumentStore.
    """

    def __init__(
        self,
        store: DocumentStore,
        notifier: SupplierNotifier,
        numbering: Optional[AtomicDocumentNumbering] = None,
        machine: Optional[StateMachine] = None
    ):
        self.store = store
        self.notifier = notifier
        self.numbering = numbering or AtomicDocumentNumbering(store)
        self.machine = machine or create_purchase_order_state_machine()

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, ctx: TenantContext, order_id: str) -> PurchaseOrder:
        doc = await self.store.get(ctx.tenant_id, PURCHASE_ORDERS, order_id)
        if doc is None:
            raise NotFoundError(PURCHASE_ORDERS, order_id)
        return PurchaseOrder.from_document(doc)

    async def list_orders(self, ctx: TenantContext, status: Optional[str] = None) -> List[PurchaseOrder]:
        filters = {"status": status} if status else None
        docs = await self.store.query(ctx.tenant_id, PURCHASE_ORDERS, filters)
        orders = [PurchaseOrder.from_document(doc) for doc in docs]
        return sorted(orders, key=lambda o: o.order_number)

    def available_events(self, order: PurchaseOrder) -> List[str]:
        return self.machine.get_allowed_events(order.status)

    # =========================================================================
    # HEADER OPERATIONS (draft only)
    # =========================================================================

    async def save_draft(
        self,
        ctx: TenantContext,
        draft: OrderDraft,
        order_id: Optional[str] = None
    ) -> TransitionResult:
        """Create a new draft, or replace the header of an existing draft."""
        if order_id is None:
            return await self._create(ctx, draft, SAVE_DRAFT, DRAFT)
        return await self._edit(ctx, order_id, draft, SAVE_DRAFT)

    async def submit_for_approval(
        self,
        ctx: TenantContext,
        order_id: Optional[str] = None,
        draft: Optional[OrderDraft] = None
    ) -> TransitionResult:
        """
        Submit an order for approval.

        - draft only: create directly in pending_approval
        - order_id + draft: edit the stored draft and submit in one write
        - order_id only: submit the stored draft as is (re-validated)
        """
        if order_id is None:
            if draft is None:
                raise ValueError("submit_for_approval needs an order_id or a draft")
            return await self._create(ctx, draft, SUBMIT_FOR_APPROVAL, PENDING_APPROVAL)
        if draft is not None:
            return await self._edit(ctx, order_id, draft, SUBMIT_FOR_APPROVAL)
        return await self._transition(ctx, order_id, SUBMIT_FOR_APPROVAL)

    # =========================================================================
    # STATUS OPERATIONS
    # =========================================================================

    async def approve(self, ctx: TenantContext, order_id: str) -> TransitionResult:
        return await self._transition(ctx, order_id, APPROVE)

    async def send_to_supplier(self, ctx: TenantContext, order_id: str) -> TransitionResult:
        return await self._transition(ctx, order_id, SEND_TO_SUPPLIER)

    async def mark_received(self, ctx: TenantContext, order_id: str) -> TransitionResult:
        return await self._transition(ctx, order_id, MARK_RECEIVED)

    async def cancel(self, ctx: TenantContext, order_id: str) -> TransitionResult:
        return await self._transition(ctx, order_id, CANCEL)

    async def delete_order(self, ctx: TenantContext, order_id: str) -> PurchaseOrder:
        """
        Physically remove an order. Only draft and pending_approval orders.
        """
        order = await self.get_order(ctx, order_id)
        if order.status not in DELETABLE_STATUSES:
            raise OrderLockedError(order_id, order.status, action="delete")

        try:
            await self.store.delete(
                ctx.tenant_id,
                PURCHASE_ORDERS,
                order_id,
                expected={"status": order.status, "version": order.version}
            )
        except WriteConflictError:
            current = await self.get_order(ctx, order_id)
            if current.status not in DELETABLE_STATUSES:
                raise OrderLockedError(order_id, current.status, action="delete")
            raise

        logger.info(f"[ORDER_LIFECYCLE] Deleted {order.order_number} ({order.status}) by {ctx.user_id}")
        return order

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _create(
        self,
        ctx: TenantContext,
        draft: OrderDraft,
        event: str,
        target: str
    ) -> TransitionResult:
        validated = validate_order(draft)

        order_number, _ = await self.numbering.generate_document_number(ctx.tenant_id)
        now = utc_now()

        data = validated.draft.model_dump()
        data.update({
            "id": new_id(),
            "order_number": order_number,
            "ordered_by": OrderedBy(user_id=ctx.user_id).model_dump(),
            "status": target,
            "subtotal": validated.subtotal,
            "total": validated.total,
            "version": 1,
            "state_history": [self.machine.get_history_entry(None, target, event, ctx.user_id)],
            "created_at": now,
            "updated_at": now,
        })
        order = PurchaseOrder.model_validate(data)

        await self.store.insert(ctx.tenant_id, PURCHASE_ORDERS, order.id, order.to_document())

        logger.info(f"[ORDER_LIFECYCLE] Created {order.order_number} as '{target}' by {ctx.user_id}")
        return TransitionResult(order=order, event=event, from_state=None, to_state=target)

    async def _edit(
        self,
        ctx: TenantContext,
        order_id: str,
        draft: OrderDraft,
        event: str
    ) -> TransitionResult:
        order = await self.get_order(ctx, order_id)
        if not order.is_editable:
            raise OrderLockedError(order_id, order.status, action="edit")

        transition = self.machine.resolve(event, order.status)
        validated = validate_order(draft)

        update = validated.draft.model_dump()
        update.update({
            "subtotal": validated.subtotal,
            "total": validated.total,
            "version": order.version + 1,
        })
        update.update(self.machine.get_status_update(transition.target))
        if transition.target != order.status:
            update["state_history"] = self._history_with(order, transition.target, event, ctx)

        updated = await self._conditional_write(ctx, order, update, event, header_edit=True)

        logger.info(
            f"[ORDER_LIFECYCLE] {order.order_number}: header saved via '{event}' "
            f"('{order.status}' -> '{transition.target}')"
        )
        return TransitionResult(order=updated, event=event, from_state=order.status, to_state=transition.target)

    async def _transition(self, ctx: TenantContext, order_id: str, event: str) -> TransitionResult:
        order = await self.get_order(ctx, order_id)
        transition = self.machine.resolve(event, order.status)

        if event == SUBMIT_FOR_APPROVAL:
            # Stored drafts may be incomplete; non-draft orders may not
            validate_order(order.header())

        update = self.machine.get_status_update(transition.target)
        update["version"] = order.version + 1
        update["state_history"] = self._history_with(order, transition.target, event, ctx)

        stamp_field, actor_field = _TRANSITION_STAMPS.get(transition.target, (None, None))
        if stamp_field:
            update[stamp_field] = update["updated_at"]
        if actor_field:
            update[actor_field] = ctx.user_id

        updated = await self._conditional_write(ctx, order, update, event)

        logger.info(
            f"[ORDER_LIFECYCLE] {order.order_number}: '{order.status}' -> '{transition.target}' "
            f"by {ctx.user_id}"
        )

        result = TransitionResult(
            order=updated,
            event=event,
            from_state=order.status,
            to_state=transition.target
        )

        if transition.notify:
            warning = await self.notifier.notify(updated, transition.target, ctx.business_name)
            result.notification_attempted = warning is None or warning.code != "no_recipient"
            if warning is not None:
                result.warnings.append(warning)

        return result

    def _history_with(
        self,
        order: PurchaseOrder,
        to_state: str,
        event: str,
        ctx: TenantContext
    ) -> List[Dict[str, Any]]:
        history = [entry.model_dump() for entry in order.state_history]
        history.append(self.machine.get_history_entry(order.status, to_state, event, ctx.user_id))
        return history

    async def _conditional_write(
        self,
        ctx: TenantContext,
        order: PurchaseOrder,
        update: Dict[str, Any],
        event: str,
        header_edit: bool = False
    ) -> PurchaseOrder:
        """
        Merge `update` only if the stored (status, version) still match.

        On a lost race the order is re-read: a status change becomes a
        precondition failure, anything else stays a WriteConflictError.
        """
        try:
            await self.store.merge(
                ctx.tenant_id,
                PURCHASE_ORDERS,
                order.id,
                update,
                expected={"status": order.status, "version": order.version}
            )
        except WriteConflictError:
            current = await self.get_order(ctx, order.id)
            logger.warning(
                f"[ORDER_LIFECYCLE] Conflict on {order.order_number} '{event}': "
                f"read v{order.version}/{order.status}, now v{current.version}/{current.status}"
            )
            if current.status != order.status:
                if header_edit and not current.is_editable:
                    raise OrderLockedError(order.id, current.status, action="edit")
                self.machine.resolve(event, current.status)
            raise

        data = order.to_document()
        data.update(update)
        return PurchaseOrder.model_validate(data)
