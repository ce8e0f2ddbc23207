"""
Order lifecycle engine: creation, transitions, header gating, concurrency,
supplier notifications
"""
import asyncio
from decimal import Decimal

import pytest

from procurement_core.document_store import PURCHASE_ORDERS
from procurement_core.errors import (
    InvalidTransitionError,
    NotFoundError,
    OrderLockedError,
    PreconditionError,
    ValidationError,
    WriteConflictError,
)
from procurement_core.models import OrderDraft, OrderLineItem, SupplierRef
from procurement_core.notifications import SupplierNotifier
from procurement_core.order_lifecycle import OrderLifecycleEngine


async def _pending(engine, ctx, draft):
    result = await engine.submit_for_approval(ctx, draft=draft)
    return result.order


async def _approved(engine, ctx, draft):
    order = await _pending(engine, ctx, draft)
    return (await engine.approve(ctx, order.id)).order


async def _sent(engine, ctx, draft):
    order = await _approved(engine, ctx, draft)
    return (await engine.send_to_supplier(ctx, order.id)).order


class TestEndToEnd:
    """Full lifecycle scenarios"""

    def test_create_submit_approve(self, engine, sender, ctx, draft):
        """Two items (3 @ 10, 1 @ 25), tax 5, shipping 10 -> 55 / 70; approve notifies"""
        async def scenario():
            created = await engine.save_draft(ctx, draft)
            assert created.order.status == "draft"
            assert created.order.subtotal == Decimal("55.00")
            assert created.order.total == Decimal("70.00")

            submitted = await engine.submit_for_approval(ctx, order_id=created.order.id)
            assert submitted.order.status == "pending_approval"

            approved = await engine.approve(ctx, created.order.id)
            return approved

        result = asyncio.run(scenario())

        assert result.order.status == "approved"
        assert result.order.approved_by == "user-1"
        assert result.order.approved_at is not None
        assert result.notification_attempted is True
        assert result.warnings == []

        assert len(sender.calls) == 1
        call = sender.calls[0]
        assert call["to"] == "orders@boltnut.com"
        assert call["subject"] == f"Purchase Order {result.order.order_number} has been approved"
        assert len(call["attachment"].summary["items"]) == 2
        assert call["attachment"].content.startswith(b"%PDF")
        print(f"Approved {result.order.order_number}, attachment {call['attachment'].filename}")

    def test_full_path_to_received(self, engine, sender, ctx, draft):
        async def scenario():
            order = await _sent(engine, ctx, draft)
            return await engine.mark_received(ctx, order.id)

        result = asyncio.run(scenario())

        assert result.order.status == "received"
        assert result.order.sent_at is not None
        assert result.order.received_at is not None
        assert [c["subject"].rsplit(" ", 1)[-1] for c in sender.calls] == ["approved", "sent", "received"]
        events = [h.event for h in result.order.state_history]
        assert events == ["submit_for_approval", "approve", "send_to_supplier", "mark_received"]
        assert result.order.version == 4

    def test_mark_received_on_draft_rejected(self, engine, store, ctx, draft):
        """Mark Received from draft is a precondition failure and changes nothing"""
        async def scenario():
            created = await engine.save_draft(ctx, draft)
            with pytest.raises(PreconditionError):
                await engine.mark_received(ctx, created.order.id)
            return await engine.get_order(ctx, created.order.id)

        order = asyncio.run(scenario())
        assert order.status == "draft"
        assert order.version == 1

    def test_submit_without_supplier_and_items_writes_nothing(self, engine, store, sender, ctx):
        """Validation error lists supplier and items; no document or sequence written"""
        draft = OrderDraft(supplier=SupplierRef(), items=[])

        with pytest.raises(ValidationError) as exc:
            asyncio.run(engine.submit_for_approval(ctx, draft=draft))

        assert "supplier" in exc.value.errors
        assert "items" in exc.value.errors
        assert store.write_count == 0
        assert asyncio.run(store.query(ctx.tenant_id, PURCHASE_ORDERS)) == []
        assert sender.calls == []


class TestCreation:
    """Draft creation and numbering"""

    def test_order_numbers_are_sequential_per_tenant(self, engine, ctx, other_ctx, draft):
        async def scenario():
            first = await engine.save_draft(ctx, draft)
            second = await engine.save_draft(ctx, draft)
            other = await engine.save_draft(other_ctx, draft)
            return first.order, second.order, other.order

        first, second, other = asyncio.run(scenario())
        assert first.order_number == "PO-000001"
        assert second.order_number == "PO-000002"
        assert other.order_number == "PO-000001"

    def test_concurrent_creates_get_distinct_numbers(self, engine, ctx, draft):
        async def scenario():
            return await asyncio.gather(*(engine.save_draft(ctx, draft) for _ in range(5)))

        results = asyncio.run(scenario())
        numbers = sorted(r.order.order_number for r in results)
        assert numbers == [f"PO-00000{i}" for i in range(1, 6)]

    def test_number_collision_skips_taken_number(self, engine, store, ctx, draft):
        """Imported order already holds PO-000001"""
        async def scenario():
            await store.put(ctx.tenant_id, PURCHASE_ORDERS, "imported", {"order_number": "PO-000001"})
            return await engine.numbering.generate_document_number(ctx.tenant_id)

        assert asyncio.run(scenario()) == ("PO-000002", 2)

    def test_tenants_are_isolated(self, engine, ctx, other_ctx, draft):
        created = asyncio.run(engine.save_draft(ctx, draft))
        with pytest.raises(NotFoundError):
            asyncio.run(engine.get_order(other_ctx, created.order.id))

    def test_ordered_by_and_history_recorded(self, engine, ctx, draft):
        order = asyncio.run(engine.save_draft(ctx, draft)).order
        assert order.ordered_by.user_id == "user-1"
        assert order.state_history[0].from_state is None
        assert order.state_history[0].to_state == "draft"

    def test_list_orders_by_status(self, engine, ctx, draft):
        async def scenario():
            await engine.save_draft(ctx, draft)
            await engine.submit_for_approval(ctx, draft=draft)
            return await engine.list_orders(ctx, status="pending_approval")

        orders = asyncio.run(scenario())
        assert [o.order_number for o in orders] == ["PO-000002"]


class TestHeaderEditGate:
    """Header fields only change while the stored order is a draft"""

    def test_draft_edit_recomputes_totals(self, engine, ctx, draft):
        async def scenario():
            created = await engine.save_draft(ctx, draft)
            edited = draft.model_copy(update={
                "items": [OrderLineItem(name="Flange", quantity=2, unit_price=Decimal("7.50"))],
                "tax": Decimal("0"),
                "shipping": Decimal("0"),
            })
            return await engine.save_draft(ctx, edited, order_id=created.order.id)

        result = asyncio.run(scenario())
        assert result.order.status == "draft"
        assert result.order.subtotal == Decimal("15.00")
        assert result.order.total == Decimal("15.00")
        assert result.order.version == 2

    def test_edit_after_submit_rejected_but_transitions_continue(self, engine, ctx, draft):
        async def scenario():
            order = await _pending(engine, ctx, draft)
            edited = draft.model_copy(update={"notes": "changed"})
            with pytest.raises(OrderLockedError):
                await engine.save_draft(ctx, edited, order_id=order.id)
            with pytest.raises(OrderLockedError):
                await engine.submit_for_approval(ctx, order_id=order.id, draft=edited)
            return await engine.approve(ctx, order.id)

        result = asyncio.run(scenario())
        assert result.order.status == "approved"
        assert result.order.notes == "Deliver before noon"

    def test_invalid_edit_leaves_stored_draft(self, engine, ctx, draft):
        async def scenario():
            created = await engine.save_draft(ctx, draft)
            with pytest.raises(ValidationError):
                await engine.save_draft(ctx, draft.model_copy(update={"items": []}), order_id=created.order.id)
            return await engine.get_order(ctx, created.order.id)

        order = asyncio.run(scenario())
        assert len(order.items) == 2
        assert order.version == 1

    def test_edit_racing_submit_loses(self, engine, ctx, draft):
        """The store rejects the header write once the submit landed first"""
        async def scenario():
            created = await engine.save_draft(ctx, draft)
            edited = draft.model_copy(update={"notes": "late change"})
            return await asyncio.gather(
                engine.submit_for_approval(ctx, order_id=created.order.id),
                engine.save_draft(ctx, edited, order_id=created.order.id),
                return_exceptions=True
            )

        submitted, edit = asyncio.run(scenario())
        assert submitted.order.status == "pending_approval"
        assert isinstance(edit, OrderLockedError)
        assert submitted.order.notes == "Deliver before noon"


class TestTransitions:
    """Status operations"""

    def test_cancel_from_each_non_terminal_state(self, engine, sender, ctx, draft):
        async def scenario():
            draft_order = (await engine.save_draft(ctx, draft)).order
            pending = await _pending(engine, ctx, draft)
            approved = await _approved(engine, ctx, draft)
            sent = await _sent(engine, ctx, draft)
            calls_before = len(sender.calls)
            results = [await engine.cancel(ctx, o.id) for o in (draft_order, pending, approved, sent)]
            return results, calls_before

        results, calls_before = asyncio.run(scenario())
        assert all(r.order.status == "cancelled" for r in results)
        assert all(r.order.cancelled_at is not None for r in results)
        assert len(sender.calls) == calls_before

    def test_terminal_orders_reject_everything(self, engine, ctx, draft):
        async def scenario():
            order = await _pending(engine, ctx, draft)
            await engine.cancel(ctx, order.id)
            for op in (engine.approve, engine.send_to_supplier, engine.mark_received, engine.cancel):
                with pytest.raises(InvalidTransitionError):
                    await op(ctx, order.id)
            return await engine.get_order(ctx, order.id)

        assert asyncio.run(scenario()).status == "cancelled"

    def test_submit_stored_incomplete_draft_fails_validation(self, engine, store, ctx, draft):
        async def scenario():
            created = await engine.save_draft(ctx, draft)
            await store.merge(ctx.tenant_id, PURCHASE_ORDERS, created.order.id, {"items": []})
            with pytest.raises(ValidationError):
                await engine.submit_for_approval(ctx, order_id=created.order.id)
            return await engine.get_order(ctx, created.order.id)

        assert asyncio.run(scenario()).status == "draft"

    def test_concurrent_approve_only_one_wins(self, engine, sender, ctx, draft):
        async def scenario():
            order = await _pending(engine, ctx, draft)
            return await asyncio.gather(
                engine.approve(ctx, order.id),
                engine.approve(ctx, order.id),
                return_exceptions=True
            )

        first, second = asyncio.run(scenario())
        assert first.order.status == "approved"
        assert isinstance(second, InvalidTransitionError)
        assert len(sender.calls) == 1

    def test_version_conflict_without_status_change(self, engine, store, ctx, draft):
        """Same status, newer version: surfaced as a write conflict"""
        async def scenario():
            order = await _pending(engine, ctx, draft)
            original_get = engine.get_order
            reads = {"n": 0}

            async def stale_then_bump(c, order_id):
                current = await original_get(c, order_id)
                reads["n"] += 1
                if reads["n"] == 1:
                    await store.merge(c.tenant_id, PURCHASE_ORDERS, order_id, {"version": current.version + 1})
                return current

            engine.get_order = stale_then_bump
            with pytest.raises(WriteConflictError):
                await engine.approve(ctx, order.id)

        asyncio.run(scenario())


class TestDelete:
    """Physical deletion"""

    def test_delete_draft_and_pending(self, engine, ctx, draft):
        async def scenario():
            a = (await engine.save_draft(ctx, draft)).order
            b = await _pending(engine, ctx, draft)
            await engine.delete_order(ctx, a.id)
            await engine.delete_order(ctx, b.id)
            return await engine.list_orders(ctx)

        assert asyncio.run(scenario()) == []

    def test_delete_after_approval_rejected(self, engine, ctx, draft):
        async def scenario():
            order = await _approved(engine, ctx, draft)
            with pytest.raises(OrderLockedError) as exc:
                await engine.delete_order(ctx, order.id)
            assert exc.value.action == "delete"
            return await engine.get_order(ctx, order.id)

        assert asyncio.run(scenario()).status == "approved"


class TestNotificationWarnings:
    """Notification problems never undo a transition"""

    def test_no_supplier_email(self, engine, sender, ctx, draft):
        no_email = draft.model_copy(update={"supplier": SupplierRef(id="sup-2", name="Walk-in Supplier")})

        async def scenario():
            order = await _pending(engine, ctx, no_email)
            return await engine.approve(ctx, order.id)

        result = asyncio.run(scenario())
        assert result.order.status == "approved"
        assert result.notification_attempted is False
        assert [w.code for w in result.warnings] == ["no_recipient"]
        assert sender.calls == []

    def test_sender_exception(self, engine, sender, ctx, draft):
        sender.fail_with = ConnectionError("relay down")

        async def scenario():
            order = await _pending(engine, ctx, draft)
            result = await engine.approve(ctx, order.id)
            return result, await engine.get_order(ctx, order.id)

        result, stored = asyncio.run(scenario())
        assert stored.status == "approved"
        assert result.notification_attempted is True
        assert result.warnings[0].code == "delivery_failed"
        assert "relay down" in result.warnings[0].message

    def test_sender_rejection(self, engine, sender, ctx, draft):
        sender.reject_message = "mailbox full"

        async def scenario():
            order = await _approved(engine, ctx, draft)
            return await engine.send_to_supplier(ctx, order.id)

        result = asyncio.run(scenario())
        assert result.order.status == "sent"
        assert result.warnings[0].code == "delivery_failed"

    def test_sender_timeout(self, store, sender, ctx, draft):
        sender.delay = 1
        engine = OrderLifecycleEngine(store, SupplierNotifier(sender, timeout_seconds=0.05))

        async def scenario():
            order = await _pending(engine, ctx, draft)
            return await engine.approve(ctx, order.id)

        result = asyncio.run(scenario())
        assert result.order.status == "approved"
        assert result.warnings[0].code == "timeout"
        assert result.to_dict()["warnings"][0]["recipient"] == "orders@boltnut.com"
