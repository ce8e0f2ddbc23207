"""
SUPPLIER NOTIFICATIONS

Builds the supplier-facing message for a lifecycle transition and hands it
to a NotificationSender with a bounded timeout.

Delivery is advisory: failures come back as a NotificationWarning value and
never as an exception, so a persisted transition is never unwound by a
mail problem.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional
import asyncio
import logging

from procurement_core.models import OrderStatus, PurchaseOrder, utc_now
from procurement_core.order_model import line_item_breakdown
from procurement_core.pdf_service import PurchaseOrderPDFGenerator

logger = logging.getLogger(__name__)

DEFAULT_SIGNATURE = "Our Company"


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass
class Attachment:
    filename: str
    content_type: str
    content: bytes
    summary: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationResult:
    success: bool
    message: str = ""
    provider_id: Optional[str] = None


@dataclass
class NotificationWarning:
    """Non-fatal notification problem attached to a successful transition."""
    code: str  # no_recipient | delivery_failed | timeout
    message: str
    recipient: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "recipient": self.recipient}


@dataclass
class SupplierMessage:
    status: str
    to: Optional[str]
    subject: str
    body: str
    attachment: Optional[Attachment] = None


class NotificationSender:
    """Outbound mail collaborator."""

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        attachment: Optional[Attachment] = None
    ) -> NotificationResult:
        raise NotImplementedError


# =============================================================================
# MESSAGE COMPOSITION
# =============================================================================

def _fmt_money(currency: str, value) -> str:
    return f"{currency} {value:.2f}"


def _fmt_date(value: Optional[date]) -> str:
    if value is None:
        return "N/A"
    return value.strftime("%B %d, %Y")


def build_attachment_summary(order: PurchaseOrder) -> Dict[str, Any]:
    return {
        "order_number": order.order_number,
        "supplier_name": order.supplier.name,
        "date": utc_now().isoformat(),
        "items": line_item_breakdown(order.items),
        "subtotal": order.subtotal,
        "tax": order.tax,
        "shipping": order.shipping,
        "total": order.total,
        "currency": order.currency,
    }


def _approved_body(order: PurchaseOrder) -> str:
    currency = order.currency
    lines = [
        f"We are pleased to inform you that Purchase Order {order.order_number} has been approved.",
        "",
        "Order Details:",
        f"Order Date: {_fmt_date(order.order_date)}",
        f"Expected Delivery Date: {_fmt_date(order.expected_delivery_date)}",
        f"Delivery Address: {order.delivery_address}",
        "",
        "Items:",
    ]
    for idx, row in enumerate(line_item_breakdown(order.items), start=1):
        lines.append(
            f"{idx}. {row['name']} - Quantity: {row['quantity']}, "
            f"Unit Price: {_fmt_money(currency, row['unit_price'])}, "
            f"Total: {_fmt_money(currency, row['total'])}"
        )
    lines += [
        "",
        f"Subtotal: {_fmt_money(currency, order.subtotal)}",
        f"Tax: {_fmt_money(currency, order.tax)}",
        f"Shipping: {_fmt_money(currency, order.shipping)}",
        f"Total: {_fmt_money(currency, order.total)}",
        "",
    ]
    if order.notes:
        lines += [f"Notes: {order.notes}", ""]
    lines += [
        "Please review this order carefully and confirm your acceptance.",
        "A copy of this order is attached for your records.",
    ]
    return "\n".join(lines)


def _sent_body(order: PurchaseOrder) -> str:
    return "\n".join([
        f"Purchase Order {order.order_number} has been sent to you.",
        "",
        f"The total amount is {_fmt_money(order.currency, order.total)}.",
        "",
        "Please review the order details and proceed accordingly.",
    ])


def _received_body(order: PurchaseOrder) -> str:
    return "\n".join([
        f"We wanted to inform you that Purchase Order {order.order_number} has been received by us.",
        "",
        "Order Details:",
        f"Order ID: {order.order_number}",
        f"Received Date: {_fmt_date(date.today())}",
        f"Original Order Date: {_fmt_date(order.order_date)}",
        "",
        "All items have been checked and verified as per our order specifications.",
        "Thank you for your prompt delivery and quality service.",
        "",
        "If you have any questions regarding this order, please contact our procurement department.",
    ])


BODY_BUILDERS = {
    OrderStatus.APPROVED.value: _approved_body,
    OrderStatus.SENT.value: _sent_body,
    OrderStatus.RECEIVED.value: _received_body,
}


def compose_supplier_message(
    order: PurchaseOrder,
    status: str,
    business_name: Optional[str] = None,
    pdf_generator: Optional[PurchaseOrderPDFGenerator] = None
) -> SupplierMessage:
    """
    Build subject, body and (for approvals) the summary attachment.
    """
    if status not in BODY_BUILDERS:
        raise ValueError(f"No supplier message for status '{status}'")

    body = "\n".join([
        f"Dear {order.supplier.name},",
        "",
        BODY_BUILDERS[status](order),
        "",
        "Regards,",
        business_name or DEFAULT_SIGNATURE,
    ])

    attachment = None
    if status == OrderStatus.APPROVED.value:
        summary = build_attachment_summary(order)
        generator = pdf_generator or PurchaseOrderPDFGenerator()
        attachment = Attachment(
            filename=generator.build_filename(summary),
            content_type="application/pdf",
            content=generator.generate_pdf(summary),
            summary=summary
        )

    return SupplierMessage(
        status=status,
        to=order.supplier.email,
        subject=f"Purchase Order {order.order_number} has been {status}",
        body=body,
        attachment=attachment
    )


# =============================================================================
# DELIVERY
# =============================================================================

class SupplierNotifier:
    """
    Compose and deliver supplier notifications with a bounded timeout.
    """

    NOTIFICATION_TIMEOUT_SECONDS = 10.0

    def __init__(
        self,
        sender: NotificationSender,
        timeout_seconds: Optional[float] = None,
        pdf_generator: Optional[PurchaseOrderPDFGenerator] = None
    ):
        self.sender = sender
        self.timeout_seconds = (
            self.NOTIFICATION_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self.pdf_generator = pdf_generator or PurchaseOrderPDFGenerator()

    async def notify(
        self,
        order: PurchaseOrder,
        status: str,
        business_name: Optional[str] = None
    ) -> Optional[NotificationWarning]:
        """
        Returns None when the sender confirmed delivery, otherwise a warning.
        """
        recipient = order.supplier.email
        if not recipient:
            logger.warning(
                f"[NOTIFY] No email for supplier '{order.supplier.name}' on {order.order_number}"
            )
            return NotificationWarning(
                code="no_recipient",
                message=f"Cannot send email: No email address found for supplier {order.supplier.name}"
            )

        try:
            result = await asyncio.wait_for(
                self._deliver(order, status, business_name),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"[NOTIFY] Timed out after {self.timeout_seconds}s sending {order.order_number} to {recipient}"
            )
            return NotificationWarning(
                code="timeout",
                message=f"Error sending email to {order.supplier.name}: timed out",
                recipient=recipient
            )
        except Exception as e:
            logger.warning(f"[NOTIFY] Failed sending {order.order_number} to {recipient}: {e}")
            return NotificationWarning(
                code="delivery_failed",
                message=f"Error sending email to {order.supplier.name}: {e}",
                recipient=recipient
            )

        if not result.success:
            logger.warning(
                f"[NOTIFY] Sender rejected {order.order_number} to {recipient}: {result.message}"
            )
            return NotificationWarning(
                code="delivery_failed",
                message=f"Error sending email to {order.supplier.name}: {result.message}",
                recipient=recipient
            )

        logger.info(f"[NOTIFY] Notification email sent to {order.supplier.name} ({recipient})")
        return None

    async def _deliver(
        self,
        order: PurchaseOrder,
        status: str,
        business_name: Optional[str]
    ) -> NotificationResult:
        # PDF rendering is CPU bound; keep it off the event loop and inside the timeout
        message = await asyncio.to_thread(
            compose_supplier_message,
            order, status, business_name=business_name, pdf_generator=self.pdf_generator
        )
        return await self.sender.send(message.to, message.subject, message.body, message.attachment)
