"""
ATOMIC ORDER NUMBERING

Provides:
1. Per-tenant sequence via atomic server-side increment
2. Human-readable order numbers (PO-000001)
3. Uniqueness re-check against existing orders
4. Collision retry mechanism
"""

from datetime import datetime, timezone
from typing import Tuple
import logging
import asyncio

from procurement_core.document_store import (
    DocumentStore,
    DOCUMENT_SEQUENCES,
    PURCHASE_ORDERS,
)
from procurement_core.errors import PersistenceError

logger = logging.getLogger(__name__)


class SequenceCollisionError(PersistenceError):
    """Raised when sequence collision occurs after max retries"""
    pass


class AtomicDocumentNumbering:
    """
    Atomic document number generator with collision protection.

    Uses the store's atomic increment for sequence generation and
    re-checks the generated number before handing it out.
    """

    MAX_RETRIES = 5
    RETRY_DELAY_MS = 100  # Base delay in milliseconds

    def __init__(self, store: DocumentStore, prefix: str = "PO"):
        self.store = store
        self.prefix = prefix

    async def get_next_sequence(self, tenant_id: str) -> int:
        """
        Get next atomic sequence number.
        Returns the NEW sequence number after increment.
        """
        record = await self.store.increment(
            tenant_id,
            DOCUMENT_SEQUENCES,
            self.prefix,
            "current_sequence",
            1,
            set_fields={"updated_at": datetime.now(timezone.utc)}
        )
        return int(record["current_sequence"])

    def format_number(self, sequence: int) -> str:
        return f"{self.prefix}-{sequence:06d}"

    async def generate_document_number(self, tenant_id: str) -> Tuple[str, int]:
        """
        Generate a unique order number with retry on collision.

        Returns:
            tuple: (order_number, sequence_number)

        Raises:
            SequenceCollisionError: If max retries exceeded
        """
        for attempt in range(self.MAX_RETRIES):
            sequence = await self.get_next_sequence(tenant_id)
            order_number = self.format_number(sequence)

            # Rarely triggers: only if orders were imported with explicit numbers
            existing = await self.store.query(
                tenant_id, PURCHASE_ORDERS, {"order_number": order_number}
            )
            if existing:
                logger.warning(f"Order number collision: {order_number}, retry {attempt + 1}")
                await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)
                continue

            logger.info(f"Generated order number: {order_number}")
            return order_number, sequence

        raise SequenceCollisionError(
            f"Failed to generate unique order number after {self.MAX_RETRIES} attempts"
        )
