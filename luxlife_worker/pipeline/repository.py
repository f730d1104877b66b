"""
Order persistence.

`OrderRepository` is the seam the workflow engine talks to.  Two backends:
  - SupabaseOrderRepository: the `orders` table via the service-role client
  - InMemoryOrderRepository: local dict, for tests and single-process runs

Guards against duplicate trigger delivery are compare-and-set updates:
the write only lands if the row still holds the expected value.
"""

import asyncio
import logging
from typing import Optional, Protocol

from supabase import Client, create_client

from luxlife_worker.config import get_settings
from .models import CreditStatus, Order, OrderStatus, utcnow

logger = logging.getLogger(__name__)

ORDERS_TABLE = "orders"

# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def get_service_client() -> Client:
    """Lazy-init Supabase client using the service role key."""
    global _service_client
    if _service_client is None:
        settings = get_settings()
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(settings.supabase_url, settings.supabase_service_role_key)
    return _service_client


class OrderRepository(Protocol):
    async def create(self, order: Order) -> None:
        """Insert a new order row."""

    async def get(self, order_id: str) -> Optional[Order]:
        """Fetch an order, or None if it does not exist."""

    async def save(self, order: Order) -> None:
        """Persist the workflow-owned fields of the order."""

    async def compare_and_set_status(
        self, order_id: str, expected: OrderStatus, new: OrderStatus
    ) -> bool:
        """Move status from `expected` to `new`; False if the row held something else."""

    async def compare_and_set_credit(
        self, order_id: str, expected: CreditStatus, new: CreditStatus
    ) -> bool:
        """Move credit_status from `expected` to `new`; False if the row held something else."""


# ═════════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryOrderRepository:
    """Store orders in local memory. Data is lost on restart."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> None:
        async with self._lock:
            self._orders[order.id] = order.model_copy(deep=True)

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def save(self, order: Order) -> None:
        async with self._lock:
            stored = self._orders.get(order.id)
            if stored is None:
                logger.warning(f"[{order.id}] save on unknown order ignored")
                return
            order.updated_at = utcnow()
            # Input fields stay as they were created.
            self._orders[order.id] = stored.model_copy(
                update={
                    "status": order.status,
                    "credit_status": order.credit_status,
                    "pipeline": order.pipeline.model_copy(deep=True),
                    "video_url": order.video_url,
                    "error_code": order.error_code,
                    "error_message": order.error_message,
                    "updated_at": order.updated_at,
                }
            )

    async def compare_and_set_status(
        self, order_id: str, expected: OrderStatus, new: OrderStatus
    ) -> bool:
        async with self._lock:
            stored = self._orders.get(order_id)
            if stored is None or stored.status != expected:
                return False
            stored.status = new
            stored.updated_at = utcnow()
            return True

    async def compare_and_set_credit(
        self, order_id: str, expected: CreditStatus, new: CreditStatus
    ) -> bool:
        async with self._lock:
            stored = self._orders.get(order_id)
            if stored is None or stored.credit_status != expected:
                return False
            stored.credit_status = new
            stored.updated_at = utcnow()
            return True


# ═════════════════════════════════════════════════════════════════════════════
# Supabase backend
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseOrderRepository:
    """
    Orders stored in Supabase.  The client is synchronous, so every query
    runs in a worker thread to keep other orders' tasks moving.
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        return self._client or get_service_client()

    def _table(self):
        return self.client.table(ORDERS_TABLE)

    async def create(self, order: Order) -> None:
        row = order.model_dump(mode="json")
        await asyncio.to_thread(lambda: self._table().insert(row).execute())

    async def get(self, order_id: str) -> Optional[Order]:
        result = await asyncio.to_thread(
            lambda: self._table().select("*").eq("id", order_id).limit(1).execute()
        )
        if not result.data:
            return None
        return Order.from_row(result.data[0])

    async def save(self, order: Order) -> None:
        order.updated_at = utcnow()
        update = order.mutable_fields()
        await asyncio.to_thread(
            lambda: self._table().update(update).eq("id", order.id).execute()
        )

    async def compare_and_set_status(
        self, order_id: str, expected: OrderStatus, new: OrderStatus
    ) -> bool:
        update = {"status": new.value, "updated_at": utcnow().isoformat()}
        result = await asyncio.to_thread(
            lambda: self._table()
            .update(update)
            .eq("id", order_id)
            .eq("status", expected.value)
            .execute()
        )
        return bool(result.data)

    async def compare_and_set_credit(
        self, order_id: str, expected: CreditStatus, new: CreditStatus
    ) -> bool:
        update = {"credit_status": new.value, "updated_at": utcnow().isoformat()}
        result = await asyncio.to_thread(
            lambda: self._table()
            .update(update)
            .eq("id", order_id)
            .eq("credit_status", expected.value)
            .execute()
        )
        return bool(result.data)
