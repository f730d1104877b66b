"""
Credit Ledger — one credit per order.

  debit()  : read balance → fail closed if ≤ 0 → write balance - 1
  credit() : refund one credit; best-effort, never raises

The Supabase backend has no multi-statement transactions over PostgREST, so
the read-check-write is a compare-and-swap: the update only lands when
`credit_balance` still equals the value we read, otherwise we re-read and
try again.  Every successful mutation is also recorded in
`credit_transactions`.
"""

import asyncio
import json
import logging
from typing import Optional, Protocol

from supabase import Client

from .errors import InsufficientCredits, UserProfileMissing
from .models import utcnow
from .repository import get_service_client

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
TRANSACTIONS_TABLE = "credit_transactions"

MAX_CAS_ATTEMPTS = 5


def _as_balance(value) -> Optional[int]:
    """Profiles written by older clients may hold the balance as a string."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class CreditLedger(Protocol):
    async def debit(self, user_id: str, order_id: Optional[str] = None) -> int:
        """Take one credit; returns the new balance."""

    async def credit(self, user_id: str, order_id: Optional[str] = None) -> bool:
        """Give one credit back; True if the balance was updated."""

    async def balance(self, user_id: str) -> Optional[int]:
        """Current balance, or None without a profile."""


# ═════════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryCreditLedger:
    def __init__(self, balances: Optional[dict[str, int]] = None):
        self._balances: dict[str, int] = dict(balances or {})
        self._lock = asyncio.Lock()
        self.transactions: list[dict] = []

    async def debit(self, user_id: str, order_id: Optional[str] = None) -> int:
        async with self._lock:
            if user_id not in self._balances:
                raise UserProfileMissing()
            current = self._balances[user_id]
            if current <= 0:
                raise InsufficientCredits()
            self._balances[user_id] = current - 1
            self.transactions.append(
                {"user_id": user_id, "amount": -1, "balance_after": current - 1, "job_id": order_id}
            )
            return current - 1

    async def credit(self, user_id: str, order_id: Optional[str] = None) -> bool:
        async with self._lock:
            if user_id not in self._balances:
                logger.warning(f"Refund skipped: no profile for user {user_id}")
                return False
            self._balances[user_id] += 1
            self.transactions.append(
                {"user_id": user_id, "amount": 1, "balance_after": self._balances[user_id], "job_id": order_id}
            )
            return True

    async def balance(self, user_id: str) -> Optional[int]:
        async with self._lock:
            return self._balances.get(user_id)


# ═════════════════════════════════════════════════════════════════════════════
# Supabase backend
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseCreditLedger:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        return self._client or get_service_client()

    # ── Sync helpers (run in a worker thread) ────────────────────────────

    def _read_balance(self, user_id: str) -> Optional[int]:
        result = (
            self.client.table(PROFILES_TABLE)
            .select("credit_balance")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        balance = _as_balance(result.data[0].get("credit_balance"))
        return balance if balance is not None else 0

    def _swap_balance(self, user_id: str, seen: int, new: int) -> bool:
        result = (
            self.client.table(PROFILES_TABLE)
            .update({"credit_balance": new, "updated_at": utcnow().isoformat()})
            .eq("id", user_id)
            .eq("credit_balance", seen)
            .execute()
        )
        return bool(result.data)

    def _record(self, user_id: str, amount: int, balance_after: int, reason: str, order_id: Optional[str]):
        try:
            self.client.table(TRANSACTIONS_TABLE).insert({
                "user_id": user_id,
                "amount": amount,
                "balance_after": balance_after,
                "reason": reason,
                "job_id": order_id,
                "metadata": json.dumps({"type": "order"}),
            }).execute()
        except Exception as e:
            # The balance is already correct; the log row is bookkeeping only.
            logger.warning(f"Failed to record credit transaction for user {user_id}: {e}")

    def _debit_sync(self, user_id: str, order_id: Optional[str]) -> int:
        for attempt in range(MAX_CAS_ATTEMPTS):
            current = self._read_balance(user_id)
            if current is None:
                raise UserProfileMissing()
            if current <= 0:
                raise InsufficientCredits()

            if self._swap_balance(user_id, current, current - 1):
                self._record(user_id, -1, current - 1, "generation", order_id)
                logger.info(f"Debited 1 credit from user {user_id} (balance {current} → {current - 1})")
                return current - 1

            logger.warning(f"Credit debit contention for user {user_id} (attempt {attempt + 1}/{MAX_CAS_ATTEMPTS})")

        raise RuntimeError(f"Credit debit for user {user_id} lost {MAX_CAS_ATTEMPTS} concurrent updates")

    def _credit_sync(self, user_id: str, order_id: Optional[str]) -> bool:
        for attempt in range(MAX_CAS_ATTEMPTS):
            current = self._read_balance(user_id)
            if current is None:
                logger.warning(f"Refund skipped: no profile for user {user_id}")
                return False

            if self._swap_balance(user_id, current, current + 1):
                self._record(user_id, 1, current + 1, "refund", order_id)
                logger.info(f"Refunded 1 credit to user {user_id} (balance {current} → {current + 1})")
                return True

        logger.warning(f"Refund for user {user_id} lost {MAX_CAS_ATTEMPTS} concurrent updates")
        return False

    # ── Public API ───────────────────────────────────────────────────────

    async def debit(self, user_id: str, order_id: Optional[str] = None) -> int:
        return await asyncio.to_thread(self._debit_sync, user_id, order_id)

    async def credit(self, user_id: str, order_id: Optional[str] = None) -> bool:
        try:
            return await asyncio.to_thread(self._credit_sync, user_id, order_id)
        except Exception as e:
            logger.warning(f"Failed to refund credit for user {user_id}: {e}")
            return False

    async def balance(self, user_id: str) -> Optional[int]:
        return await asyncio.to_thread(self._read_balance, user_id)
