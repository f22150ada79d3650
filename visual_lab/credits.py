"""
credits.py — Credit gate for paid renders.

A render first reserves its cost, then either commits (balance written
down, generation record appended) or releases the reservation. Reservation
and settlement for one user are serialised by a per-user asyncio.Lock, so
N concurrent renders against a balance of B can never commit more than B
units, and the balance is only ever written down after a render succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict

from .errors import InsufficientCredit
from .ledger import MemoryLedgerStore

logger = logging.getLogger(__name__)

# render model alias → credit units
CostPolicy = Callable[[str], int]


def flat_cost(render_model: str) -> int:
    """One unit per render regardless of model tier."""
    return 1


@dataclass
class Reservation:
    user_id: str
    cost: int
    settled: bool = False


class CreditGate:

    def __init__(self, store: MemoryLedgerStore, cost_policy: CostPolicy = flat_cost) -> None:
        self.store = store
        self.cost_policy = cost_policy
        self._locks: Dict[str, asyncio.Lock] = {}
        self._reserved: Dict[str, int] = defaultdict(int)

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    def reserved(self, user_id: str) -> int:
        return self._reserved[user_id]

    async def _store_call(self, fn, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def reserve(self, user_id: str, render_model: str) -> Reservation:
        """
        Hold `cost` units for one render.

        Raises:
            InsufficientCredit: balance minus outstanding reservations is ≤ 0
                or below the cost
        """
        cost = self.cost_policy(render_model)
        async with self._lock_for(user_id):
            balance = await self._store_call(self.store.get_balance, user_id)
            available = balance - self._reserved[user_id]
            if available <= 0 or available < cost:
                logger.info(
                    "render rejected for %s: balance=%d reserved=%d cost=%d",
                    user_id, balance, self._reserved[user_id], cost,
                )
                raise InsufficientCredit(user_id, available, cost)
            self._reserved[user_id] += cost
        return Reservation(user_id=user_id, cost=cost)

    async def commit(self, reservation: Reservation) -> int:
        """
        Write the balance down by the reserved cost and log the generation.
        Returns the new balance. If the balance write fails, the reservation
        is released and the error propagates with the balance unchanged.
        """
        user_id = reservation.user_id
        async with self._lock_for(user_id):
            if reservation.settled:
                raise RuntimeError(f"reservation for {user_id} already settled")
            try:
                balance = await self._store_call(self.store.get_balance, user_id)
                # balance may have been lowered by an admin while the render ran
                new_balance = max(balance - reservation.cost, 0)
                await self._store_call(self.store.set_balance, user_id, new_balance)
            finally:
                self._reserved[user_id] -= reservation.cost
                reservation.settled = True
            try:
                await self._store_call(self.store.append_generation_record, user_id)
            except Exception:
                logger.exception(
                    "reconciliation gap: credit deducted for %s (balance %d) "
                    "but generation record not written",
                    user_id, new_balance,
                )
        logger.info("deducted %d credit(s) from %s, balance %d", reservation.cost, user_id, new_balance)
        return new_balance

    async def release(self, reservation: Reservation) -> None:
        async with self._lock_for(reservation.user_id):
            if reservation.settled:
                return
            self._reserved[reservation.user_id] -= reservation.cost
            reservation.settled = True
