"""
Order data source.

The engine only reads orders (stage, driver assignment, address representations);
status changes are made by external collaborators and pushed in through `put()`.
"""

from __future__ import annotations

from typing import Protocol

from deliverytrack.domain.models import Order


class OrderSource(Protocol):
    async def get_order(self, order_id: str) -> Order | None: ...


class InMemoryOrderSource:
    def __init__(self, orders: list[Order] | None = None):
        self._orders: dict[str, Order] = {o.id: o for o in orders or []}

    async def get_order(self, order_id: str) -> Order | None:
        return self._orders.get(order_id)

    def put(self, order: Order) -> Order | None:
        """Store `order`, returning the snapshot it replaced (if any)."""
        previous = self._orders.get(order.id)
        self._orders[order.id] = order
        return previous
