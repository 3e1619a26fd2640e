"""Order store interface and an in-memory reference implementation.

The production order store lives in the persistence layer.  The
coordinator needs two calls from it (plus an optional status query),
captured by :class:`OrderStore`.  :class:`InMemoryOrderStore` implements the same
contract in process memory; it backs the diagnostics scripts and the
test suite.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Mapping, Protocol, runtime_checkable

from sorter_control.errors import OrderStateError
from sorter_control.orders.model import (
    Category,
    OrderStatus,
    SortingLineItem,
    SortingOrder,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class OrderStore(Protocol):
    """Order persistence as seen by the fulfilment coordinator.

    All calls are assumed atomic and immediately consistent.
    ``set_order_status`` must refuse a transition the workflow does not
    allow (e.g. Completed -> Processing) by raising ``OrderStateError``;
    that is how a non-pending order is turned away.

    Stores may also provide ``get_order_status(order_id)``.  When present
    the coordinator checks the status up front, before reading the order.
    """

    def get_order(self, order_id: int) -> SortingOrder:
        ...

    def set_order_status(self, order_id: int, status: OrderStatus) -> None:
        ...


@dataclass(frozen=True)
class CatalogProduct:
    """Product sold for one category."""

    product_id: int
    name: str


DEFAULT_CATALOG: dict[Category, CatalogProduct] = {
    category: CatalogProduct(product_id=index, name=f"{category.title} block")
    for index, category in enumerate(Category, start=1)
}


@dataclass
class _StoredOrder:
    order: SortingOrder
    status: OrderStatus


class InMemoryOrderStore:
    """Thread-safe in-memory order store.

    Parameters
    ----------
    catalog : Mapping[Category, CatalogProduct] | None
        Product offered for each category.  Defaults to one block
        product per category.
    """

    def __init__(
        self,
        catalog: Mapping[Category, CatalogProduct] | None = None,
    ) -> None:
        self._catalog = dict(catalog if catalog is not None else DEFAULT_CATALOG)
        self._orders: dict[int, _StoredOrder] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def create_order(
        self,
        customer_label: str,
        quantities: Mapping[Category, int],
    ) -> int:
        """Create a Pending order and return its id.

        Non-positive quantities are dropped.

        Raises
        ------
        OrderStateError
            If no quantity is positive, or a category has no product.
        """
        items: list[SortingLineItem] = []
        for category, quantity in quantities.items():
            if quantity <= 0:
                continue
            product = self._catalog.get(category)
            if product is None:
                raise OrderStateError(
                    f"Product for category '{category.value}' is not configured"
                )
            items.append(
                SortingLineItem(
                    item_id=product.product_id,
                    item_label=product.name,
                    category=category,
                    quantity=quantity,
                )
            )

        if not items:
            raise OrderStateError("Order must contain at least one block")

        with self._lock:
            order_id = self._next_id
            self._next_id += 1
            self._orders[order_id] = _StoredOrder(
                order=SortingOrder(order_id, customer_label, items),
                status=OrderStatus.PENDING,
            )

        logger.info(
            "Created order #%d for %s (%d lines)",
            order_id, customer_label, len(items),
        )
        return order_id

    def add_order(
        self,
        order: SortingOrder,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> None:
        """Insert a prebuilt snapshot as-is (no quantity filtering)."""
        with self._lock:
            self._orders[order.order_id] = _StoredOrder(order, status)
            self._next_id = max(self._next_id, order.order_id + 1)

    def list_orders(self) -> list[tuple[SortingOrder, OrderStatus]]:
        """All orders, newest first."""
        with self._lock:
            return [
                (stored.order, stored.status)
                for _, stored in sorted(self._orders.items(), reverse=True)
            ]

    # ------------------------------------------------------------------
    # OrderStore protocol
    # ------------------------------------------------------------------

    def get_order(self, order_id: int) -> SortingOrder:
        with self._lock:
            return self._lookup(order_id).order

    def get_order_status(self, order_id: int) -> OrderStatus:
        with self._lock:
            return self._lookup(order_id).status

    def set_order_status(self, order_id: int, status: OrderStatus) -> None:
        """Move an order to *status*.

        Raises
        ------
        OrderStateError
            If the transition is not part of the workflow.
        KeyError
            If the order does not exist.
        """
        with self._lock:
            stored = self._lookup(order_id)
            if not stored.status.can_transition_to(status):
                raise OrderStateError(
                    f"Order #{order_id}: illegal transition "
                    f"{stored.status.value} -> {status.value}"
                )
            stored.status = status
        logger.debug("Order #%d -> %s", order_id, status.value)

    def _lookup(self, order_id: int) -> _StoredOrder:
        try:
            return self._orders[order_id]
        except KeyError:
            raise KeyError(f"Order #{order_id} not found") from None
