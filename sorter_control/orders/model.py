"""Sorting order domain model.

Orders are immutable snapshots: the coordinator reads one from the order
store at the moment it is sent and never mutates it afterwards.  All
collections on the frozen dataclasses are tuples or read-only mappings.

Quantity convention
-------------------
A line item with ``quantity <= 0`` is treated as *absent*.  It stays in
the snapshot (the store owns that data) but is excluded from every
total derived here.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping

from sorter_control.errors import OrderStateError

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Category(Enum):
    """Sortable item class (block colour on the sorting cell)."""

    RED = "red"
    GREEN = "green"
    BLUE = "blue"
    YELLOW = "yellow"

    @property
    def title(self) -> str:
        """Capitalised name used in robot program identifiers."""
        return self.value.capitalize()

    @classmethod
    def parse(cls, raw: str | Category) -> Category:
        """Look up a category by value or member name (case-insensitive)."""
        if isinstance(raw, Category):
            return raw
        key = str(raw).strip().lower()
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(f"Unknown category: {raw!r}")


class OrderStatus(Enum):
    """Fulfilment workflow status.

    Legal transitions::

        PENDING -> PROCESSING -> COMPLETED
        PROCESSING -> PENDING            (rollback after a failed send)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"

    def can_transition_to(self, target: OrderStatus) -> bool:
        """Return ``True`` if moving from this status to *target* is legal."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.PENDING},
    ),
    OrderStatus.COMPLETED: frozenset(),
}


# ---------------------------------------------------------------------------
# Order snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SortingLineItem:
    """One product line of an order."""

    item_id: int
    item_label: str
    category: Category
    quantity: int

    @property
    def is_present(self) -> bool:
        """``True`` when the line contributes to totals (quantity > 0)."""
        return self.quantity > 0


@dataclass(frozen=True, slots=True)
class SortingOrder:
    """Immutable order snapshot handed to the fulfilment coordinator."""

    order_id: int
    customer_label: str
    items: tuple[SortingLineItem, ...] = ()

    def __post_init__(self) -> None:
        # Accept any iterable but always store a tuple
        object.__setattr__(self, "items", tuple(self.items))

    def positive_items(self) -> tuple[SortingLineItem, ...]:
        return tuple(item for item in self.items if item.is_present)

    def quantity_of(self, category: Category) -> int:
        """Total positive quantity ordered for *category*."""
        return sum(
            item.quantity
            for item in self.items
            if item.category is category and item.is_present
        )


# ---------------------------------------------------------------------------
# Program parameters
# ---------------------------------------------------------------------------


def _freeze(mapping: Mapping[Category, object]) -> Mapping[Category, object]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class ProgramParameters:
    """Values substituted into the sorter program for one order.

    Parameters
    ----------
    route_to_order : Mapping[Category, bool]
        Whether blocks of each category go to the order bin.
    remaining : Mapping[Category, int]
        How many blocks of each category are still needed (>= 0).
    order_drop_pose, resort_drop_pose : str | None
        Optional pose expressions, passed through verbatim.  ``None``
        keeps the template's built-in default.
    """

    route_to_order: Mapping[Category, bool]
    remaining: Mapping[Category, int]
    order_drop_pose: str | None = None
    resort_drop_pose: str | None = None
    categories: tuple[Category, ...] = field(default=tuple(Category))

    def __post_init__(self) -> None:
        for category, count in self.remaining.items():
            if count < 0:
                raise ValueError(
                    f"remaining count for {category.value} must be >= 0, "
                    f"got {count}"
                )
        object.__setattr__(self, "route_to_order", _freeze(self.route_to_order))
        object.__setattr__(self, "remaining", _freeze(self.remaining))
        object.__setattr__(self, "categories", tuple(self.categories))

    def with_poses(
        self,
        order_drop: str | None = None,
        resort_drop: str | None = None,
    ) -> ProgramParameters:
        """Return a copy with pose overrides applied.

        Blank or ``None`` arguments keep the current value.
        """
        return replace(
            self,
            order_drop_pose=_pose_or(order_drop, self.order_drop_pose),
            resort_drop_pose=_pose_or(resort_drop, self.resort_drop_pose),
        )


def _pose_or(candidate: str | None, fallback: str | None) -> str | None:
    if candidate is None or not candidate.strip():
        return fallback
    return candidate


def derive_parameters(
    order: SortingOrder,
    categories: Iterable[Category] = tuple(Category),
) -> ProgramParameters:
    """Derive program parameters from an order snapshot.

    For each category the remaining count is the sum of the positive
    quantities ordered in that category, and the route flag is
    ``remaining > 0``.  Every category in *categories* appears in both
    maps.

    Raises
    ------
    OrderStateError
        If the order has no positive-quantity line item, or a positive
        item belongs to a category outside *categories*.

    Examples
    --------
    >>> items = [
    ...     SortingLineItem(1, "Red block", Category.RED, 3),
    ...     SortingLineItem(2, "Green block", Category.GREEN, 5),
    ... ]
    >>> params = derive_parameters(SortingOrder(7, "ACME", items))
    >>> params.remaining[Category.RED], params.route_to_order[Category.BLUE]
    (3, False)
    """
    known = tuple(categories)
    present = order.positive_items()
    if not present:
        raise OrderStateError(
            f"Order #{order.order_id} has no items with a positive quantity"
        )

    for item in present:
        if item.category not in known:
            raise OrderStateError(
                f"Order #{order.order_id} item {item.item_id} has category "
                f"{item.category.value!r} with no program mapping"
            )

    remaining = {category: order.quantity_of(category) for category in known}
    route = {category: count > 0 for category, count in remaining.items()}
    return ProgramParameters(
        route_to_order=route,
        remaining=remaining,
        categories=known,
    )
