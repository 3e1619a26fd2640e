"""Order domain model, parameter derivation and order store interface."""

from sorter_control.orders.model import (
    Category,
    OrderStatus,
    ProgramParameters,
    SortingLineItem,
    SortingOrder,
    derive_parameters,
)
from sorter_control.orders.store import (
    CatalogProduct,
    InMemoryOrderStore,
    OrderStore,
)

__all__ = [
    "CatalogProduct",
    "Category",
    "InMemoryOrderStore",
    "OrderStatus",
    "OrderStore",
    "ProgramParameters",
    "SortingLineItem",
    "SortingOrder",
    "derive_parameters",
]
