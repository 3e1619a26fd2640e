"""Category-to-slot mapping for the sorter program.

Every category needs two slots in the template: a boolean route flag
and an integer remaining count.  The mapping is an explicit table,
checked for completeness when it is loaded so a missing category is a
startup error rather than a failure in the middle of a fulfilment.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from sorter_control.errors import ConfigError
from sorter_control.orders.model import Category, ProgramParameters


@dataclass(frozen=True)
class CategorySlots:
    """Template slot names for one category."""

    route_slot: str
    count_slot: str


@dataclass(frozen=True)
class SlotMap:
    """Complete slot table for a sorter program.

    Parameters
    ----------
    categories : Mapping[Category, CategorySlots]
        Route / count slots per category.
    order_drop_pose_slot, resort_drop_pose_slot : str
        Slots receiving the optional pose overrides.
    """

    categories: Mapping[Category, CategorySlots]
    order_drop_pose_slot: str = "OrderDropPose"
    resort_drop_pose_slot: str = "ResortDropPose"

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "categories", MappingProxyType(dict(self.categories)),
        )

    @classmethod
    def default(cls) -> SlotMap:
        """Slot names used by the shipped sorter program.

        ``Sort<Name>ToOrder`` for the route flag and ``<Name>Remaining``
        for the count, e.g. ``SortRedToOrder`` / ``RedRemaining``.
        """
        return cls(
            categories={
                category: CategorySlots(
                    route_slot=f"Sort{category.title}ToOrder",
                    count_slot=f"{category.title}Remaining",
                )
                for category in Category
            },
        )

    def check_complete(
        self, categories: Iterable[Category] = tuple(Category),
    ) -> None:
        """Verify every category is mapped and no slot name is reused.

        Raises
        ------
        ConfigError
            On a missing category or a duplicated / blank slot name.
        """
        missing = [c.value for c in categories if c not in self.categories]
        if missing:
            raise ConfigError(
                f"No program slots mapped for categories: {', '.join(missing)}"
            )

        names = list(self.slot_names())
        blank = [n for n in names if not n or not n.strip()]
        if blank:
            raise ConfigError("Slot names must be non-empty")
        seen: set[str] = set()
        dupes: set[str] = set()
        for name in names:
            if name in seen:
                dupes.add(name)
            seen.add(name)
        if dupes:
            raise ConfigError(
                f"Slot names used more than once: {', '.join(sorted(dupes))}"
            )

    def slot_names(self) -> Iterable[str]:
        for slots in self.categories.values():
            yield slots.route_slot
            yield slots.count_slot
        yield self.order_drop_pose_slot
        yield self.resort_drop_pose_slot

    def to_slot_values(
        self, params: ProgramParameters,
    ) -> dict[str, bool | int | str]:
        """Flatten *params* into ``slot name -> value``.

        Pose slots are included only when an override is set, so the
        template default survives otherwise.

        Raises
        ------
        ConfigError
            If *params* covers a category the table does not map.
        """
        values: dict[str, bool | int | str] = {}
        for category in params.categories:
            slots = self.categories.get(category)
            if slots is None:
                raise ConfigError(
                    f"No program slots mapped for category {category.value!r}"
                )
            values[slots.route_slot] = bool(params.route_to_order[category])
            values[slots.count_slot] = int(params.remaining[category])

        if params.order_drop_pose is not None and params.order_drop_pose.strip():
            values[self.order_drop_pose_slot] = params.order_drop_pose
        if params.resort_drop_pose is not None and params.resort_drop_pose.strip():
            values[self.resort_drop_pose_slot] = params.resort_drop_pose
        return values
