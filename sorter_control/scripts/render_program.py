#!/usr/bin/env python3
"""Render the sorter program for given quantities without a robot.

Useful to inspect exactly what would be streamed for an order.

Usage::

    python -m sorter_control.scripts.render_program --red 3 --green 5
    python -m sorter_control.scripts.render_program --blue 2 -o /tmp/sorter.script
"""

from __future__ import annotations

import argparse
import logging
import sys

from sorter_control.configs.loader import (
    build_engine,
    configure_logging,
    load_config,
)
from sorter_control.errors import SorterError
from sorter_control.orders.model import (
    Category,
    SortingLineItem,
    SortingOrder,
    derive_parameters,
)
from sorter_control.utils.fs import atomic_write_text

logger = logging.getLogger(__name__)


def render_for_quantities(
    quantities: dict[Category, int],
    config_path: str | None = None,
    order_drop_pose: str | None = None,
    resort_drop_pose: str | None = None,
) -> str:
    """Render the configured template for an ad-hoc order."""
    config = load_config(config_path)
    engine = build_engine(config)
    order = SortingOrder(
        order_id=0,
        customer_label="render_program",
        items=[
            SortingLineItem(index, f"{c.title} block", c, qty)
            for index, (c, qty) in enumerate(quantities.items(), start=1)
        ],
    )
    params = (
        derive_parameters(order, tuple(config.slots.categories))
        .with_poses(config.poses.order_drop, config.poses.resort_drop)
        .with_poses(order_drop_pose, resort_drop_pose)
    )
    return engine.render_parameters(params)


def main() -> None:
    parser = argparse.ArgumentParser(description="Render the sorter program")
    for category in Category:
        parser.add_argument(
            f"--{category.value}", type=int, default=0,
            help=f"{category.title} blocks to sort to the order bin",
        )
    parser.add_argument("--order-drop", type=str, help="Order drop pose override")
    parser.add_argument("--resort-drop", type=str, help="Resort drop pose override")
    parser.add_argument("--config", "-c", type=str, help="Config file path")
    parser.add_argument("--output", "-o", type=str, help="Write to file instead of stdout")
    args = parser.parse_args()

    try:
        configure_logging(
            load_config(args.config), level="WARNING",
            context={"app": "render_program"},
        )
    except (SorterError, OSError) as exc:
        print(f"Render failed: {exc}", file=sys.stderr)
        sys.exit(1)

    quantities = {c: getattr(args, c.value) for c in Category}
    try:
        program = render_for_quantities(
            quantities, args.config, args.order_drop, args.resort_drop,
        )
    except SorterError as exc:
        print(f"Render failed: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        atomic_write_text(args.output, program)
        print(f"Wrote {len(program)} bytes to {args.output}")
    else:
        sys.stdout.write(program)


if __name__ == "__main__":
    main()
