"""Configuration loader for the sorter cell.

Loads and validates ``sorter.yaml`` into typed, frozen dataclasses.
Robot address, timeouts, template location, the category slot table and
default drop poses all come from the config.

The slot table is checked for completeness here, so a category without
program slots is a load-time ``ConfigError`` rather than a failure in
the middle of a fulfilment.

Usage::

    from sorter_control.configs.loader import load_config
    cfg = load_config()                       # shipped sorter.yaml
    cfg = load_config("/custom/sorter.yaml")  # explicit path
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from sorter_control.errors import ConfigError
from sorter_control.hardware.robot_connection import (
    DEFAULT_COMMAND_PORT,
    DEFAULT_STREAM_PORT,
    ConnectionEndpoint,
    RobotConnection,
)
from sorter_control.orders.model import Category
from sorter_control.program.slots import CategorySlots, SlotMap
from sorter_control.program.template_engine import (
    DEFAULT_MARKER,
    ScriptTemplateEngine,
)
from sorter_control.utils.fs import load_yaml
from sorter_control.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "sorter.yaml"


# ---------------------------------------------------------------------------
# Dataclasses -- mirror the YAML structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionConfig:
    """Robot controller address and socket timeouts.

    ``None`` timeouts block indefinitely.
    """

    host: str
    command_port: int = DEFAULT_COMMAND_PORT
    stream_port: int = DEFAULT_STREAM_PORT
    connect_timeout_s: float | None = None
    io_timeout_s: float | None = None


@dataclass(frozen=True)
class TemplateConfig:
    """Program template resource."""

    path: Path
    marker: str = DEFAULT_MARKER


@dataclass(frozen=True)
class PoseConfig:
    """Default pose overrides applied to every order (``None`` = keep template)."""

    order_drop: str | None = None
    resort_drop: str | None = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None
    json: bool = False
    color: bool = True


@dataclass(frozen=True)
class SorterConfig:
    """Complete sorter configuration loaded from ``sorter.yaml``."""

    connection: ConnectionConfig
    template: TemplateConfig
    slots: SlotMap
    poses: PoseConfig
    logging: LoggingConfig

    def endpoint(self) -> ConnectionEndpoint:
        """Connection endpoint described by this config."""
        c = self.connection
        return ConnectionEndpoint(c.host, c.command_port, c.stream_port)


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _optional_float(data: dict[str, Any], key: str) -> float | None:
    raw = data.get(key)
    if raw is None:
        return None
    value = float(raw)
    if value <= 0:
        raise ConfigError(f"connection.{key} must be > 0 or null, got {raw}")
    return value


def _parse_connection(data: dict[str, Any]) -> ConnectionConfig:
    cfg = ConnectionConfig(
        host=str(data["host"]),
        command_port=int(data.get("command_port", DEFAULT_COMMAND_PORT)),
        stream_port=int(data.get("stream_port", DEFAULT_STREAM_PORT)),
        connect_timeout_s=_optional_float(data, "connect_timeout_s"),
        io_timeout_s=_optional_float(data, "io_timeout_s"),
    )
    try:
        ConnectionEndpoint(cfg.host, cfg.command_port, cfg.stream_port)
    except ValueError as exc:
        raise ConfigError(f"Invalid connection settings: {exc}") from exc
    return cfg


def _parse_template(data: dict[str, Any], base_dir: Path) -> TemplateConfig:
    path = Path(data["path"])
    if not path.is_absolute():
        path = base_dir / path
    marker = str(data.get("marker", DEFAULT_MARKER))
    if marker.count("{name}") != 1:
        raise ConfigError(
            f"template.marker must contain '{{name}}' exactly once, got {marker!r}"
        )
    return TemplateConfig(path=path, marker=marker)


def _parse_slots(data: dict[str, Any]) -> SlotMap:
    categories: dict[Category, CategorySlots] = {}
    for raw_name, entry in (data.get("categories") or {}).items():
        try:
            category = Category.parse(raw_name)
        except ValueError as exc:
            raise ConfigError(f"slots.categories: {exc}") from exc
        if not isinstance(entry, dict) or "route" not in entry or "count" not in entry:
            raise ConfigError(
                f"slots.categories.{raw_name} needs 'route' and 'count' slot names"
            )
        categories[category] = CategorySlots(
            route_slot=str(entry["route"]),
            count_slot=str(entry["count"]),
        )

    slot_map = SlotMap(
        categories=categories,
        order_drop_pose_slot=str(data.get("order_drop_pose", "OrderDropPose")),
        resort_drop_pose_slot=str(data.get("resort_drop_pose", "ResortDropPose")),
    )
    slot_map.check_complete()
    return slot_map


def _parse_poses(data: dict[str, Any]) -> PoseConfig:
    def _pose(key: str) -> str | None:
        raw = data.get(key)
        if raw is None or not str(raw).strip():
            return None
        return str(raw)

    return PoseConfig(order_drop=_pose("order_drop"), resort_drop=_pose("resort_drop"))


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    level = str(data.get("level", "INFO")).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"logging.level is not a valid level: {level}")
    file = data.get("file")
    return LoggingConfig(
        level=level,
        file=str(file) if file else None,
        json=bool(data.get("json", False)),
        color=bool(data.get("color", True)),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None) -> SorterConfig:
    """Load and validate sorter configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Path to ``sorter.yaml``.  ``None`` loads the default shipped
        alongside this module.

    Returns
    -------
    SorterConfig
        Fully validated, frozen configuration object.

    Raises
    ------
    ConfigError
        If any field is missing or fails validation, or the
        file is not valid YAML.
    FileNotFoundError
        If *path* does not exist.
    """
    path = DEFAULT_CONFIG_PATH if path is None else Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info("Loading configuration from %s", path)

    try:
        data: dict[str, Any] = load_yaml(path)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Malformed YAML in {path}: {exc}") from exc
    if data is None:
        raise ConfigError(f"Empty configuration file: {path}")

    try:
        return SorterConfig(
            connection=_parse_connection(data["connection"]),
            template=_parse_template(data["template"], PACKAGE_DIR),
            slots=_parse_slots(data.get("slots") or {}),
            poses=_parse_poses(data.get("poses") or {}),
            logging=_parse_logging(data.get("logging") or {}),
        )
    except KeyError as exc:
        raise ConfigError(f"Missing required config key: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc


def build_connection(cfg: SorterConfig) -> RobotConnection:
    """Create a (disconnected) robot connection from *cfg*."""
    return RobotConnection(
        cfg.endpoint(),
        connect_timeout=cfg.connection.connect_timeout_s,
        io_timeout=cfg.connection.io_timeout_s,
    )


def build_engine(cfg: SorterConfig) -> ScriptTemplateEngine:
    """Load the configured template into an engine.

    Raises
    ------
    TemplateError
        If the template file cannot be read.
    """
    return ScriptTemplateEngine.from_file(
        cfg.template.path,
        marker=cfg.template.marker,
        slot_map=cfg.slots,
    )


def configure_logging(
    cfg: SorterConfig,
    *,
    level: str | None = None,
    context: dict[str, Any] | None = None,
) -> list[logging.Handler]:
    """Apply the ``logging`` section of *cfg*.

    *level* overrides the configured level (e.g. from ``--verbose``).
    """
    log = cfg.logging
    return setup_logging(
        level or log.level,
        log.file,
        json=log.json,
        color=log.color,
        context=context,
    )
