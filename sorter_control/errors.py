"""Exception hierarchy for the sorter control package.

Every error raised by this package derives from :class:`SorterError` so
callers can catch the whole family with one clause, while the concrete
subclasses keep the failure cases apart:

    SorterError
    ├── RobotConnectionError   socket could not be opened
    ├── ProtocolError          channel not open / bad or missing reply
    │   └── TransmitError      I/O failure on an open channel
    ├── TemplateError          template missing or slot not found
    ├── NotConnectedError      fulfilment attempted while disconnected
    ├── OrderStateError        empty order, unmapped category, bad status
    └── ConfigError            configuration validation failed
"""

from __future__ import annotations


class SorterError(Exception):
    """Base exception for all sorter control errors."""

    pass


class RobotConnectionError(SorterError, ConnectionError):
    """Either robot socket failed to open.

    Both channels are guaranteed closed when this is raised.
    """

    pass


class ProtocolError(SorterError):
    """Operation on a channel that is not open, or a missing/bad reply."""

    pass


class TransmitError(ProtocolError):
    """Socket-level failure while writing to or reading from an open channel."""

    pass


class TemplateError(SorterError):
    """Template resource unreadable, or a requested slot is absent."""

    pass


class NotConnectedError(SorterError):
    """Fulfilment requested while the robot connection is down."""

    pass


class OrderStateError(SorterError):
    """Order cannot be fulfilled in its current shape or status."""

    pass


class ConfigError(SorterError):
    """Raised when configuration validation fails."""

    pass
