"""Hardware communication module.

Provides the two-channel TCP connection to the robot controller.
"""

from sorter_control.hardware.robot_connection import (
    ConnectionEndpoint,
    RobotConnection,
)

__all__ = ["ConnectionEndpoint", "RobotConnection"]
