"""
Sorter Control Package.

Control system for a colour-sorting robot cell.  Connects to the robot
controller over a command channel and a program stream channel, renders
the sorter program for an order from a script template, and drives the
order through Pending -> Processing -> Completed with rollback on
failure.

Subpackages:
    hardware: Two-channel TCP robot connection
    program: Script template rendering and the category slot table
    orders: Order snapshot model, parameter derivation, order store interface
    fulfillment: Order fulfilment coordinator
    configs: Configuration loading and validation
    utils: Logging setup and filesystem helpers
"""

__version__ = "0.1.0"

__all__ = ["hardware", "program", "orders", "fulfillment", "configs", "utils"]
