"""Operator diagnostics runnable with ``python -m sorter_control.scripts.<name>``."""
