# cdasim/errors.py
"""Exception taxonomy for the matching engine and simulation driver."""
from __future__ import annotations


class SimulationError(Exception):
    """Base class for every error raised by cdasim."""


class InvalidOrderError(SimulationError, ValueError):
    """Order rejected before it reached the book (bad price, qty or id)."""

    def __init__(self, message: str, order_id: object = None) -> None:
        self.order_id = order_id
        super().__init__(message)


class NotFoundError(SimulationError, KeyError):
    """
    Removal or reduction targeted an order that is not resting.
    Signals corrupted book state; the run must not continue.
    """

    def __init__(self, order_id: object) -> None:
        self.order_id = order_id
        super().__init__(f"order {order_id!r} is not resting in the book")

    def __str__(self) -> str:
        return self.args[0]


class ConfigurationError(SimulationError, ValueError):
    """Invalid market mode, period or population parameters."""
