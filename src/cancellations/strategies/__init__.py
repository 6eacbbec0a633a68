"""Fulfillment strategies: one per channel that can stop an order."""

from .base import CancelAttempt, FulfillmentStrategy, StrategyContext
from .registry import get_strategy, list_strategies, load_builtin_strategies, register_strategy
from .warehouse_email import interpret_reply

__all__ = [
    "CancelAttempt",
    "FulfillmentStrategy",
    "StrategyContext",
    "get_strategy",
    "list_strategies",
    "load_builtin_strategies",
    "register_strategy",
    "interpret_reply",
]
