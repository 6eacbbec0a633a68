from __future__ import annotations

from typing import Dict, List, Optional

from .base import FulfillmentStrategy


_STRATEGIES: Dict[str, FulfillmentStrategy] = {}
_BUILTINS_LOADED = False


def register_strategy(strategy: FulfillmentStrategy) -> None:
    method = (strategy.method or "").strip()
    if not method:
        raise ValueError("strategy_missing_method")
    if method in _STRATEGIES:
        raise ValueError(f"duplicate_strategy_for_method:{method}")
    _STRATEGIES[method] = strategy


def load_builtin_strategies() -> None:
    """
    Import and register built-in strategies.

    Lazy so tests can register fakes before the builtins load.
    """
    global _BUILTINS_LOADED
    if _BUILTINS_LOADED:
        return

    from .self_fulfillment import SelfFulfillmentStrategy
    from .shipbob import ShipBobStrategy
    from .shipstation import ShipStationStrategy
    from .warehouse_email import WarehouseEmailStrategy

    for strategy in (WarehouseEmailStrategy(), ShipBobStrategy(), ShipStationStrategy(), SelfFulfillmentStrategy()):
        if strategy.method not in _STRATEGIES:
            register_strategy(strategy)

    _BUILTINS_LOADED = True


def get_strategy(method: str) -> Optional[FulfillmentStrategy]:
    if not _BUILTINS_LOADED:
        load_builtin_strategies()
    return _STRATEGIES.get((method or "").strip())


def list_strategies() -> List[str]:
    if not _BUILTINS_LOADED:
        load_builtin_strategies()
    return sorted(_STRATEGIES.keys())
