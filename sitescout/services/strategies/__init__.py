from sitescout.services.strategies.base import ScrapingStrategy, STRATEGY_COST_ORDER
from sitescout.services.strategies.dynamic import DynamicStrategy
from sitescout.services.strategies.spa import SPAStrategy
from sitescout.services.strategies.static import StaticStrategy

__all__ = [
    "ScrapingStrategy",
    "STRATEGY_COST_ORDER",
    "StaticStrategy",
    "DynamicStrategy",
    "SPAStrategy",
]
