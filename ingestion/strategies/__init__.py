"""
Fetch strategies keyed by source code
"""

from typing import Dict, Type
from ingestion.strategies.base import FetchResult, FetchStrategy
from ingestion.strategies.dime import DimeStrategy
from ingestion.strategies.sumbong import SumbongSaPanguloStrategy
from ingestion.strategies.flood_control import FloodControlStrategy
from models.source import ScraperSource

STRATEGIES: Dict[str, Type[FetchStrategy]] = {
    DimeStrategy.code: DimeStrategy,
    SumbongSaPanguloStrategy.code: SumbongSaPanguloStrategy,
    FloodControlStrategy.code: FloodControlStrategy,
}


class UnknownStrategyError(ValueError):
    """No strategy is registered for a source code"""


def get_strategy(source: ScraperSource, **kwargs) -> FetchStrategy:
    try:
        strategy_class = STRATEGIES[source.code]
    except KeyError:
        raise UnknownStrategyError(
            f"No fetch strategy registered for source '{source.code}'. "
            f"Known sources: {', '.join(sorted(STRATEGIES))}"
        )
    return strategy_class(source, **kwargs)


__all__ = [
    "STRATEGIES",
    "FetchResult",
    "FetchStrategy",
    "UnknownStrategyError",
    "get_strategy",
]
