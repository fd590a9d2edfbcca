from .stats import StatsAggregator

__all__ = ["StatsAggregator"]
