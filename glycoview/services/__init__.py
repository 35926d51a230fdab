# Query, statistics and aggregation services
from glycoview.services.aggregations import AggregationEngine, resolve_aggregations
from glycoview.services.data_engine import DataEngine
from glycoview.services.stats import StatEngine, WindowContext, resolve_stats

__all__ = [
    "AggregationEngine",
    "DataEngine",
    "StatEngine",
    "WindowContext",
    "resolve_aggregations",
    "resolve_stats",
]
