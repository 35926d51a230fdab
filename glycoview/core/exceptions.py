"""Engine exceptions.

Bad input records never raise; they are reported as rejections from
ingest. These exceptions are for programmer errors: malformed queries
and misuse of the indexed view.
"""


class QueryError(Exception):
    """Base exception for malformed query descriptors."""

    pass


class UnknownStatError(QueryError):
    """A query requested a statistic that is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Unknown statistic: {name}")
        self.name = name


class UnknownAggregationError(QueryError):
    """A query requested an aggregation that is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Unknown aggregation: {name}")
        self.name = name


class DimensionError(Exception):
    """An indexed view dimension was used in a way it does not support."""

    pass
