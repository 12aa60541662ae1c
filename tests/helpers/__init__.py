from .faulty_store import BASE_TIME, FaultyStore, InjectedFailure, make_record
from .metric_delta import metric_delta, metric_increases, metric_value

__all__ = [
    "BASE_TIME",
    "FaultyStore",
    "InjectedFailure",
    "make_record",
    "metric_delta",
    "metric_increases",
    "metric_value",
]
