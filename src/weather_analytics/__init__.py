"""Top-level package for weather_analytics.

Subpackages are imported lazily: `infrastructure` holds the connections, queue and
batching primitives, `ingestion` the consumer workers, `tasks` the Celery aggregation
jobs and `scoring` the pure metric functions shared by jobs and the read side.
"""

__version__ = "0.1.0"

__all__ = ["config", "errors", "infrastructure", "ingestion", "models", "scoring", "tasks", "validation"]
