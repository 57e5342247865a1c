"""Exception taxonomy shared by ingestion workers and aggregation jobs.

The ingestion path maps each class onto a settlement decision: a
``ValidationFailure`` is permanent (ack and drop), while an
``UnparseablePayload`` or an ``EnrichmentError`` is nacked and left to broker
redelivery. Aggregation jobs never retry in process; the next scheduled run is
the retry.
"""
from __future__ import annotations


class WeatherAnalyticsError(Exception):
    pass


class ValidationFailure(WeatherAnalyticsError):
    """Payload can never become valid (locale/content mismatch)."""

    permanent = True

    def __init__(self, reason: str, detail: str | None = None):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class UnparseablePayload(ValidationFailure):
    """Payload or its declared locale could not be parsed."""

    permanent = False


class EnrichmentError(WeatherAnalyticsError):
    """Lookup failed for a reason that may clear up on redelivery."""


class WarehouseError(WeatherAnalyticsError):
    pass


class StartupError(WeatherAnalyticsError):
    """A required connection could not be opened; the process must exit."""


class AggregationJobError(WeatherAnalyticsError):
    def __init__(self, job: str, failures: dict[str, BaseException]):
        self.job = job
        self.failures = failures
        brands = ", ".join(sorted(failures))
        super().__init__(f"{job} failed for {len(failures)} brand(s): {brands}")
