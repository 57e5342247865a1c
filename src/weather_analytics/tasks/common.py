"""Shared plumbing for the periodic aggregation jobs.

Every job has the same shape: fan out one task per brand, and per brand purge
expired rollup rows, run one windowed warehouse query and merge the result rows
into a relational rollup. Brands are independent partitions, so a failure in one
never cancels the others; the driver reports every failure once all brands are
done.
"""
from __future__ import annotations
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable
from prometheus_client import Counter, Histogram
from sqlalchemy import delete, select
from sqlalchemy.orm import Session
from weather_analytics.errors import AggregationJobError
from weather_analytics.infrastructure.context import PipelineContext
from weather_analytics.infrastructure.db import upsert
from weather_analytics.models.tables import Brand

logger = logging.getLogger(__name__)

JOB_BRAND_RUNS = Counter('aggregation_brand_runs_total', 'Per-brand job executions', ['job', 'status'])
JOB_ROWS_WRITTEN = Counter('aggregation_rows_written_total', 'Rollup rows upserted', ['job'])
JOB_ROWS_PURGED = Counter('aggregation_rows_purged_total', 'Rollup rows deleted by retention', ['job'])
JOB_SKIPPED_ROWS = Counter('aggregation_rows_skipped_total', 'Result rows skipped by the zero-count guard', ['job'])
JOB_DURATION = Histogram('aggregation_job_seconds', 'Aggregation job runtime across all brands', ['job'], buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300))


@dataclass(frozen=True)
class Window:
    """Half-open ``[start, end)`` slice of the analytical log, naive UTC."""
    start: datetime
    end: datetime

    @classmethod
    def trailing(cls, end: datetime, seconds: int) -> "Window":
        return cls(start=end - timedelta(seconds=seconds), end=end)


def utcnow() -> datetime:
    return datetime.utcnow().replace(microsecond=0)


def truncate(ts: datetime, unit: str) -> datetime:
    if unit == "hour":
        return ts.replace(minute=0, second=0, microsecond=0)
    if unit == "day":
        return ts.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == "month":
        return ts.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"unknown period unit {unit}")


def iter_slices(start: datetime, end: datetime, step: timedelta) -> Iterable[Window]:
    t = start
    while t < end:
        yield Window(start=t, end=min(t + step, end))
        t += step


def list_brands(session: Session) -> list[Brand]:
    return list(session.execute(select(Brand).order_by(Brand.name)).scalars())


def run_for_all_brands(
    job_name: str,
    per_brand: Callable[[PipelineContext, Brand], int],
    ctx: PipelineContext,
) -> dict[str, Any]:
    """Run ``per_brand`` concurrently for every brand and wait for all of them.

    Returns a status dict like the other tasks. When any brand failed, raises
    ``AggregationJobError`` (chained to the first failure) after every sibling
    has finished; the summary is attached as ``.summary``.
    """
    start = time.time()
    session = ctx.session_factory()
    try:
        brands = list_brands(session)
    finally:
        session.close()

    rows: dict[str, int] = {}
    failures: dict[str, BaseException] = {}
    first_failure: BaseException | None = None
    if brands:
        workers = max(1, min(ctx.settings.job_max_workers, len(brands)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=job_name) as pool:
            futures = {pool.submit(per_brand, ctx, b): b.name for b in brands}
            for fut in as_completed(futures):
                name = futures[fut]
                try:
                    rows[name] = fut.result() or 0
                    JOB_BRAND_RUNS.labels(job=job_name, status="ok").inc()
                except Exception as e:
                    # isolated per brand; reported once every brand is done
                    logger.error(f"{job_name} failed for brand {name}: {e}")
                    failures[name] = e
                    first_failure = first_failure or e
                    JOB_BRAND_RUNS.labels(job=job_name, status="error").inc()

    duration = time.time() - start
    JOB_DURATION.labels(job=job_name).observe(duration)
    summary = {
        "status": "ok" if not failures else "partial",
        "job": job_name,
        "brands": len(brands),
        "rows": sum(rows.values()),
        "failed_brands": sorted(failures),
        "duration": round(duration, 3),
    }
    if failures:
        err = AggregationJobError(job_name, failures)
        err.summary = summary
        raise err from first_failure
    logger.info(f"{job_name} finished for {len(brands)} brands ({summary['rows']} rows in {duration:.2f}s)")
    return summary


def purge_before(session: Session, model, brand: str, cutoff: datetime, job: str, column=None) -> int:
    col = column if column is not None else model.calculation_period
    result = session.execute(delete(model).where(model.brand == brand, col < cutoff))
    purged = result.rowcount or 0
    if purged:
        JOB_ROWS_PURGED.labels(job=job).inc(purged)
        logger.debug(f"{job}: purged {purged} rows for {brand} older than {cutoff}")
    return purged


def _num(value, default: float = 0.0) -> float:
    if value is None:
        return default
    value = float(value)
    return default if math.isnan(value) else value


def merge_rollup(
    session: Session,
    model,
    key: dict[str, Any],
    count_col: str,
    count: int,
    averages: dict[str, float | None],
    job: str,
) -> bool:
    """Upsert one rollup row with the incremental merge.

    ``count_col`` accumulates by sum; each average becomes
    ``(old_avg + new_avg) / (old_count + new_count)``. A non-positive count
    would make that denominator meaningless, so such rows are skipped.
    """
    if not count or count <= 0:
        JOB_SKIPPED_ROWS.labels(job=job).inc()
        return False
    values = {**key, count_col: int(count), **{c: _num(v) for c, v in averages.items()}}
    table = model.__table__

    def _update(stmt):
        total = table.c[count_col] + stmt.excluded[count_col]
        set_ = {count_col: total}
        for col in averages:
            set_[col] = (table.c[col] + stmt.excluded[col]) / total
        return set_

    upsert(session, model, values, list(key), update=_update)
    JOB_ROWS_WRITTEN.labels(job=job).inc()
    return True


def sum_rollup(session: Session, model, key: dict[str, Any], count_col: str, count: int, job: str) -> bool:
    if not count or count <= 0:
        JOB_SKIPPED_ROWS.labels(job=job).inc()
        return False
    table = model.__table__
    upsert(
        session, model, {**key, count_col: int(count)}, list(key),
        update=lambda stmt: {count_col: table.c[count_col] + stmt.excluded[count_col]},
    )
    JOB_ROWS_WRITTEN.labels(job=job).inc()
    return True


def insert_ignore(session: Session, model, values: dict[str, Any], conflict_cols: Iterable[str], job: str) -> None:
    upsert(session, model, values, conflict_cols, update=None)
    JOB_ROWS_WRITTEN.labels(job=job).inc()


def latest_pages_cte(page_table: str) -> str:
    """Latest logged version of each page of one brand (first positional param)."""
    return (
        f"latest_page AS (\n"
        f"    SELECT * FROM {page_table}\n"
        f"    WHERE brand = ?\n"
        f"    QUALIFY row_number() OVER (PARTITION BY url ORDER BY datetime DESC) = 1\n"
        f")"
    )
