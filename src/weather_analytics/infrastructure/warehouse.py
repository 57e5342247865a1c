"""Append-only analytical store backed by DuckDB.

One schema per environment (``{environment}_weather``) holding the ``lead_event``,
``page`` and ``user`` logs. Every row carries the ``datetime`` at which it was
ingested; aggregation jobs filter on it with half-open windows. Rows are never
updated or deleted from the write path.
"""
from __future__ import annotations
import logging
from typing import Any, Iterable, Sequence
import duckdb
from prometheus_client import Counter, Histogram
from weather_analytics.errors import WarehouseError

logger = logging.getLogger(__name__)

WAREHOUSE_ROWS_INSERTED = Counter('warehouse_rows_inserted_total', 'Rows appended to the analytical store', ['table'])
WAREHOUSE_INSERT_FAILURES = Counter('warehouse_insert_failures_total', 'Failed bulk appends to the analytical store', ['table'])
WAREHOUSE_QUERY_SECONDS = Histogram('warehouse_query_seconds', 'Analytical query latency', buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 30))

TABLE_COLUMNS: dict[str, tuple[tuple[str, str], ...]] = {
    "lead_event": (
        ("datetime", "TIMESTAMP"),
        ("brand", "VARCHAR"),
        ("uuid", "VARCHAR"),
        ("lead_uuid", "VARCHAR"),
        ("name", "VARCHAR"),
        ("page_type", "VARCHAR"),
        ("page_language", "VARCHAR"),
        ("device", "VARCHAR"),
        ("url", "VARCHAR"),
        ("referrer", "VARCHAR"),
        ("referrer_type", "VARCHAR"),
        ("relevant_referrer", "VARCHAR"),
        ("metas", "VARCHAR"),  # raw JSON, typed copies below
        ("time_spent", "DOUBLE"),
        ("reading_rate", "DOUBLE"),
        ("consent", "BOOLEAN"),
        ("ip", "VARCHAR"),
        ("location_country", "VARCHAR"),
        ("location_city", "VARCHAR"),
    ),
    "page": (
        ("datetime", "TIMESTAMP"),
        ("brand", "VARCHAR"),
        ("url", "VARCHAR"),
        ("type", "VARCHAR"),
        ("language", "VARCHAR"),
        ("publication_date", "TIMESTAMP"),
        ("modification_date", "TIMESTAMP"),
        ("title", "VARCHAR"),
        ("description", "VARCHAR"),
        ("content", "VARCHAR"),
        ("section", "VARCHAR"),
        ("sub_section", "VARCHAR"),
        ("image", "VARCHAR"),
        ("is_paid", "BOOLEAN"),
    ),
    "user": (
        ("datetime", "TIMESTAMP"),
        ("brand", "VARCHAR"),
        ("lead_uuid", "VARCHAR"),
        ("user_id", "VARCHAR"),
        ("email", "VARCHAR"),
        ("first_name", "VARCHAR"),
        ("last_name", "VARCHAR"),
        ("is_subscriber", "BOOLEAN"),
    ),
}


class Warehouse:
    """Thin wrapper around one DuckDB connection.

    The connection is shared process-wide; each operation runs on its own
    cursor so concurrent brand jobs and the ingestion flush never share
    transaction state.
    """

    def __init__(self, path: str, schema: str):
        self.path = path
        self.schema = schema
        try:
            self._con = duckdb.connect(path)
        except duckdb.Error as e:
            raise WarehouseError(f"cannot open warehouse at {path}: {e}") from e

    def table(self, name: str) -> str:
        if name not in TABLE_COLUMNS:
            raise KeyError(f"unknown warehouse table {name}")
        return f'"{self.schema}"."{name}"'

    def ensure_schema(self) -> None:
        cur = self._con.cursor()
        try:
            cur.execute(f'CREATE SCHEMA IF NOT EXISTS "{self.schema}"')
            for name, columns in TABLE_COLUMNS.items():
                cols = ",\n    ".join(f"{c} {t}" for c, t in columns)
                cur.execute(f"CREATE TABLE IF NOT EXISTS {self.table(name)} (\n    {cols}\n)")
            cur.execute(
                f'CREATE INDEX IF NOT EXISTS idx_lead_event_brand_dt ON {self.table("lead_event")}(brand, datetime)'
            )
        finally:
            cur.close()
        logger.info(f"Warehouse schema {self.schema} ready at {self.path}")

    def insert_rows(self, table: str, rows: Sequence[dict[str, Any]]) -> int:
        """Bulk append rows in a single warehouse transaction.

        Missing keys are stored as NULL. Raises ``WarehouseError`` and leaves
        nothing behind when any row fails.
        """
        if not rows:
            return 0
        columns = [c for c, _ in TABLE_COLUMNS[table]]
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {self.table(table)} ({', '.join(columns)}) VALUES ({placeholders})"
        values = [tuple(r.get(c) for c in columns) for r in rows]
        cur = self._con.cursor()
        try:
            cur.begin()
            cur.executemany(sql, values)
            cur.commit()
        except duckdb.Error as e:
            try:
                cur.rollback()
            except duckdb.Error:
                logger.warning(f"Rollback after failed insert into {table} also failed")
            WAREHOUSE_INSERT_FAILURES.labels(table=table).inc()
            raise WarehouseError(f"bulk insert into {table} failed: {e}") from e
        finally:
            cur.close()
        WAREHOUSE_ROWS_INSERTED.labels(table=table).inc(len(rows))
        return len(rows)

    def query(self, sql: str, params: Iterable[Any] | None = None) -> list[dict[str, Any]]:
        cur = self._con.cursor()
        try:
            with WAREHOUSE_QUERY_SECONDS.time():
                cur.execute(sql, list(params or []))
                names = [d[0] for d in cur.description] if cur.description else []
                return [dict(zip(names, row)) for row in cur.fetchall()]
        except duckdb.Error as e:
            raise WarehouseError(f"warehouse query failed: {e}") from e
        finally:
            cur.close()

    def close(self) -> None:
        self._con.close()
