"""
PostgreSQL storage backend for telemetry data.

Samples and snapshots live in range-partitioned tables, one child table
per UTC day. Retention drops child tables with ``DROP TABLE`` instead of
deleting rows, so cleanup generates no row-level write load. Payloads
are the JSON form of the pydantic models.
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from pg_telemetry.exceptions import ConfigurationError, StorageError
from pg_telemetry.schemas import (
    CollectionRun,
    PartitionInfo,
    RunStatus,
    Sample,
    SkipReason,
    Snapshot,
    StepResult,
)
from pg_telemetry.storage.partitions import (
    PARTITION_SPAN,
    as_utc,
    partition_bounds,
    partition_name,
    partitions_ahead,
)

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_PARTITION_SUFFIX = re.compile(r"^(samples|snapshots)_p(\d{8})$")

# SQLSTATE raised when no partition covers the inserted row
NO_PARTITION_SQLSTATE = "23514"

# Lets the observed-system adapter tell our own DDL apart from the workload
STORAGE_APPLICATION_NAME = "pg_telemetry_storage"


class PostgresStorageBackend:
    """
    asyncpg implementation of ``TelemetryStorage``.

    Handles all database operations for storing and querying telemetry data.
    """

    def __init__(
        self,
        dsn: str,
        schema: str = "telemetry",
        pool_min_size: int = 1,
        pool_max_size: int = 4,
        command_timeout: float = 10.0,
    ):
        """
        Initialize storage backend.

        Args:
            dsn: PostgreSQL connection string
            schema: Schema holding the telemetry tables
            pool_min_size: Minimum connection pool size
            pool_max_size: Maximum connection pool size
            command_timeout: Per-statement timeout in seconds
        """
        if not _IDENTIFIER.match(schema):
            raise ConfigurationError(f"Invalid schema name: {schema}")
        self.dsn = dsn
        self.schema = schema
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.command_timeout = command_timeout
        self._pool: Optional[Any] = None

    async def connect(self) -> None:
        """Establish connection pool and create the schema."""
        if self._pool:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.pool_min_size,
                max_size=self.pool_max_size,
                command_timeout=self.command_timeout,
                server_settings={"application_name": STORAGE_APPLICATION_NAME},
            )
            logger.info("Connected to telemetry database")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise StorageError(f"Failed to connect to database: {e}") from e

        await self.initialize_schema()

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Disconnected from telemetry database")

    async def ensure_connected(self) -> None:
        """Ensure we have an active connection pool."""
        if not self._pool:
            await self.connect()
        if not self._pool:
            raise StorageError("Database connection not established")

    def _table(self, name: str) -> str:
        return f'"{self.schema}"."{name}"'

    async def initialize_schema(self) -> None:
        """Create parent tables and the one-in-flight-run-per-task index."""
        async with self._pool.acquire() as conn:
            await conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{self.schema}"')
            for parent in ("samples", "snapshots"):
                await conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._table(parent)} (
                        captured_at TIMESTAMPTZ NOT NULL,
                        payload     JSONB NOT NULL
                    ) PARTITION BY RANGE (captured_at)
                """
                )
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table("collection_runs")} (
                    run_id       TEXT PRIMARY KEY,
                    task         TEXT NOT NULL,
                    started_at   TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ,
                    duration_ms  INTEGER,
                    status       TEXT NOT NULL,
                    success      BOOLEAN NOT NULL DEFAULT FALSE,
                    skip_reason  TEXT,
                    error        TEXT,
                    steps        JSONB NOT NULL DEFAULT '[]'
                )
            """
            )
            await conn.execute(
                f"""
                CREATE UNIQUE INDEX IF NOT EXISTS collection_runs_in_flight_idx
                ON {self._table("collection_runs")} (task)
                WHERE completed_at IS NULL
            """
            )

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    async def _create_partition(self, conn, name: str, start: datetime, end: datetime) -> bool:
        created = False
        for parent in ("samples", "snapshots"):
            child = f"{parent}_{name}"
            exists = await conn.fetchval(
                """
                SELECT 1 FROM pg_class c
                JOIN pg_namespace n ON n.oid = c.relnamespace
                WHERE n.nspname = $1 AND c.relname = $2
            """,
                self.schema,
                child,
            )
            if exists:
                continue
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table(child)}
                PARTITION OF {self._table(parent)}
                FOR VALUES FROM ('{start.isoformat()}') TO ('{end.isoformat()}')
            """
            )
            created = True
        return created

    async def ensure_partitions(self, now: datetime, lookahead_days: int) -> List[str]:
        await self.ensure_connected()
        created = []
        async with self._pool.acquire() as conn:
            for name, start, end in partitions_ahead(now, lookahead_days):
                if await self._create_partition(conn, name, start, end):
                    created.append(name)
        if created:
            logger.debug(f"Created partitions: {', '.join(created)}")
        return created

    async def list_partitions(self) -> List[PartitionInfo]:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT c.relname AS relname,
                       c.reltuples::bigint AS rows,
                       pg_total_relation_size(c.oid) AS size
                FROM pg_inherits i
                JOIN pg_class c ON c.oid = i.inhrelid
                JOIN pg_class parent ON parent.oid = i.inhparent
                JOIN pg_namespace n ON n.oid = parent.relnamespace
                WHERE n.nspname = $1 AND parent.relname IN ('samples', 'snapshots')
            """,
                self.schema,
            )

        partitions: Dict[str, PartitionInfo] = {}
        for row in rows:
            match = _PARTITION_SUFFIX.match(row["relname"])
            if not match:
                continue
            kind, day = match.groups()
            start = datetime.strptime(day, "%Y%m%d").replace(tzinfo=timezone.utc)
            name = partition_name(start)
            info = partitions.setdefault(
                name, PartitionInfo(name=name, start=start, end=start + PARTITION_SPAN)
            )
            count = max(int(row["rows"] or 0), 0)
            if kind == "samples":
                info.samples = count
            else:
                info.snapshots = count
            info.size_bytes += int(row["size"] or 0)
        return sorted(partitions.values(), key=lambda p: p.start)

    async def drop_partitions_before(self, cutoff: datetime) -> List[PartitionInfo]:
        cutoff = as_utc(cutoff)
        expired = [p for p in await self.list_partitions() if p.end <= cutoff]
        if not expired:
            return []
        async with self._pool.acquire() as conn:
            for partition in expired:
                for parent in ("samples", "snapshots"):
                    await conn.execute(
                        f"DROP TABLE IF EXISTS {self._table(f'{parent}_{partition.name}')}"
                    )
        logger.info(f"Dropped partitions: {', '.join(p.name for p in expired)}")
        return expired

    # ------------------------------------------------------------------
    # Samples and snapshots
    # ------------------------------------------------------------------

    async def _append(self, parent: str, captured_at: datetime, payload: str) -> None:
        await self.ensure_connected()
        query = f"INSERT INTO {self._table(parent)} (captured_at, payload) VALUES ($1, $2::jsonb)"
        async with self._pool.acquire() as conn:
            try:
                await conn.execute(query, captured_at, payload)
            except asyncpg.PostgresError as e:
                if getattr(e, "sqlstate", None) != NO_PARTITION_SQLSTATE:
                    raise
                start, end = partition_bounds(captured_at)
                logger.warning(
                    f"Partition {partition_name(start)} was not created ahead of need, creating now"
                )
                await self._create_partition(conn, partition_name(start), start, end)
                await conn.execute(query, captured_at, payload)

    async def append_sample(self, sample: Sample) -> None:
        await self._append("samples", sample.captured_at, sample.model_dump_json())

    async def append_snapshot(self, snapshot: Snapshot) -> None:
        await self._append("snapshots", snapshot.captured_at, snapshot.model_dump_json())

    async def _fetch_payloads(self, query: str, *args) -> List[str]:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [row["payload"] for row in rows]

    async def samples_between(self, start: datetime, end: datetime) -> List[Sample]:
        payloads = await self._fetch_payloads(
            f"""
            SELECT payload FROM {self._table("samples")}
            WHERE captured_at BETWEEN $1 AND $2
            ORDER BY captured_at
        """,
            start,
            end,
        )
        return [Sample.model_validate_json(p) for p in payloads]

    async def snapshots_between(self, start: datetime, end: datetime) -> List[Snapshot]:
        payloads = await self._fetch_payloads(
            f"""
            SELECT payload FROM {self._table("snapshots")}
            WHERE captured_at BETWEEN $1 AND $2
            ORDER BY captured_at
        """,
            start,
            end,
        )
        return [Snapshot.model_validate_json(p) for p in payloads]

    async def _one_snapshot(self, where: str, order: str, *args) -> Optional[Snapshot]:
        payloads = await self._fetch_payloads(
            f"SELECT payload FROM {self._table('snapshots')} {where} ORDER BY {order} LIMIT 1",
            *args,
        )
        return Snapshot.model_validate_json(payloads[0]) if payloads else None

    async def _one_sample(self, where: str, order: str, *args) -> Optional[Sample]:
        payloads = await self._fetch_payloads(
            f"SELECT payload FROM {self._table('samples')} {where} ORDER BY {order} LIMIT 1",
            *args,
        )
        return Sample.model_validate_json(payloads[0]) if payloads else None

    async def snapshot_at_or_before(self, at: datetime) -> Optional[Snapshot]:
        return await self._one_snapshot("WHERE captured_at <= $1", "captured_at DESC", at)

    async def snapshot_at_or_after(self, at: datetime) -> Optional[Snapshot]:
        return await self._one_snapshot("WHERE captured_at >= $1", "captured_at ASC", at)

    async def nearest_sample(self, at: datetime) -> Optional[Sample]:
        return await self._one_sample(
            "", "abs(extract(epoch FROM (captured_at - $1::timestamptz)))", at
        )

    async def nearest_snapshot(self, at: datetime) -> Optional[Snapshot]:
        return await self._one_snapshot(
            "", "abs(extract(epoch FROM (captured_at - $1::timestamptz)))", at
        )

    async def latest_sample(self) -> Optional[Sample]:
        return await self._one_sample("", "captured_at DESC")

    async def latest_snapshot(self) -> Optional[Snapshot]:
        return await self._one_snapshot("", "captured_at DESC")

    # ------------------------------------------------------------------
    # Collection runs
    # ------------------------------------------------------------------

    def _run_from_row(self, row) -> CollectionRun:
        steps = row["steps"]
        if isinstance(steps, str):
            steps = json.loads(steps)
        return CollectionRun(
            run_id=row["run_id"],
            task=row["task"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration_ms=row["duration_ms"],
            status=RunStatus(row["status"]),
            success=row["success"],
            skip_reason=SkipReason(row["skip_reason"]) if row["skip_reason"] else None,
            error=row["error"],
            steps=[StepResult(**s) for s in steps or []],
        )

    def _run_args(self, run: CollectionRun) -> tuple:
        return (
            run.run_id,
            run.task,
            run.started_at,
            run.completed_at,
            run.duration_ms,
            run.status.value,
            run.success,
            run.skip_reason.value if run.skip_reason else None,
            run.error,
            json.dumps([s.model_dump(mode="json") for s in run.steps]),
        )

    async def try_begin_run(
        self, run: CollectionRun, stale_before: datetime
    ) -> Optional[CollectionRun]:
        await self.ensure_connected()
        table = self._table("collection_runs")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                abandoned = await conn.execute(
                    f"""
                    UPDATE {table}
                    SET completed_at = $2, status = 'abandoned', success = FALSE,
                        error = 'run never completed'
                    WHERE task = $1 AND completed_at IS NULL AND started_at < $3
                """,
                    run.task,
                    run.started_at,
                    stale_before,
                )
                if abandoned and abandoned != "UPDATE 0":
                    logger.warning(f"Abandoned stale {run.task} run(s): {abandoned}")

                inserted = await conn.fetchval(
                    f"""
                    INSERT INTO {table} (
                        run_id, task, started_at, completed_at, duration_ms,
                        status, success, skip_reason, error, steps
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
                    ON CONFLICT (task) WHERE completed_at IS NULL DO NOTHING
                    RETURNING run_id
                """,
                    *self._run_args(run),
                )
                if inserted:
                    return None

                row = await conn.fetchrow(
                    f"SELECT * FROM {table} WHERE task = $1 AND completed_at IS NULL",
                    run.task,
                )
        return self._run_from_row(row) if row else None

    async def record_run(self, run: CollectionRun) -> None:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {self._table("collection_runs")} (
                    run_id, task, started_at, completed_at, duration_ms,
                    status, success, skip_reason, error, steps
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
                ON CONFLICT (run_id) DO NOTHING
            """,
                *self._run_args(run),
            )

    async def complete_run(self, run: CollectionRun) -> None:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {self._table("collection_runs")}
                SET completed_at = $2, duration_ms = $3, status = $4, success = $5,
                    skip_reason = $6, error = $7, steps = $8::jsonb
                WHERE run_id = $1
            """,
                run.run_id,
                run.completed_at,
                run.duration_ms,
                run.status.value,
                run.success,
                run.skip_reason.value if run.skip_reason else None,
                run.error,
                json.dumps([s.model_dump(mode="json") for s in run.steps]),
            )

    async def last_executed_run(self, task: str) -> Optional[CollectionRun]:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT * FROM {self._table("collection_runs")}
                WHERE task = $1 AND completed_at IS NOT NULL
                  AND status NOT IN ('skipped', 'abandoned')
                ORDER BY completed_at DESC
                LIMIT 1
            """,
                task,
            )
        return self._run_from_row(row) if row else None

    async def recent_runs(
        self, task: Optional[str] = None, since: Optional[datetime] = None
    ) -> List[CollectionRun]:
        await self.ensure_connected()
        since = since or datetime.now(timezone.utc) - timedelta(days=1)
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM {self._table("collection_runs")}
                WHERE ($1::text IS NULL OR task = $1) AND started_at >= $2
                ORDER BY started_at
            """,
                task,
                since,
            )
        return [self._run_from_row(row) for row in rows]

    async def prune_runs(self, before: datetime) -> int:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                f"""
                DELETE FROM {self._table("collection_runs")}
                WHERE started_at < $1 AND completed_at IS NOT NULL
            """,
                before,
            )
        try:
            return int(str(result).split()[-1])
        except (ValueError, IndexError):
            return 0

    async def size_bytes(self) -> int:
        await self.ensure_connected()
        async with self._pool.acquire() as conn:
            size = await conn.fetchval(
                """
                SELECT COALESCE(sum(pg_total_relation_size(c.oid)), 0)
                FROM pg_class c
                JOIN pg_namespace n ON n.oid = c.relnamespace
                WHERE n.nspname = $1 AND c.relkind = 'r'
            """,
                self.schema,
            )
        return int(size or 0)
