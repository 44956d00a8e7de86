"""
PostgreSQL adapter for the observed system.

Polls the statistics views over a small asyncpg pool. Reads are single
statements; those that may wait on the lock manager run inside a
transaction with ``lock_timeout`` set, so a blocked catalog can never
stall the collector past its bound.
"""

import logging
from typing import Any, Dict, List, Optional, Set

import asyncpg

from pg_telemetry.config import ConfigStore
from pg_telemetry.exceptions import StorageError
from pg_telemetry.schemas import (
    ActiveOperation,
    CounterReading,
    LockEdge,
    ProgressRecord,
    ReplicaStats,
    StatementStats,
    TableStats,
    WaitEventCount,
)
from pg_telemetry.storage.postgres import STORAGE_APPLICATION_NAME

logger = logging.getLogger(__name__)

APPLICATION_NAME = "pg_telemetry"

# Sessions of the collector itself, storage pool included
OWN_APPLICATION_NAMES = [APPLICATION_NAME, STORAGE_APPLICATION_NAME]

WAIT_EVENTS_SQL = """
    SELECT COALESCE(wait_event_type, 'Running') AS category,
           COALESCE(wait_event, 'CPU') AS event,
           COALESCE(state, 'unknown') AS state,
           count(*)::integer AS count
    FROM pg_stat_activity
    WHERE pid <> pg_backend_pid()
    GROUP BY 1, 2, 3
"""

ACTIVE_OPERATIONS_SQL = """
    SELECT pid, usename, application_name, state, wait_event_type, wait_event,
           query_start, state_change, left(query, $2) AS preview
    FROM pg_stat_activity
    WHERE state IS NOT NULL AND state <> 'idle' AND pid <> pg_backend_pid()
    ORDER BY query_start ASC NULLS LAST
    LIMIT $1
"""

LOCK_GRAPH_SQL = """
    SELECT DISTINCT ON (blocked.pid, blocking.pid)
           blocked.pid AS blocked_pid,
           blocking.pid AS blocking_pid,
           EXTRACT(EPOCH FROM (now() - blocked.query_start)) AS blocked_seconds,
           l.locktype AS lock_type,
           CASE WHEN l.relation IS NOT NULL THEN l.relation::regclass::text END AS locked_object,
           left(blocked.query, $1) AS blocked_preview,
           left(blocking.query, $1) AS blocking_preview
    FROM pg_stat_activity blocked
    JOIN LATERAL unnest(pg_blocking_pids(blocked.pid)) AS b(pid) ON TRUE
    JOIN pg_stat_activity blocking ON blocking.pid = b.pid
    LEFT JOIN pg_locks l ON l.pid = blocked.pid AND NOT l.granted
    WHERE blocked.pid <> pg_backend_pid()
"""

PROGRESS_SQL = """
    SELECT 'vacuum' AS operation, pid, relid::regclass::text AS target, phase,
           heap_blks_total AS blocks_total, heap_blks_vacuumed AS blocks_done,
           NULL::bigint AS tuples_total, NULL::bigint AS tuples_done,
           NULL::bigint AS bytes_total, NULL::bigint AS bytes_done
    FROM pg_stat_progress_vacuum
    UNION ALL
    SELECT 'copy', pid, relid::regclass::text, command || '/' || type,
           NULL, NULL, NULL, tuples_processed, bytes_total, bytes_processed
    FROM pg_stat_progress_copy
    UNION ALL
    SELECT 'analyze', pid, relid::regclass::text, phase,
           sample_blks_total, sample_blks_scanned, NULL, NULL, NULL, NULL
    FROM pg_stat_progress_analyze
    UNION ALL
    SELECT 'create_index', pid, relid::regclass::text, phase,
           blocks_total, blocks_done, tuples_total, tuples_done, NULL, NULL
    FROM pg_stat_progress_create_index
"""

STRUCTURAL_LOCKS_SQL = """
    SELECT DISTINCT
           CASE WHEN l.locktype = 'object' THEN l.classid::regclass::text
                ELSE 'pg_class' END AS category
    FROM pg_locks l
    WHERE l.pid <> pg_backend_pid()
      AND l.pid NOT IN (
          SELECT pid FROM pg_stat_activity WHERE application_name = ANY($1::text[])
      )
      AND l.granted
      AND l.mode = 'AccessExclusiveLock'
      AND l.locktype IN ('relation', 'object')
"""

TABLE_STATS_SQL = """
    SELECT schemaname, relname,
           pg_relation_size(relid) AS size_bytes,
           pg_total_relation_size(relid) AS total_size_bytes,
           n_live_tup, n_dead_tup, n_tup_ins, n_tup_upd, n_tup_del, n_tup_hot_upd,
           autovacuum_count, autoanalyze_count, last_autovacuum, last_autoanalyze
    FROM pg_stat_user_tables
    WHERE (schemaname || '.' || relname) = ANY($1::text[])
"""

STATEMENTS_AVAILABLE_SQL = "SELECT to_regclass('pg_stat_statements') IS NOT NULL"

STATEMENTS_SQL = """
    SELECT s.queryid, s.userid::bigint AS userid, left(s.query, $3) AS preview,
           s.calls, s.total_exec_time, s.mean_exec_time, s.rows,
           s.shared_blks_hit, s.shared_blks_read, s.shared_blks_written,
           s.temp_blks_read, s.temp_blks_written, s.wal_bytes
    FROM pg_stat_statements s
    JOIN pg_database d ON d.oid = s.dbid
    WHERE d.datname = current_database()
      AND s.queryid IS NOT NULL
      AND s.calls >= $2
    ORDER BY s.total_exec_time DESC
    LIMIT $1
"""

REPLICATION_SQL = """
    SELECT pid, client_addr::text AS client_addr, application_name, state, sync_state,
           sent_lsn::text AS sent_lsn, write_lsn::text AS write_lsn,
           flush_lsn::text AS flush_lsn, replay_lsn::text AS replay_lsn,
           pg_wal_lsn_diff(sent_lsn, replay_lsn)::bigint AS replay_lag_bytes,
           EXTRACT(EPOCH FROM write_lag) AS write_lag_seconds,
           EXTRACT(EPOCH FROM flush_lag) AS flush_lag_seconds,
           EXTRACT(EPOCH FROM replay_lag) AS replay_lag_seconds
    FROM pg_stat_replication
    ORDER BY application_name, pid
"""

class PostgresObservedSystem:
    """
    ``ObservedSystem`` backed by PostgreSQL statistics views.

    Requires PostgreSQL 14 or newer (pg_stat_wal, pg_stat_progress_copy).
    """

    supports_lock_observation = True

    def __init__(
        self,
        dsn: str,
        own_schema: Optional[str] = "telemetry",
        lock_timeout_ms: int = 1000,
        pool_max_size: int = 2,
        preview_chars: int = 200,
        config: Optional[ConfigStore] = None,
    ):
        """
        Args:
            dsn: PostgreSQL connection string
            own_schema: Schema of the collector's own storage when hosted on
                the observed database, None otherwise
            lock_timeout_ms: lock_timeout for reads that may wait on locks
            pool_max_size: Maximum connection pool size
            preview_chars: Length of statement previews
            config: Live settings; when given, lock_timeout_seconds and
                query_preview_chars are read from it on every call
        """
        self.dsn = dsn
        self.own_schema = own_schema
        self.lock_timeout_ms = lock_timeout_ms
        self.pool_max_size = pool_max_size
        self.preview_chars = preview_chars
        self.config = config
        self._pool: Optional[Any] = None
        self._server_version: Optional[int] = None

    async def connect(self) -> None:
        if self._pool:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=self.pool_max_size,
                server_settings={"application_name": APPLICATION_NAME},
            )
        except Exception as e:
            logger.error(f"Failed to connect to observed database: {e}")
            raise StorageError(f"Failed to connect to observed database: {e}") from e
        async with self._pool.acquire() as conn:
            self._server_version = int(await conn.fetchval("SHOW server_version_num"))
        logger.info(f"Connected to observed database (server_version_num={self._server_version})")

    async def disconnect(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def _ensure_connected(self) -> None:
        if not self._pool:
            await self.connect()

    def _lock_timeout_ms(self) -> int:
        if self.config is not None:
            # 0 would disable the timeout
            return max(1, int(self.config.current().lock_timeout_seconds * 1000))
        return int(self.lock_timeout_ms)

    def _preview_chars(self) -> int:
        if self.config is not None:
            return self.config.current().query_preview_chars
        return self.preview_chars

    async def _fetch(self, query: str, *args, bounded: bool = False) -> List[Any]:
        await self._ensure_connected()
        async with self._pool.acquire() as conn:
            if not bounded:
                return await conn.fetch(query, *args)
            async with conn.transaction(readonly=True):
                await conn.execute(f"SET LOCAL lock_timeout = {self._lock_timeout_ms()}")
                return await conn.fetch(query, *args)

    async def _fetchval(self, query: str, *args) -> Any:
        await self._ensure_connected()
        async with self._pool.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def read_wait_events(self) -> List[WaitEventCount]:
        rows = await self._fetch(WAIT_EVENTS_SQL)
        return [
            WaitEventCount(
                category=row["category"], event=row["event"], state=row["state"], count=row["count"]
            )
            for row in rows
        ]

    async def read_active_operations(self, limit: int) -> List[ActiveOperation]:
        rows = await self._fetch(ACTIVE_OPERATIONS_SQL, limit, self._preview_chars())
        return [
            ActiveOperation(
                unit_id=row["pid"],
                user=row["usename"],
                application=row["application_name"],
                state=row["state"],
                wait_category=row["wait_event_type"],
                wait_event=row["wait_event"],
                started_at=row["query_start"],
                state_changed_at=row["state_change"],
                text_preview=row["preview"],
            )
            for row in rows
        ]

    async def read_lock_graph(self) -> List[LockEdge]:
        rows = await self._fetch(LOCK_GRAPH_SQL, self._preview_chars(), bounded=True)
        return [
            LockEdge(
                blocked_unit=row["blocked_pid"],
                blocking_unit=row["blocking_pid"],
                blocked_duration_seconds=max(0.0, float(row["blocked_seconds"] or 0)),
                lock_type=row["lock_type"],
                locked_object=row["locked_object"],
                blocked_preview=row["blocked_preview"],
                blocking_preview=row["blocking_preview"],
            )
            for row in rows
        ]

    async def read_progress(self) -> List[ProgressRecord]:
        rows = await self._fetch(PROGRESS_SQL)
        return [
            ProgressRecord(
                operation=row["operation"],
                unit_id=row["pid"],
                target=row["target"],
                phase=row["phase"],
                blocks_total=row["blocks_total"],
                blocks_done=row["blocks_done"],
                tuples_total=row["tuples_total"],
                tuples_done=row["tuples_done"],
                bytes_total=row["bytes_total"],
                bytes_done=row["bytes_done"],
            )
            for row in rows
        ]

    def _checkpoint_sql(self) -> str:
        if (self._server_version or 0) >= 170000:
            return """
                SELECT c.num_timed AS checkpoints_timed,
                       c.num_requested AS checkpoints_requested,
                       c.write_time AS checkpoint_write_time_ms,
                       c.sync_time AS checkpoint_sync_time_ms,
                       c.buffers_written AS buffers_checkpoint,
                       b.buffers_clean, b.maxwritten_clean, b.buffers_alloc,
                       c.stats_reset AS checkpointer_reset
                FROM pg_stat_checkpointer c CROSS JOIN pg_stat_bgwriter b
            """
        return """
            SELECT b.checkpoints_timed,
                   b.checkpoints_req AS checkpoints_requested,
                   b.checkpoint_write_time AS checkpoint_write_time_ms,
                   b.checkpoint_sync_time AS checkpoint_sync_time_ms,
                   b.buffers_checkpoint, b.buffers_clean, b.maxwritten_clean,
                   b.buffers_alloc, b.buffers_backend, b.buffers_backend_fsync,
                   b.stats_reset AS checkpointer_reset
            FROM pg_stat_bgwriter b
        """

    async def read_cumulative_counters(self) -> CounterReading:
        await self._ensure_connected()
        counters: Dict[str, float] = {}
        gauges: Dict[str, float] = {}
        async with self._pool.acquire() as conn:
            checkpoint = await conn.fetchrow(self._checkpoint_sql())
            wal = await conn.fetchrow(
                "SELECT wal_records, wal_fpi, wal_bytes, stats_reset FROM pg_stat_wal"
            )
            database = await conn.fetchrow(
                """
                SELECT xact_commit, xact_rollback, blks_read, blks_hit, temp_files,
                       temp_bytes, deadlocks, stats_reset
                FROM pg_stat_database WHERE datname = current_database()
            """
            )
            control = await conn.fetchrow(
                "SELECT checkpoint_time, redo_lsn::text AS redo_lsn FROM pg_control_checkpoint()"
            )
            started = await conn.fetchval("SELECT pg_postmaster_start_time()")
            autovacuum_workers = await conn.fetchval(
                "SELECT count(*) FROM pg_stat_activity WHERE backend_type = 'autovacuum worker'"
            )
            slots = await conn.fetchrow(
                """
                SELECT count(*) AS slots,
                       COALESCE(max(pg_wal_lsn_diff(pg_current_wal_lsn(), restart_lsn)), 0)
                           AS max_retained
                FROM pg_replication_slots
            """
            )

        resets = []
        for row in (checkpoint, wal, database):
            if row is None:
                continue
            for key, value in row.items():
                if key.endswith("reset") or key == "stats_reset":
                    resets.append(str(value))
                elif value is not None:
                    counters[key] = float(value)

        gauges["autovacuum_workers"] = float(autovacuum_workers or 0)
        if slots is not None:
            gauges["replication_slots"] = float(slots["slots"])
            gauges["slots_max_retained_wal_bytes"] = float(slots["max_retained"])

        return CounterReading(
            counters=counters,
            gauges=gauges,
            structural_marker=f"{control['checkpoint_time']}|{control['redo_lsn']}" if control else None,
            epoch="|".join([str(started)] + resets),
        )

    async def read_structural_lock_events(self) -> Set[str]:
        rows = await self._fetch(STRUCTURAL_LOCKS_SQL, OWN_APPLICATION_NAMES, bounded=True)
        return {row["category"] for row in rows}

    async def read_own_storage_footprint(self) -> Optional[int]:
        if not self.own_schema:
            return None
        size = await self._fetchval(
            """
            SELECT COALESCE(sum(pg_total_relation_size(c.oid)), 0)
            FROM pg_class c JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = $1 AND c.relkind = 'r'
        """,
            self.own_schema,
        )
        return int(size or 0)

    async def count_active_units(self) -> int:
        return int(
            await self._fetchval(
                "SELECT count(*) FROM pg_stat_activity WHERE state = 'active' AND pid <> pg_backend_pid()"
            )
        )

    async def count_blocked_units(self) -> int:
        return int(await self._fetchval("SELECT count(DISTINCT pid) FROM pg_locks WHERE NOT granted"))

    async def unit_capacity(self) -> int:
        return int(await self._fetchval("SELECT current_setting('max_connections')::integer"))

    async def read_table_stats(self, tables: List[str]) -> List[TableStats]:
        names = [t if "." in t else f"public.{t}" for t in tables]
        rows = await self._fetch(TABLE_STATS_SQL, names)
        return [
            TableStats(
                schema_name=row["schemaname"],
                table_name=row["relname"],
                size_bytes=row["size_bytes"],
                total_size_bytes=row["total_size_bytes"],
                live_tuples=row["n_live_tup"],
                dead_tuples=row["n_dead_tup"],
                inserts=row["n_tup_ins"],
                updates=row["n_tup_upd"],
                deletes=row["n_tup_del"],
                hot_updates=row["n_tup_hot_upd"],
                autovacuum_count=row["autovacuum_count"],
                autoanalyze_count=row["autoanalyze_count"],
                last_autovacuum=row["last_autovacuum"],
                last_autoanalyze=row["last_autoanalyze"],
            )
            for row in rows
        ]

    async def read_statement_stats(self, limit: int, min_calls: int) -> List[StatementStats]:
        """Top statements by total execution time; empty without pg_stat_statements."""
        if not await self._fetchval(STATEMENTS_AVAILABLE_SQL):
            logger.debug("pg_stat_statements not installed, skipping statement stats")
            return []
        rows = await self._fetch(STATEMENTS_SQL, limit, min_calls, self._preview_chars())
        return [
            StatementStats(
                query_id=row["queryid"],
                user_id=row["userid"],
                query_preview=row["preview"],
                calls=row["calls"],
                total_exec_time_ms=float(row["total_exec_time"] or 0),
                mean_exec_time_ms=row["mean_exec_time"],
                rows=row["rows"],
                shared_blks_hit=row["shared_blks_hit"],
                shared_blks_read=row["shared_blks_read"],
                shared_blks_written=row["shared_blks_written"],
                temp_blks_read=row["temp_blks_read"],
                temp_blks_written=row["temp_blks_written"],
                wal_bytes=float(row["wal_bytes"]) if row["wal_bytes"] is not None else None,
            )
            for row in rows
        ]

    async def read_replication(self) -> List[ReplicaStats]:
        rows = await self._fetch(REPLICATION_SQL)
        return [
            ReplicaStats(
                unit_id=row["pid"],
                client_addr=row["client_addr"],
                application=row["application_name"],
                state=row["state"],
                sync_state=row["sync_state"],
                sent_lsn=row["sent_lsn"],
                write_lsn=row["write_lsn"],
                flush_lsn=row["flush_lsn"],
                replay_lsn=row["replay_lsn"],
                replay_lag_bytes=row["replay_lag_bytes"],
                write_lag_seconds=_seconds(row["write_lag_seconds"]),
                flush_lag_seconds=_seconds(row["flush_lag_seconds"]),
                replay_lag_seconds=_seconds(row["replay_lag_seconds"]),
            )
            for row in rows
        ]


def _seconds(value: Any) -> Optional[float]:
    return float(value) if value is not None else None
