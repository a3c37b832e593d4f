"""
Durable storage for monitoring logs, performance metrics and monitoring configs
"""
import asyncio
import json
import sqlite3
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from functools import partial
from typing import Any, Callable, List, Optional, Sequence

import structlog

from ..monitoring.exceptions import MetricStoreError
from ..monitoring.models import (
    DetectedIssue, LogContext, LogEntry, LogLevel, MonitoringConfig, PerformanceMetric
)


logger = structlog.get_logger(__name__)


class MetricStore(ABC):
    """Append-only store behind the telemetry pipeline.

    Implementations raise MetricStoreError on any persistence failure.
    """

    @abstractmethod
    async def save_log(self, entry: LogEntry) -> int:
        """Persist a log entry and return its id. Sets entry.id."""

    @abstractmethod
    async def update_log_issues(self, log_id: int, issues: List[DetectedIssue], severity: str):
        """Attach detection results to an already persisted log entry"""

    @abstractmethod
    async def fetch_logs(self, tenant_id: str, app_id: str, limit: Optional[int] = 100,
                         since: Optional[float] = None, with_issues: bool = False) -> List[LogEntry]:
        """Newest-first log entries for a key"""

    @abstractmethod
    async def save_metrics(self, metrics: Sequence[PerformanceMetric]):
        """Append a batch of metrics in one transaction"""

    @abstractmethod
    async def fetch_metrics(self, tenant_id: str, app_id: str, since: float,
                            metric_types: Optional[Sequence[str]] = None,
                            prefix: Optional[str] = None) -> List[PerformanceMetric]:
        """Oldest-first metrics for a key recorded at or after `since`"""

    @abstractmethod
    async def save_config(self, config: MonitoringConfig):
        """Upsert a monitoring config"""

    @abstractmethod
    async def delete_config(self, tenant_id: str, app_id: str) -> bool:
        """Delete a monitoring config. Returns False if none existed."""

    @abstractmethod
    async def load_configs(self) -> List[MonitoringConfig]:
        """All stored monitoring configs"""

    async def close(self):
        """Release resources"""


class SQLiteMetricStore(MetricStore):
    """MetricStore backed by SQLite, with blocking I/O kept off the event loop"""

    def __init__(self, db_path: str = "./data/telemetry.db"):
        self.db_path = db_path
        # single worker keeps SQLite writes serialised
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="metric-store")
        self._ensure_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_database(self):
        """Create database and tables if they don't exist"""
        try:
            conn = self._connect()
            cursor = conn.cursor()

            # 1. monitoring_logs
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS monitoring_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    app_id TEXT NOT NULL,
                    log_content TEXT NOT NULL,
                    log_level TEXT NOT NULL DEFAULT 'info',
                    context TEXT,
                    detected_issues TEXT,
                    severity TEXT NOT NULL DEFAULT 'info',
                    created_at REAL NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_monitoring_logs_key_created
                ON monitoring_logs(tenant_id, app_id, created_at)
            """)

            # 2. performance_metrics
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS performance_metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    app_id TEXT NOT NULL,
                    metric_type TEXT NOT NULL,
                    metric_value REAL NOT NULL,
                    timestamp REAL NOT NULL,
                    metadata TEXT
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_performance_metrics_key_timestamp
                ON performance_metrics(tenant_id, app_id, timestamp)
            """)

            # 3. monitoring_configs
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS monitoring_configs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    app_id TEXT NOT NULL,
                    config TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(tenant_id, app_id)
                )
            """)

            conn.commit()
            conn.close()
            logger.info("Telemetry database initialized", db_path=self.db_path)

        except sqlite3.Error as e:
            logger.error("Failed to initialize telemetry database", error=str(e))
            raise MetricStoreError(f"Failed to initialize database at {self.db_path}: {e}") from e

    async def _run(self, operation: str, fn: Callable[..., Any], *args) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, partial(fn, *args))
        except sqlite3.Error as e:
            logger.error("Metric store operation failed", operation=operation, error=str(e))
            raise MetricStoreError(f"{operation} failed: {e}") from e
        except (ValueError, KeyError) as e:
            # a JSON column or enum value that no longer decodes
            logger.error("Metric store holds unreadable data", operation=operation,
                         error_type=type(e).__name__, error=str(e))
            raise MetricStoreError(f"{operation} failed, unreadable stored data: {e}") from e

    # ========== Log Methods ==========

    async def save_log(self, entry: LogEntry) -> int:
        log_id = await self._run("save_log", self._save_log, entry)
        entry.id = log_id
        return log_id

    def _save_log(self, entry: LogEntry) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute("""
                INSERT INTO monitoring_logs (
                    tenant_id, app_id, log_content, log_level, context,
                    detected_issues, severity, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.tenant_id,
                entry.app_id,
                entry.content,
                entry.level.value,
                json.dumps(entry.context.to_dict()) if entry.context else None,
                _dump_issues(entry.detected_issues),
                entry.max_severity,
                entry.timestamp
            ))
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    async def update_log_issues(self, log_id: int, issues: List[DetectedIssue], severity: str):
        await self._run("update_log_issues", self._update_log_issues, log_id, issues, severity)

    def _update_log_issues(self, log_id: int, issues: List[DetectedIssue], severity: str):
        conn = self._connect()
        try:
            conn.execute("""
                UPDATE monitoring_logs SET detected_issues = ?, severity = ? WHERE id = ?
            """, (_dump_issues(issues), severity, log_id))
            conn.commit()
        finally:
            conn.close()

    async def fetch_logs(self, tenant_id: str, app_id: str, limit: Optional[int] = 100,
                         since: Optional[float] = None, with_issues: bool = False) -> List[LogEntry]:
        return await self._run("fetch_logs", self._fetch_logs,
                               tenant_id, app_id, limit, since, with_issues)

    def _fetch_logs(self, tenant_id: str, app_id: str, limit: Optional[int],
                    since: Optional[float], with_issues: bool) -> List[LogEntry]:
        query = "SELECT * FROM monitoring_logs WHERE tenant_id = ? AND app_id = ?"
        params: List[Any] = [tenant_id, app_id]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(since)
        if with_issues:
            query += " AND detected_issues IS NOT NULL AND detected_issues != '[]'"
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [_row_to_log(row) for row in rows]

    # ========== Metric Methods ==========

    async def save_metrics(self, metrics: Sequence[PerformanceMetric]):
        if not metrics:
            return
        await self._run("save_metrics", self._save_metrics, list(metrics))

    def _save_metrics(self, metrics: List[PerformanceMetric]):
        conn = self._connect()
        try:
            conn.executemany("""
                INSERT INTO performance_metrics (
                    tenant_id, app_id, metric_type, metric_value, timestamp, metadata
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (m.tenant_id, m.app_id, m.metric_type, m.value, m.timestamp,
                 json.dumps(m.metadata) if m.metadata else None)
                for m in metrics
            ])
            conn.commit()
        finally:
            conn.close()

        logger.debug("Metrics saved", count=len(metrics))

    async def fetch_metrics(self, tenant_id: str, app_id: str, since: float,
                            metric_types: Optional[Sequence[str]] = None,
                            prefix: Optional[str] = None) -> List[PerformanceMetric]:
        return await self._run("fetch_metrics", self._fetch_metrics,
                               tenant_id, app_id, since, metric_types, prefix)

    def _fetch_metrics(self, tenant_id: str, app_id: str, since: float,
                       metric_types: Optional[Sequence[str]],
                       prefix: Optional[str]) -> List[PerformanceMetric]:
        query = ("SELECT * FROM performance_metrics "
                 "WHERE tenant_id = ? AND app_id = ? AND timestamp >= ?")
        params: List[Any] = [tenant_id, app_id, since]
        if metric_types:
            query += f" AND metric_type IN ({', '.join('?' for _ in metric_types)})"
            params.extend(metric_types)
        if prefix:
            query += " AND metric_type LIKE ? ESCAPE '\\'"
            params.append(_escape_like(prefix) + "%")
        query += " ORDER BY timestamp ASC, id ASC"

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [
            PerformanceMetric(
                tenant_id=row["tenant_id"],
                app_id=row["app_id"],
                metric_type=row["metric_type"],
                value=row["metric_value"],
                timestamp=row["timestamp"],
                metadata=json.loads(row["metadata"]) if row["metadata"] else {}
            )
            for row in rows
        ]

    # ========== Config Methods ==========

    async def save_config(self, config: MonitoringConfig):
        await self._run("save_config", self._save_config, config)

    def _save_config(self, config: MonitoringConfig):
        now = datetime.now().isoformat()
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO monitoring_configs (tenant_id, app_id, config, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, app_id) DO UPDATE SET
                    config = excluded.config,
                    updated_at = excluded.updated_at
            """, (config.tenant_id, config.app_id, json.dumps(config.to_dict()), now, now))
            conn.commit()
        finally:
            conn.close()

        logger.debug("Monitoring config saved", tenant_id=config.tenant_id, app_id=config.app_id)

    async def delete_config(self, tenant_id: str, app_id: str) -> bool:
        return await self._run("delete_config", self._delete_config, tenant_id, app_id)

    def _delete_config(self, tenant_id: str, app_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("""
                DELETE FROM monitoring_configs WHERE tenant_id = ? AND app_id = ?
            """, (tenant_id, app_id))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def load_configs(self) -> List[MonitoringConfig]:
        return await self._run("load_configs", self._load_configs)

    def _load_configs(self) -> List[MonitoringConfig]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT config FROM monitoring_configs ORDER BY id").fetchall()
        finally:
            conn.close()
        return [MonitoringConfig.from_dict(json.loads(row["config"])) for row in rows]

    async def close(self):
        self._executor.shutdown(wait=True)


def _dump_issues(issues: Optional[List[DetectedIssue]]) -> Optional[str]:
    if issues is None:
        return None
    return json.dumps([issue.to_dict() for issue in issues])


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_log(row: sqlite3.Row) -> LogEntry:
    issues = row["detected_issues"]
    return LogEntry(
        id=row["id"],
        tenant_id=row["tenant_id"],
        app_id=row["app_id"],
        content=row["log_content"],
        timestamp=row["created_at"],
        level=LogLevel(row["log_level"]),
        context=LogContext.from_dict(json.loads(row["context"])) if row["context"] else None,
        detected_issues=([DetectedIssue.from_dict(i) for i in json.loads(issues)]
                         if issues is not None else None)
    )
