#!/usr/bin/env python3
"""
Database models and operations for the News Digest runner.

This module holds the record types shared across the pipeline, the versioned
schema migrations, and the `DatabaseQueue` that serializes every store
operation onto a single SQLite connection.
"""

from os import path, access, R_OK
from time import time
from dataclasses import dataclass, field, asdict
from sqlite3 import connect, Row, Connection
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Callable, Tuple

from config import config, get_logger, TERMINAL_STATUSES
from telemetry import trace_span
from utils import safe_parse_json_array

logger = get_logger("models")

SOURCE_TYPES = ("feed", "json-api")
SOURCE_TYPE_ALIASES = {"rss": "feed", "atom": "feed", "api": "json-api"}
SETTINGS_FIELDS = (
    "resend_api_key", "llm_provider", "llm_api_key", "llm_model", "default_sender",
    "admin_email", "source_items_limit", "source_lookback_days", "tavily_api_key",
)

_TERMINAL_SQL = ", ".join(f"'{status}'" for status in TERMINAL_STATUSES)


# Records

@dataclass
class NewsItem:
    """One normalized article produced by a source fetch or web search."""
    title: str
    url: str
    published_at: Optional[str] = None
    summary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SourceFetchResult:
    items: List[NewsItem]
    total_item_count: int
    processed_item_count: int


@dataclass
class Source:
    id: int
    name: str
    type: str
    url: str
    item_path: Optional[str] = None
    enabled: bool = True
    last_tested_at: Optional[int] = None
    last_test_status: Optional[str] = None
    last_test_message: Optional[str] = None

    @property
    def label(self) -> str:
        return (self.name or "").strip() or self.url

    @classmethod
    def from_row(cls, row: Row) -> "Source":
        return cls(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            url=row["url"],
            item_path=row["item_path"],
            enabled=bool(row["enabled"]),
            last_tested_at=row["last_tested_at"],
            last_test_status=row["last_test_status"],
            last_test_message=row["last_test_message"],
        )


@dataclass
class ConfigSet:
    """A named digest job: prompt, schedule, recipients and (via a join) sources."""
    id: int
    name: str
    enabled: bool
    schedule_cron: str
    prompt: str
    recipients_json: str = "[]"
    use_web_search: bool = False

    @property
    def recipients(self) -> List[str]:
        return [str(r).strip() for r in safe_parse_json_array(self.recipients_json) if str(r).strip()]

    @property
    def schedules(self) -> List[str]:
        return [part.strip() for part in (self.schedule_cron or "").split(",") if part.strip()]

    @classmethod
    def from_row(cls, row: Row) -> "ConfigSet":
        return cls(
            id=row["id"],
            name=row["name"],
            enabled=bool(row["enabled"]),
            schedule_cron=row["schedule_cron"],
            prompt=row["prompt"],
            recipients_json=row["recipients"] or "[]",
            use_web_search=bool(row["use_web_search"]),
        )


@dataclass
class GlobalSettings:
    resend_api_key: Optional[str] = None
    llm_provider: str = "gemini"
    llm_api_key: Optional[str] = None
    llm_model: Optional[str] = None
    default_sender: Optional[str] = None
    admin_email: Optional[str] = None
    source_items_limit: int = 20
    source_lookback_days: Optional[int] = None
    tavily_api_key: Optional[str] = None

    @property
    def effective_items_limit(self) -> int:
        """Per-source item cap, falling back to the configured default when unset or non-positive."""
        if self.source_items_limit and self.source_items_limit > 0:
            return self.source_items_limit
        return config.DEFAULT_SOURCE_ITEMS_LIMIT

    @property
    def effective_lookback_days(self) -> Optional[int]:
        if self.source_lookback_days and self.source_lookback_days > 0:
            return self.source_lookback_days
        return None

    @classmethod
    def from_row(cls, row: Optional[Row]) -> "GlobalSettings":
        if row is None:
            return cls()
        return cls(
            resend_api_key=row["resend_api_key"],
            llm_provider=row["llm_provider"] or "gemini",
            llm_api_key=row["llm_api_key"],
            llm_model=row["llm_model"],
            default_sender=row["default_sender"],
            admin_email=row["admin_email"],
            source_items_limit=row["source_items_limit"],
            source_lookback_days=row["source_lookback_days"],
            tavily_api_key=row["tavily_api_key"],
        )


@dataclass
class Run:
    """One execution attempt of a config set, with its ordered status history."""
    id: int
    config_set_id: int
    started_at: int
    status: str
    history: List[str] = field(default_factory=list)
    finished_at: Optional[int] = None
    item_count: Optional[int] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    email_id: Optional[str] = None
    config_name: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Schema and migrations

def _read_schema_file() -> str:
    """Read version 1 of the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


def _table_columns(conn: Connection, table: str) -> List[str]:
    cursor = conn.cursor()
    cursor.execute(f"PRAGMA table_info({table})")
    return [column[1] for column in cursor.fetchall()]


def _migrate_initial_schema(conn: Connection) -> None:
    conn.executescript(_read_schema_file())


def _migrate_web_search(conn: Connection) -> None:
    # Databases created from an edited schema.sql may already carry these columns
    if "use_web_search" not in _table_columns(conn, "config_set"):
        conn.execute("ALTER TABLE config_set ADD COLUMN use_web_search INTEGER NOT NULL DEFAULT 0")
    if "tavily_api_key" not in _table_columns(conn, "global_settings"):
        conn.execute("ALTER TABLE global_settings ADD COLUMN tavily_api_key TEXT")


MIGRATIONS: List[Tuple[int, str, Callable[[Connection], None]]] = [
    (1, "initial schema", _migrate_initial_schema),
    (2, "web search settings", _migrate_web_search),
]


def get_schema_version(conn: Connection) -> int:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_version ("
        "version INTEGER PRIMARY KEY, description TEXT NOT NULL, applied_at INTEGER NOT NULL)"
    )
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def apply_migrations(conn: Connection) -> List[int]:
    """Apply every pending migration in order, each in its own transaction.

    Returns:
        The versions applied by this call (empty when the schema is current).
    """
    current = get_schema_version(conn)
    conn.commit()
    applied: List[int] = []
    for version, description, migrate in MIGRATIONS:
        if version <= current:
            continue
        logger.info(f"Applying schema migration {version}: {description}")
        try:
            migrate(conn)
            conn.execute(
                "INSERT INTO schema_version (version, description, applied_at) VALUES (?, ?, ?)",
                (version, description, int(time())),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            logger.error(f"Schema migration {version} failed")
            raise
        applied.append(version)
    if applied:
        logger.info(f"Database schema now at version {applied[-1]}")
    else:
        logger.debug(f"Database schema already at version {current}")
    return applied


def open_database(db_path: str) -> Connection:
    """Open a connection with row access by name and foreign keys enforced, then migrate."""
    if not path.isfile(db_path) and db_path != ":memory:":
        logger.info(f"Database file {db_path} does not exist. A new database will be created.")
    conn = connect(db_path)
    conn.row_factory = Row
    conn.execute("PRAGMA foreign_keys = ON")
    apply_migrations(conn)
    return conn


class DatabaseQueue:
    """Serializes store operations onto one SQLite connection.

    Callers `await db.execute("op_name", **params)`; the worker runs the
    matching method below, one at a time, and each method commits its own
    transaction.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Event] = {}
        self.conn: Optional[Connection] = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database, apply pending migrations and start the worker."""
        if self.running:
            return
        # Opened here so migration errors surface to the caller
        self.conn = open_database(self.db_path)
        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info(f"Database worker started ({self.db_path})")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
        if not self.running:
            return
        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
        if self.conn:
            self.conn.close()
            self.conn = None
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.info("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue
                try:
                    method = getattr(self, f"op_{operation_name}", None)
                    if method is None:
                        self.results[operation_id] = {"error": ValueError(f"Unknown operation: {operation_name}")}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn is not None and self.conn.in_transaction:
                        self.conn.rollback()
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()
            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a named store operation and return its result.

        Raises:
            RuntimeError: If the worker is not running.
            Exception: Whatever the operation raised.
        """
        if not self.running:
            raise RuntimeError("Database worker is not running")
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database worker stopped before completing {operation_name}")
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Run lifecycle operations

    def _insert_status(self, cursor, run_id: int, status: str, recorded_at: int) -> None:
        cursor.execute(
            "INSERT INTO run_status (run_id, seq, status, recorded_at) "
            "SELECT ?, COALESCE(MAX(seq), 0) + 1, ?, ? FROM run_status WHERE run_id = ?",
            (run_id, status, recorded_at, run_id),
        )
        cursor.execute("UPDATE run_log SET status = ? WHERE id = ?", (status, run_id))

    def op_create_run(self, config_set_id: int, started_at: int, status: str,
                      allow_concurrent: bool = False) -> Dict[str, Optional[int]]:
        """Insert a run with its first history entry.

        Unless `allow_concurrent` is set, refuses when the config set already
        has a non-terminal run and reports that run's id instead.
        """
        cursor = self.conn.cursor()
        if not allow_concurrent:
            cursor.execute(
                f"SELECT id FROM run_log WHERE config_set_id = ? AND status NOT IN ({_TERMINAL_SQL}) "
                "ORDER BY id DESC LIMIT 1",
                (config_set_id,),
            )
            existing = cursor.fetchone()
            if existing:
                return {"run_id": None, "conflict_run_id": existing["id"]}
        cursor.execute(
            "INSERT INTO run_log (config_set_id, started_at, status, item_count) VALUES (?, ?, ?, 0)",
            (config_set_id, started_at, status),
        )
        run_id = cursor.lastrowid
        cursor.execute(
            "INSERT INTO run_status (run_id, seq, status, recorded_at) VALUES (?, 1, ?, ?)",
            (run_id, status, started_at),
        )
        self.conn.commit()
        return {"run_id": run_id, "conflict_run_id": None}

    def op_append_run_status(self, run_id: int, status: str, recorded_at: Optional[int] = None) -> bool:
        """Append a progress entry. Returns False when the run is already terminal."""
        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT 1 FROM run_log WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})", (run_id,)
        )
        if cursor.fetchone() is None:
            return False
        self._insert_status(cursor, run_id, status, recorded_at or int(time()))
        self.conn.commit()
        return True

    def op_finish_run(self, run_id: int, status: str, finished_at: Optional[int] = None,
                      item_count: Optional[int] = None, email_id: Optional[str] = None,
                      error_message: Optional[str] = None, error_stack: Optional[str] = None) -> bool:
        """Move a run to a terminal status. The first terminal write wins.

        Returns:
            True if this call made the run terminal, False if it already was.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")
        finished_at = finished_at or int(time())
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE run_log SET finished_at = ?, item_count = COALESCE(?, item_count), email_id = ?, "
            "error_message = ?, error_stack = ? "
            f"WHERE id = ? AND status NOT IN ({_TERMINAL_SQL})",
            (finished_at, item_count, email_id, error_message, error_stack, run_id),
        )
        if cursor.rowcount == 0:
            self.conn.rollback()
            return False
        self._insert_status(cursor, run_id, status, finished_at)
        self.conn.commit()
        return True

    def op_reclaim_stale_runs(self, cutoff: int, message: str, now: Optional[int] = None) -> List[int]:
        """Fail every non-terminal run started at or before `cutoff`.

        Keeps an existing error message; otherwise records `message`.
        """
        now = now or int(time())
        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT id FROM run_log WHERE status NOT IN ({_TERMINAL_SQL}) AND started_at <= ? ORDER BY id",
            (cutoff,),
        )
        run_ids = [row["id"] for row in cursor.fetchall()]
        for run_id in run_ids:
            cursor.execute(
                "UPDATE run_log SET finished_at = ?, error_message = CASE "
                "WHEN error_message IS NULL OR trim(error_message) = '' THEN ? ELSE error_message END "
                "WHERE id = ?",
                (now, message, run_id),
            )
            self._insert_status(cursor, run_id, "failed", now)
        self.conn.commit()
        return run_ids

    def _run_history(self, run_id: int) -> List[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT status FROM run_status WHERE run_id = ? ORDER BY seq", (run_id,))
        return [row["status"] for row in cursor.fetchall()]

    def _run_from_row(self, row: Row) -> Run:
        return Run(
            id=row["id"],
            config_set_id=row["config_set_id"],
            started_at=row["started_at"],
            status=row["status"],
            history=self._run_history(row["id"]),
            finished_at=row["finished_at"],
            item_count=row["item_count"],
            error_message=row["error_message"],
            error_stack=row["error_stack"],
            email_id=row["email_id"],
            config_name=row["config_name"],
        )

    _RUN_SELECT = (
        "SELECT r.id, r.config_set_id, r.started_at, r.finished_at, r.status, r.item_count, "
        "r.error_message, r.error_stack, r.email_id, c.name AS config_name "
        "FROM run_log r LEFT JOIN config_set c ON c.id = r.config_set_id"
    )

    def op_get_run(self, run_id: int) -> Optional[Run]:
        cursor = self.conn.cursor()
        cursor.execute(f"{self._RUN_SELECT} WHERE r.id = ?", (run_id,))
        row = cursor.fetchone()
        return self._run_from_row(row) if row else None

    def op_list_runs(self, limit: int = 50, offset: int = 0) -> List[Run]:
        """Most recent runs first, each with its full status history."""
        cursor = self.conn.cursor()
        cursor.execute(f"{self._RUN_SELECT} ORDER BY r.id DESC LIMIT ? OFFSET ?", (limit, offset))
        return [self._run_from_row(row) for row in cursor.fetchall()]

    def op_count_runs(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM run_log").fetchone()
        return row[0]

    def op_count_runs_by_status(self) -> Dict[str, int]:
        """Terminal statuses by name; every other status counted as 'running'."""
        counts: Dict[str, int] = {}
        for row in self.conn.execute("SELECT status, COUNT(*) AS n FROM run_log GROUP BY status"):
            key = row["status"] if row["status"] in TERMINAL_STATUSES else "running"
            counts[key] = counts.get(key, 0) + row["n"]
        return counts

    # Config set and source reads

    def op_get_config_set(self, config_set_id: int) -> Optional[ConfigSet]:
        row = self.conn.execute("SELECT * FROM config_set WHERE id = ?", (config_set_id,)).fetchone()
        return ConfigSet.from_row(row) if row else None

    def op_list_config_sets(self) -> List[ConfigSet]:
        return [ConfigSet.from_row(row) for row in self.conn.execute("SELECT * FROM config_set ORDER BY id")]

    def op_get_enabled_config_sets_for_cron(self, cron: str) -> List[ConfigSet]:
        """Enabled config sets whose comma-separated schedule contains `cron` verbatim."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM config_set WHERE enabled = 1 "
            "AND (',' || schedule_cron || ',') LIKE ('%,' || ? || ',%') ORDER BY id",
            (cron,),
        )
        return [ConfigSet.from_row(row) for row in cursor.fetchall()]

    def op_get_config_sources(self, config_set_id: int) -> List[Source]:
        """Enabled sources of a config set in their configured order."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT s.* FROM source s JOIN config_set_source css ON s.id = css.source_id "
            "WHERE css.config_set_id = ? AND s.enabled = 1 ORDER BY css.position, s.id",
            (config_set_id,),
        )
        return [Source.from_row(row) for row in cursor.fetchall()]

    def op_get_source(self, source_id: int) -> Optional[Source]:
        row = self.conn.execute("SELECT * FROM source WHERE id = ?", (source_id,)).fetchone()
        return Source.from_row(row) if row else None

    def op_list_sources(self) -> List[Source]:
        return [Source.from_row(row) for row in self.conn.execute("SELECT * FROM source ORDER BY id")]

    def op_record_source_test(self, source_id: int, status: str, message: str,
                              tested_at: Optional[int] = None) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE source SET last_tested_at = ?, last_test_status = ?, last_test_message = ? WHERE id = ?",
            (tested_at or int(time()), status, message, source_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # Global settings

    def op_get_global_settings(self) -> GlobalSettings:
        row = self.conn.execute("SELECT * FROM global_settings WHERE id = 1").fetchone()
        return GlobalSettings.from_row(row)

    def op_save_global_settings(self, **fields) -> GlobalSettings:
        """Update the named settings fields; unknown names are rejected."""
        unknown = set(fields) - set(SETTINGS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown global settings fields: {', '.join(sorted(unknown))}")
        if fields:
            assignments = ", ".join(f"{name} = ?" for name in fields)
            self.conn.execute(
                f"UPDATE global_settings SET {assignments}, updated_at = ? WHERE id = 1",
                (*fields.values(), int(time())),
            )
            self.conn.commit()
        return self.op_get_global_settings()

    # Catalog sync

    def op_sync_catalog(self, sources: List[Dict[str, Any]], config_sets: List[Dict[str, Any]],
                        settings: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        """Upsert sources and config sets by name and rewrite their joins in listed order.

        Input dicts are already validated by the catalog loader. Everything is
        applied in a single transaction.
        """
        now = int(time())
        cursor = self.conn.cursor()
        source_ids: Dict[str, int] = {}
        try:
            for src in sources:
                cursor.execute(
                    "INSERT INTO source (name, type, url, item_path, enabled, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(name) DO UPDATE SET type = excluded.type, url = excluded.url, "
                    "item_path = excluded.item_path, enabled = excluded.enabled, updated_at = excluded.updated_at",
                    (src["name"], src["type"], src["url"], src.get("item_path"),
                     1 if src.get("enabled", True) else 0, now, now),
                )
                row = cursor.execute("SELECT id FROM source WHERE name = ?", (src["name"],)).fetchone()
                source_ids[src["name"]] = row["id"]

            for cs in config_sets:
                cursor.execute(
                    "INSERT INTO config_set (name, enabled, schedule_cron, prompt, recipients, use_web_search, "
                    "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(name) DO UPDATE SET enabled = excluded.enabled, "
                    "schedule_cron = excluded.schedule_cron, prompt = excluded.prompt, "
                    "recipients = excluded.recipients, use_web_search = excluded.use_web_search, "
                    "updated_at = excluded.updated_at",
                    (cs["name"], 1 if cs.get("enabled", True) else 0, cs["schedule_cron"], cs["prompt"],
                     cs["recipients_json"], 1 if cs.get("use_web_search") else 0, now, now),
                )
                cs_id = cursor.execute("SELECT id FROM config_set WHERE name = ?", (cs["name"],)).fetchone()["id"]
                cursor.execute("DELETE FROM config_set_source WHERE config_set_id = ?", (cs_id,))
                for position, source_name in enumerate(cs.get("sources", [])):
                    if source_name not in source_ids:
                        row = cursor.execute("SELECT id FROM source WHERE name = ?", (source_name,)).fetchone()
                        if row is None:
                            raise ValueError(f"Config set '{cs['name']}' references unknown source '{source_name}'")
                        source_ids[source_name] = row["id"]
                    cursor.execute(
                        "INSERT OR IGNORE INTO config_set_source (config_set_id, source_id, position) VALUES (?, ?, ?)",
                        (cs_id, source_ids[source_name], position),
                    )

            if settings:
                unknown = set(settings) - set(SETTINGS_FIELDS)
                if unknown:
                    raise ValueError(f"Unknown global settings fields: {', '.join(sorted(unknown))}")
                assignments = ", ".join(f"{name} = ?" for name in settings)
                cursor.execute(
                    f"UPDATE global_settings SET {assignments}, updated_at = ? WHERE id = 1",
                    (*settings.values(), now),
                )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return {"sources": len(sources), "config_sets": len(config_sets), "settings": len(settings or {})}

    def op_get_schema_version(self) -> int:
        return get_schema_version(self.conn)
