"""
Repository pattern for data access.

SQLite-backed implementations of the tables the proxy reads and writes:
the append-only usage ledger, workspace limit configuration, rate-limit
windows and application-wide settings. Every method opens and closes its
own connection, so repositories are safe to call from worker threads.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import RateLimitWindow, UsageRecord, WindowType, WorkspaceLimitConfig

_USAGE_COLUMNS = """
    workspace_id, user_id, provider, model, endpoint, input_tokens,
    output_tokens, total_tokens, estimated_cost, response_time_ms,
    cache_hit, request_id, created_at
"""

_WORKSPACE_COLUMNS = "id, name, usage_limit_monthly, usage_limit_enabled, api_key, api_provider"


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the proxy's tables if they don't exist.

    ``llm_usage_logs`` is an append-only ledger: no UPDATE or DELETE is ever
    issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS workspaces (
                id TEXT PRIMARY KEY,
                name TEXT,
                usage_limit_monthly REAL NOT NULL DEFAULT 10.0,
                usage_limit_enabled INTEGER NOT NULL DEFAULT 1,
                api_key TEXT,
                api_provider TEXT
            );

            CREATE TABLE IF NOT EXISTS llm_usage_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workspace_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                estimated_cost REAL NOT NULL,
                response_time_ms INTEGER NOT NULL,
                cache_hit INTEGER NOT NULL DEFAULT 0,
                request_id TEXT,
                month_year TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_llm_usage_logs_workspace_month
                ON llm_usage_logs (workspace_id, month_year);

            CREATE TABLE IF NOT EXISTS api_rate_limits (
                workspace_id TEXT NOT NULL,
                window_type TEXT NOT NULL,
                window_start REAL NOT NULL,
                request_count INTEGER NOT NULL,
                PRIMARY KEY (workspace_id, window_type)
            );

            CREATE TABLE IF NOT EXISTS app_settings (
                setting_key TEXT PRIMARY KEY,
                setting_value TEXT,
                updated_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


class UsageRepository:
    """Append-only access to the ``llm_usage_logs`` ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert_usage_record(self, record: UsageRecord) -> None:
        """Append one ledger row.

        There is no uniqueness constraint: inserting the same record twice
        counts its cost twice.

        Args:
            record: The usage record to append
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO llm_usage_logs ({_USAGE_COLUMNS}, month_year)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.workspace_id,
                record.user_id,
                record.provider,
                record.model,
                record.endpoint,
                record.input_tokens,
                record.output_tokens,
                record.total_tokens,
                record.estimated_cost,
                record.response_time_ms,
                int(record.cache_hit),
                record.request_id,
                record.created_at.isoformat(),
                record.month_year,
            ))
            conn.commit()
        finally:
            conn.close()

    def sum_cost_for_month(self, workspace_id: str, month_year: str) -> float:
        """Total estimated cost of a workspace's ledger rows in one month.

        Args:
            workspace_id: Workspace to sum
            month_year: Month bucket, e.g. "2025-07"

        Returns:
            Sum of ``estimated_cost`` (0.0 when there are no rows)
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT SUM(estimated_cost) FROM llm_usage_logs
                WHERE workspace_id = ? AND month_year = ?
            """, (workspace_id, month_year)).fetchone()
            return float(row[0] or 0.0)
        finally:
            conn.close()

    def fetch_usage_records(
        self,
        workspace_id: Optional[str] = None,
        month_year: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageRecord]:
        """Fetch ledger rows, newest first.

        Args:
            workspace_id: Optional filter for a single workspace
            month_year: Optional filter for a single month bucket
            limit: Maximum number of rows to return

        Returns:
            List of usage records ordered by creation time (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_USAGE_COLUMNS} FROM llm_usage_logs"
            conditions = []
            params: list = []

            if workspace_id:
                conditions.append("workspace_id = ?")
                params.append(workspace_id)
            if month_year:
                conditions.append("month_year = ?")
                params.append(month_year)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY created_at DESC, id DESC LIMIT ?"
            params.append(limit)

            return [UsageRecord.from_row(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()


class WorkspaceRepository:
    """Access to workspace limit configuration and workspace-owned keys."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_workspace(self, workspace_id: str) -> Optional[WorkspaceLimitConfig]:
        """Load one workspace, or None if it does not exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_WORKSPACE_COLUMNS} FROM workspaces WHERE id = ?",
                (workspace_id,),
            ).fetchone()
            return WorkspaceLimitConfig.from_row(row) if row else None
        finally:
            conn.close()

    def list_workspaces(self) -> List[WorkspaceLimitConfig]:
        """All workspaces ordered by name, then id."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_WORKSPACE_COLUMNS} FROM workspaces ORDER BY name, id"
            ).fetchall()
            return [WorkspaceLimitConfig.from_row(row) for row in rows]
        finally:
            conn.close()

    def upsert_workspace(self, workspace: WorkspaceLimitConfig) -> None:
        """Insert a workspace or overwrite an existing one with the same id."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO workspaces ({_WORKSPACE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    usage_limit_monthly = excluded.usage_limit_monthly,
                    usage_limit_enabled = excluded.usage_limit_enabled,
                    api_key = excluded.api_key,
                    api_provider = excluded.api_provider
            """, (
                workspace.workspace_id,
                workspace.name,
                workspace.usage_limit_monthly,
                int(workspace.usage_limit_enabled),
                workspace.api_key,
                workspace.api_provider,
            ))
            conn.commit()
        finally:
            conn.close()

    def update_limit(self, workspace_id: str, limit: float, enabled: bool) -> bool:
        """Overwrite a workspace's monthly limit configuration.

        Returns:
            False if no workspace with that id exists
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE workspaces
                SET usage_limit_monthly = ?, usage_limit_enabled = ?
                WHERE id = ?
            """, (limit, int(enabled), workspace_id))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


class RateLimitRepository:
    """Per-workspace rate-limit windows with atomic compare-and-increment."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_windows(self, workspace_id: str) -> Dict[WindowType, RateLimitWindow]:
        """Current stored windows of a workspace, keyed by window type.

        Window types that were never written are absent from the result.
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT workspace_id, window_type, window_start, request_count
                FROM api_rate_limits WHERE workspace_id = ?
            """, (workspace_id,)).fetchall()
            windows = [RateLimitWindow.from_row(row) for row in rows]
            return {w.window_type: w for w in windows}
        finally:
            conn.close()

    def try_increment(
        self,
        workspace_id: str,
        now: float,
        ceilings: Optional[Dict[WindowType, int]] = None,
    ) -> Tuple[bool, Dict[WindowType, RateLimitWindow]]:
        """Count one request in every window, atomically.

        Runs inside a ``BEGIN IMMEDIATE`` transaction, which takes the
        database write lock before reading, so concurrent callers (threads
        or processes) are serialized between the read and the write. Expired
        windows roll over to ``window_start = now`` with a count of 1.

        Args:
            workspace_id: Workspace being counted
            now: Current time in epoch seconds
            ceilings: If given, nothing is written when any window would
                exceed its ceiling after counting this request

        Returns:
            ``(True, windows_after)`` when the request was counted,
            ``(False, windows_before)`` when a ceiling refused it
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute("""
                SELECT workspace_id, window_type, window_start, request_count
                FROM api_rate_limits WHERE workspace_id = ?
            """, (workspace_id,)).fetchall()
            current = {w.window_type: w for w in (RateLimitWindow.from_row(r) for r in rows)}

            updated: Dict[WindowType, RateLimitWindow] = {}
            for window_type in WindowType:
                window = current.get(window_type) or RateLimitWindow(workspace_id, window_type, now, 0)
                updated[window_type] = window.advanced(now)

            if ceilings is not None:
                for window_type, ceiling in ceilings.items():
                    if updated[window_type].request_count > ceiling:
                        conn.rollback()
                        return False, current

            conn.executemany("""
                INSERT INTO api_rate_limits (workspace_id, window_type, window_start, request_count)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(workspace_id, window_type) DO UPDATE SET
                    window_start = excluded.window_start,
                    request_count = excluded.request_count
            """, [
                (w.workspace_id, w.window_type.value, w.window_start, w.request_count)
                for w in updated.values()
            ])
            conn.commit()
            return True, updated
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def release_slot(self, workspace_id: str, window_starts: Dict[WindowType, float]) -> None:
        """Take one counted request back out of its windows.

        Only windows that still start where the request was counted are
        decremented. A window that rolled over since then no longer holds
        the request.

        Args:
            workspace_id: Workspace the request was counted for
            window_starts: ``window_start`` of each window at counting time
        """
        conn = get_connection(self.db_path)
        try:
            conn.executemany("""
                UPDATE api_rate_limits
                SET request_count = request_count - 1
                WHERE workspace_id = ? AND window_type = ? AND window_start = ?
                    AND request_count > 0
            """, [
                (workspace_id, window_type.value, window_start)
                for window_type, window_start in window_starts.items()
            ])
            conn.commit()
        finally:
            conn.close()


def api_key_setting(provider: str) -> str:
    """Settings key under which a provider's centralized API key is stored."""
    return f"{provider}_api_key"


class AppSettingsRepository:
    """Application-wide key/value settings, such as centralized provider keys.

    Sensitive values are stored encrypted by the caller; this layer never
    sees the plaintext form.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_setting(self, setting_key: str) -> Optional[str]:
        """Stored value of a setting, or None if it is unset or empty."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT setting_value FROM app_settings WHERE setting_key = ?",
                (setting_key,),
            ).fetchone()
            return row["setting_value"] if row and row["setting_value"] else None
        finally:
            conn.close()

    def set_setting(self, setting_key: str, setting_value: Optional[str]) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO app_settings (setting_key, setting_value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET
                    setting_value = excluded.setting_value,
                    updated_at = excluded.updated_at
            """, (setting_key, setting_value, datetime.now(timezone.utc).isoformat()))
            conn.commit()
        finally:
            conn.close()
