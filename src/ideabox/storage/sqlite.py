"""SQLite-backed message store.

Holds connected accounts, synced messages with their analysis, extracted
actions, the sync audit log and API usage. ``sqlite3`` is blocking, so every
public method runs its query in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from ideabox.exceptions import DuplicateMessageError
from ideabox.models import (
    EmailAnalysis,
    GmailAccount,
    MessageRecord,
    StoredMessage,
    SyncRun,
    SyncStatus,
    SyncType,
)

logger = structlog.get_logger()


_SCHEMA_VERSION = 1


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteMessageStore:
    """``MessageStore`` implementation on a local SQLite file."""

    def __init__(self, db_path: Path) -> None:
        """Create a store.

        Args:
            db_path: Path to the SQLite database file.
        """

        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Create or upgrade the schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("message_store_schema_created", version=_SCHEMA_VERSION)
                return

            if current_version != _SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

    # Accounts

    async def list_accounts(
        self,
        user_id: str,
        account_id: str | None = None,
        *,
        enabled_only: bool = True,
    ) -> list[GmailAccount]:
        return await asyncio.to_thread(self._list_accounts, user_id, account_id, enabled_only)

    async def get_account(self, account_id: str) -> GmailAccount | None:
        return await asyncio.to_thread(self._get_account, account_id)

    async def save_account(self, account: GmailAccount) -> None:
        await asyncio.to_thread(self._save_account, account)

    async def update_account_token(
        self,
        account_id: str,
        *,
        access_token: str,
        token_expiry: datetime,
        refresh_token: str | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE gmail_accounts
            SET access_token = ?,
                token_expiry = ?,
                refresh_token = COALESCE(?, refresh_token),
                updated_at = ?
            WHERE id = ?;
            """,
            (access_token, _to_iso(token_expiry), refresh_token, _now_iso(), account_id),
        )

    async def update_sync_state(
        self,
        account_id: str,
        *,
        last_sync_at: datetime,
        last_history_id: str | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE gmail_accounts
            SET last_sync_at = ?,
                last_history_id = COALESCE(?, last_history_id),
                updated_at = ?
            WHERE id = ?;
            """,
            (_to_iso(last_sync_at), last_history_id, _now_iso(), account_id),
        )

    # Messages

    async def get_existing_gmail_ids(self, account_id: str, gmail_ids: list[str]) -> set[str]:
        if not gmail_ids:
            return set()
        return await asyncio.to_thread(self._get_existing_gmail_ids, account_id, gmail_ids)

    async def insert_message(self, record: MessageRecord) -> int:
        """Insert a message and return its row ID.

        Raises:
            DuplicateMessageError: If the account already has this Gmail ID.
        """

        return await asyncio.to_thread(self._insert_message, record)

    async def list_unanalyzed_messages(self, user_id: str, limit: int = 50) -> list[StoredMessage]:
        return await asyncio.to_thread(self._list_unanalyzed_messages, user_id, limit)

    async def get_message(self, message_id: int) -> dict[str, Any] | None:
        """Return the raw row of a message, including analysis columns."""

        return await asyncio.to_thread(self._get_message_row, message_id)

    async def save_analysis(self, message_id: int, analysis: EmailAnalysis) -> None:
        await asyncio.to_thread(self._save_analysis, message_id, analysis)

    async def mark_analysis_failed(self, message_id: int, error: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE messages SET analysis_error = ?, analyzed_at = ? WHERE id = ?;",
            (error, _now_iso(), message_id),
        )

    async def list_actions(self, message_id: int) -> list[dict[str, Any]]:
        return await asyncio.to_thread(
            self._fetch_dicts,
            "SELECT title, description, due_date FROM actions WHERE message_id = ? ORDER BY id;",
            (message_id,),
        )

    # Sync runs

    async def start_sync_run(self, user_id: str, account_id: str, sync_type: SyncType) -> SyncRun:
        return await asyncio.to_thread(self._start_sync_run, user_id, account_id, sync_type)

    async def finish_sync_run(
        self,
        run_id: int,
        *,
        status: SyncStatus,
        messages_fetched: int = 0,
        messages_created: int = 0,
        messages_skipped: int = 0,
        messages_failed: int = 0,
        duration_ms: int | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Finalize a run. Returns False if the run was already finalized."""

        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE sync_runs
            SET status = ?,
                messages_fetched = ?,
                messages_created = ?,
                messages_skipped = ?,
                messages_failed = ?,
                duration_ms = ?,
                error_message = ?,
                completed_at = ?
            WHERE id = ? AND status = 'started';
            """,
            (
                status.value,
                messages_fetched,
                messages_created,
                messages_skipped,
                messages_failed,
                duration_ms,
                error_message,
                _now_iso(),
                run_id,
            ),
        )
        if not updated:
            logger.warning("sync_run_already_finalized", run_id=run_id, status=status.value)
        return bool(updated)

    async def list_sync_runs(self, user_id: str, limit: int = 20) -> list[SyncRun]:
        rows = await asyncio.to_thread(
            self._fetch_dicts,
            """
            SELECT * FROM sync_runs
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ?;
            """,
            (user_id, limit),
        )
        return [self._row_to_sync_run(row) for row in rows]

    # API usage

    async def log_api_usage(
        self,
        user_id: str,
        *,
        service: str,
        model: str,
        function_name: str,
        tokens_input: int,
        tokens_output: int,
        estimated_cost: float,
        duration_ms: int,
        message_id: int | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO api_usage_logs (
                user_id, message_id, service, model, function_name,
                tokens_input, tokens_output, tokens_total, estimated_cost,
                duration_ms, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                user_id,
                message_id,
                service,
                model,
                function_name,
                tokens_input,
                tokens_output,
                tokens_input + tokens_output,
                estimated_cost,
                duration_ms,
                _now_iso(),
            ),
        )

    async def total_api_cost(self, user_id: str) -> float:
        rows = await asyncio.to_thread(
            self._fetch_dicts,
            "SELECT COALESCE(SUM(estimated_cost), 0) AS total FROM api_usage_logs WHERE user_id = ?;",
            (user_id,),
        )
        return float(rows[0]["total"])

    # Internals

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        with self._connect() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount

    def _fetch_dicts(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def _list_accounts(
        self, user_id: str, account_id: str | None, enabled_only: bool
    ) -> list[GmailAccount]:
        sql = "SELECT * FROM gmail_accounts WHERE user_id = ?"
        params: list[Any] = [user_id]
        if account_id is not None:
            sql += " AND id = ?"
            params.append(account_id)
        if enabled_only:
            sql += " AND sync_enabled = 1"
        sql += " ORDER BY email;"
        return [self._row_to_account(row) for row in self._fetch_dicts(sql, tuple(params))]

    def _get_account(self, account_id: str) -> GmailAccount | None:
        rows = self._fetch_dicts("SELECT * FROM gmail_accounts WHERE id = ?;", (account_id,))
        return self._row_to_account(rows[0]) if rows else None

    def _save_account(self, account: GmailAccount) -> None:
        now_iso = _now_iso()
        self._execute(
            """
            INSERT INTO gmail_accounts (
                id, user_id, email, access_token, refresh_token, token_expiry,
                last_history_id, last_sync_at, sync_enabled, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                user_id=excluded.user_id,
                email=excluded.email,
                access_token=excluded.access_token,
                refresh_token=excluded.refresh_token,
                token_expiry=excluded.token_expiry,
                last_history_id=excluded.last_history_id,
                last_sync_at=excluded.last_sync_at,
                sync_enabled=excluded.sync_enabled,
                updated_at=excluded.updated_at;
            """,
            (
                account.id,
                account.user_id,
                account.email,
                account.access_token,
                account.refresh_token,
                _to_iso(account.token_expiry),
                account.last_history_id,
                _to_iso(account.last_sync_at),
                1 if account.sync_enabled else 0,
                now_iso,
                now_iso,
            ),
        )

    def _get_existing_gmail_ids(self, account_id: str, gmail_ids: list[str]) -> set[str]:
        found: set[str] = set()
        # Stay well below SQLite's host parameter limit.
        for start in range(0, len(gmail_ids), 500):
            chunk = gmail_ids[start : start + 500]
            placeholders = ", ".join("?" for _ in chunk)
            rows = self._fetch_dicts(
                f"SELECT gmail_id FROM messages WHERE account_id = ? AND gmail_id IN ({placeholders});",
                (account_id, *chunk),
            )
            found.update(row["gmail_id"] for row in rows)
        return found

    def _insert_message(self, record: MessageRecord) -> int:
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO messages (
                        user_id, account_id, gmail_id, thread_id, subject,
                        sender_email, sender_name, recipient_email, date, snippet,
                        body_text, body_html, labels_json, is_read, is_starred, created_at
                    )
                    VALUES (
                        :user_id, :account_id, :gmail_id, :thread_id, :subject,
                        :sender_email, :sender_name, :recipient_email, :date, :snippet,
                        :body_text, :body_html, :labels_json, :is_read, :is_starred, :created_at
                    );
                    """,
                    {
                        **record.model_dump(exclude={"labels", "is_read", "is_starred"}),
                        "labels_json": json.dumps(record.labels),
                        "is_read": 1 if record.is_read else 0,
                        "is_starred": 1 if record.is_starred else 0,
                        "created_at": _now_iso(),
                    },
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc):
                    raise DuplicateMessageError(record.account_id, record.gmail_id) from exc
                raise
            conn.commit()
            return int(cursor.lastrowid)

    def _list_unanalyzed_messages(self, user_id: str, limit: int) -> list[StoredMessage]:
        rows = self._fetch_dicts(
            """
            SELECT * FROM messages
            WHERE user_id = ? AND analyzed_at IS NULL
            ORDER BY date DESC, id DESC
            LIMIT ?;
            """,
            (user_id, limit),
        )
        return [self._row_to_message(row) for row in rows]

    def _get_message_row(self, message_id: int) -> dict[str, Any] | None:
        rows = self._fetch_dicts("SELECT * FROM messages WHERE id = ?;", (message_id,))
        return rows[0] if rows else None

    def _save_analysis(self, message_id: int, analysis: EmailAnalysis) -> None:
        now_iso = _now_iso()
        with self._connect() as conn:
            row = conn.execute("SELECT user_id FROM messages WHERE id = ?;", (message_id,)).fetchone()
            if row is None:
                raise KeyError(f"Unknown message id {message_id}")

            conn.execute(
                """
                UPDATE messages
                SET category = ?,
                    urgency_score = ?,
                    summary = ?,
                    topics_json = ?,
                    key_dates_json = ?,
                    ideas_json = ?,
                    confidence = ?,
                    analysis_error = NULL,
                    analyzed_at = ?
                WHERE id = ?;
                """,
                (
                    analysis.category.value,
                    analysis.urgency_score,
                    analysis.summary,
                    json.dumps(analysis.topics),
                    json.dumps([key_date.model_dump() for key_date in analysis.key_dates]),
                    json.dumps(analysis.ideas),
                    analysis.confidence,
                    now_iso,
                    message_id,
                ),
            )
            conn.executemany(
                """
                INSERT INTO actions (user_id, message_id, title, description, due_date, created_at)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                [
                    (row["user_id"], message_id, a.title, a.description, a.due_date, now_iso)
                    for a in analysis.actions
                ],
            )
            conn.commit()

    def _start_sync_run(self, user_id: str, account_id: str, sync_type: SyncType) -> SyncRun:
        started_at = datetime.now(timezone.utc)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs (user_id, account_id, sync_type, status, started_at)
                VALUES (?, ?, ?, 'started', ?);
                """,
                (user_id, account_id, sync_type.value, started_at.isoformat()),
            )
            conn.commit()
            run_id = int(cursor.lastrowid)

        return SyncRun(
            id=run_id,
            user_id=user_id,
            account_id=account_id,
            sync_type=sync_type,
            status=SyncStatus.STARTED,
            started_at=started_at,
        )

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS gmail_accounts (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                email TEXT NOT NULL,
                access_token TEXT NOT NULL DEFAULT '',
                refresh_token TEXT,
                token_expiry TEXT,
                last_history_id TEXT,
                last_sync_at TEXT,
                sync_enabled INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_gmail_accounts_user
                ON gmail_accounts(user_id);

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL,
                account_id TEXT NOT NULL REFERENCES gmail_accounts(id) ON DELETE CASCADE,
                gmail_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                subject TEXT,
                sender_email TEXT NOT NULL,
                sender_name TEXT,
                recipient_email TEXT,
                date TEXT NOT NULL,
                snippet TEXT,
                body_text TEXT,
                body_html TEXT,
                labels_json TEXT NOT NULL,
                is_read INTEGER NOT NULL,
                is_starred INTEGER NOT NULL,
                category TEXT,
                urgency_score INTEGER,
                summary TEXT,
                topics_json TEXT,
                key_dates_json TEXT,
                ideas_json TEXT,
                confidence REAL,
                analysis_error TEXT,
                analyzed_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(account_id, gmail_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_user_date
                ON messages(user_id, date);

            CREATE INDEX IF NOT EXISTS idx_messages_unanalyzed
                ON messages(user_id, analyzed_at);

            CREATE TABLE IF NOT EXISTS actions (
                id INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL,
                message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                description TEXT,
                due_date TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sync_runs (
                id INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                sync_type TEXT NOT NULL,
                status TEXT NOT NULL,
                messages_fetched INTEGER NOT NULL DEFAULT 0,
                messages_created INTEGER NOT NULL DEFAULT 0,
                messages_skipped INTEGER NOT NULL DEFAULT 0,
                messages_failed INTEGER NOT NULL DEFAULT 0,
                duration_ms INTEGER,
                error_message TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_sync_runs_user
                ON sync_runs(user_id, started_at);

            CREATE TABLE IF NOT EXISTS api_usage_logs (
                id INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL,
                message_id INTEGER,
                service TEXT NOT NULL,
                model TEXT NOT NULL,
                function_name TEXT NOT NULL,
                tokens_input INTEGER NOT NULL,
                tokens_output INTEGER NOT NULL,
                tokens_total INTEGER NOT NULL,
                estimated_cost REAL NOT NULL,
                duration_ms INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    def _row_to_account(self, row: dict[str, Any]) -> GmailAccount:
        return GmailAccount(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            access_token=row["access_token"] or "",
            refresh_token=row["refresh_token"],
            token_expiry=_from_iso(row["token_expiry"]),
            last_history_id=row["last_history_id"],
            last_sync_at=_from_iso(row["last_sync_at"]),
            sync_enabled=bool(row["sync_enabled"]),
        )

    def _row_to_message(self, row: dict[str, Any]) -> StoredMessage:
        return StoredMessage(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            gmail_id=row["gmail_id"],
            thread_id=row["thread_id"],
            subject=row["subject"],
            sender_email=row["sender_email"],
            sender_name=row["sender_name"],
            recipient_email=row["recipient_email"],
            date=row["date"],
            snippet=row["snippet"],
            body_text=row["body_text"],
            body_html=row["body_html"],
            labels=json.loads(row["labels_json"]),
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
        )

    def _row_to_sync_run(self, row: dict[str, Any]) -> SyncRun:
        return SyncRun(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            sync_type=SyncType(row["sync_type"]),
            status=SyncStatus(row["status"]),
            messages_fetched=row["messages_fetched"],
            messages_created=row["messages_created"],
            messages_skipped=row["messages_skipped"],
            messages_failed=row["messages_failed"],
            duration_ms=row["duration_ms"],
            error_message=row["error_message"],
            started_at=_from_iso(row["started_at"]),
            completed_at=_from_iso(row["completed_at"]),
        )
