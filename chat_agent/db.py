"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from chat_agent.models import Message, Role, ToolDecision, ToolInvocation

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                tool_invocations_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(conversation_id)
            );

            CREATE TABLE IF NOT EXISTS tool_decisions (
                tool_call_id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                approved INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(conversation_id)
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                tool_call_id TEXT,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                description TEXT NOT NULL,
                run_at TEXT NOT NULL,
                interval_seconds INTEGER,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(conversation_id)
            );
            """
        )

    def append_messages(self, conversation_id: str, messages: Iterable[Message]) -> None:
        """Append messages in order inside a single write transaction."""

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "INSERT OR IGNORE INTO conversations(conversation_id, created_at) VALUES (?, ?)",
                (conversation_id, _utc_now_iso()),
            )
            conn.executemany(
                """
                INSERT INTO messages(id, conversation_id, role, content, tool_invocations_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        message.id,
                        conversation_id,
                        message.role.value,
                        message.content,
                        _dump_invocations(message),
                        message.created_at.astimezone(timezone.utc).isoformat(),
                    )
                    for message in messages
                ],
            )

    def update_messages(self, conversation_id: str, messages: Iterable[Message]) -> None:
        """Rewrite content and tool invocations of already stored messages."""

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.executemany(
                """
                UPDATE messages SET content = ?, tool_invocations_json = ?
                WHERE id = ? AND conversation_id = ?
                """,
                [
                    (message.content, _dump_invocations(message), message.id, conversation_id)
                    for message in messages
                ],
            )

    def get_messages(self, conversation_id: str) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq ASC",
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def record_decision(self, conversation_id: str, decision: ToolDecision) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_decisions(tool_call_id, conversation_id, approved, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tool_call_id) DO UPDATE SET approved=excluded.approved
                """,
                (decision.tool_call_id, conversation_id, int(decision.approved), _utc_now_iso()),
            )

    def get_decisions(self, conversation_id: str) -> dict[str, ToolDecision]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tool_call_id, approved FROM tool_decisions WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchall()
        return {
            row["tool_call_id"]: ToolDecision(tool_call_id=row["tool_call_id"], approved=bool(row["approved"]))
            for row in rows
        }

    def delete_decisions(self, tool_call_ids: Iterable[str]) -> None:
        with self._connect() as conn:
            conn.executemany(
                "DELETE FROM tool_decisions WHERE tool_call_id = ?",
                [(tool_call_id,) for tool_call_id in tool_call_ids],
            )

    def log_tool_execution(
        self,
        conversation_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
        tool_call_id: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(
                    conversation_id, tool_call_id, tool_name, input_json, output_json, succeeded, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    tool_call_id,
                    tool_name,
                    json.dumps(tool_input, default=str),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tool_call_id, tool_name, input_json, output_json, succeeded
                FROM tool_executions WHERE conversation_id = ? ORDER BY id ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def create_scheduled_task(
        self,
        conversation_id: str,
        description: str,
        run_at: datetime,
        interval_seconds: int | None = None,
    ) -> int:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO conversations(conversation_id, created_at) VALUES (?, ?)",
                (conversation_id, now),
            )
            cur = conn.execute(
                """
                INSERT INTO scheduled_tasks(
                    conversation_id, description, run_at, interval_seconds, status, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, 'pending', ?, ?)
                """,
                (
                    conversation_id,
                    description,
                    run_at.astimezone(timezone.utc).isoformat(),
                    interval_seconds,
                    now,
                    now,
                ),
            )
            return int(cur.lastrowid)

    def get_due_tasks(self, now: datetime) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, conversation_id, description, run_at, interval_seconds, status
                FROM scheduled_tasks
                WHERE status = 'pending' AND run_at <= ?
                ORDER BY run_at ASC
                """,
                (now.astimezone(timezone.utc).isoformat(),),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_scheduled_tasks(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, description, run_at, interval_seconds, status
                FROM scheduled_tasks
                WHERE conversation_id = ? AND status = 'pending'
                ORDER BY run_at ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def cancel_scheduled_task(self, conversation_id: str, task_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE scheduled_tasks SET status = 'cancelled', updated_at = ?
                WHERE id = ? AND conversation_id = ? AND status = 'pending'
                """,
                (_utc_now_iso(), task_id, conversation_id),
            )
            return cur.rowcount > 0

    def mark_task_status(self, task_id: int, status: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE scheduled_tasks SET status = ?, updated_at = ? WHERE id = ?",
                (status, _utc_now_iso(), task_id),
            )

    def reschedule_task(self, task_id: int, run_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE scheduled_tasks SET status = 'pending', run_at = ?, updated_at = ? WHERE id = ?",
                (run_at.astimezone(timezone.utc).isoformat(), _utc_now_iso(), task_id),
            )


def _dump_invocations(message: Message) -> str:
    return json.dumps([inv.to_dict() for inv in message.tool_invocations], default=str)


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        role=Role(row["role"]),
        content=row["content"],
        created_at=datetime.fromisoformat(row["created_at"]),
        tool_invocations=tuple(
            ToolInvocation.from_dict(item) for item in json.loads(row["tool_invocations_json"])
        ),
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
