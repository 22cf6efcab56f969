"""sqlite persistence for chat threads and their completed turns."""

from __future__ import annotations

import json
import re
import sqlite3
from pathlib import Path
from typing import Any

from .exceptions import UnknownThread
from .models import ChatThread, Message, utc_now_iso


def slugify_filename(value: str) -> str:
    """Convert title to a filesystem-safe stem."""
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", value.strip().lower()).strip("-")
    return slug or "chat-export"


def _load_metadata(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ChatStore:
    """Local sqlite store. Clearing history keeps thread rows, titles and counters."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        if str(self.path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.path)
        self.conn.row_factory = sqlite3.Row
        self._tune_pragmas()
        self._init_schema()

    def _tune_pragmas(self) -> None:
        """Tune sqlite for local low-latency usage."""
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")
        self.conn.execute("PRAGMA temp_store = MEMORY")

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> ChatStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS threads (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                style TEXT NOT NULL DEFAULT 'balanced',
                guardrails INTEGER NOT NULL DEFAULT 1,
                turn_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_thread_seq
            ON messages(thread_id, seq);
            """
        )
        self.conn.commit()

    def save_thread(self, thread: ChatThread) -> None:
        """Insert or update a thread row; messages are written by :meth:`append_messages`."""
        self.conn.execute(
            """
            INSERT INTO threads (id, title, style, guardrails, turn_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                style = excluded.style,
                guardrails = excluded.guardrails,
                turn_count = excluded.turn_count,
                updated_at = excluded.updated_at
            """,
            (
                thread.id,
                thread.title,
                thread.style.value,
                int(thread.guardrails),
                thread.turn_count,
                thread.created_at,
                thread.updated_at,
            ),
        )
        self.conn.commit()

    def append_messages(self, thread: ChatThread, messages: list[Message]) -> None:
        """Persist completed turns and the thread fields they changed, atomically."""
        with self.conn:
            self.conn.executemany(
                """
                INSERT INTO messages (id, thread_id, role, content, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        message.id,
                        thread.id,
                        message.role.value,
                        message.text,
                        json.dumps(dict(message.metadata), ensure_ascii=False),
                        message.created_at,
                    )
                    for message in messages
                ],
            )
            self.conn.execute(
                "UPDATE threads SET turn_count = ?, updated_at = ? WHERE id = ?",
                (thread.turn_count, thread.updated_at, thread.id),
            )

    def delete_thread(self, thread_id: str) -> None:
        self.conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
        self.conn.commit()

    def clear_messages(self, thread_id: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
            self.conn.execute(
                "UPDATE threads SET updated_at = ? WHERE id = ?", (utc_now_iso(), thread_id)
            )

    def clear_all(self) -> None:
        """Empty every thread's messages; thread identity, titles and counters survive."""
        with self.conn:
            self.conn.execute("DELETE FROM messages")
            self.conn.execute("UPDATE threads SET updated_at = ?", (utc_now_iso(),))

    def load_messages(self, thread_id: str) -> list[Message]:
        rows = self.conn.execute(
            """
            SELECT id, role, content, metadata_json, created_at
            FROM messages
            WHERE thread_id = ?
            ORDER BY seq ASC
            """,
            (thread_id,),
        ).fetchall()
        return [
            Message(
                role=row["role"],
                text=str(row["content"]),
                id=str(row["id"]),
                created_at=str(row["created_at"]),
                metadata=_load_metadata(row["metadata_json"]),
            )
            for row in rows
        ]

    def load_threads(self) -> list[ChatThread]:
        """Load every thread with its messages, most recently active first."""
        rows = self.conn.execute(
            """
            SELECT id, title, style, guardrails, turn_count, created_at, updated_at
            FROM threads
            ORDER BY updated_at DESC, created_at DESC
            """
        ).fetchall()
        return [
            ChatThread(
                id=str(row["id"]),
                title=str(row["title"]),
                style=row["style"],
                guardrails=bool(row["guardrails"]),
                turn_count=int(row["turn_count"]),
                created_at=str(row["created_at"]),
                updated_at=str(row["updated_at"]),
                messages=self.load_messages(str(row["id"])),
            )
            for row in rows
        ]

    def load_thread(self, thread_id: str) -> ChatThread:
        for thread in self.load_threads():
            if thread.id == thread_id:
                return thread
        raise UnknownThread(thread_id)

    def export_jsonl(self, thread_id: str, target: Path) -> None:
        """Export a thread to JSONL: one metadata record, then one record per message."""
        thread = self.load_thread(thread_id)
        target.parent.mkdir(parents=True, exist_ok=True)

        with target.open("w", encoding="utf-8") as handle:
            handle.write(
                json.dumps(
                    {
                        "type": "chat_metadata",
                        "thread_id": thread.id,
                        "title": thread.title,
                        "style": thread.style.value,
                        "guardrails": thread.guardrails,
                        "exported_at": utc_now_iso(),
                    },
                    ensure_ascii=False,
                )
                + "\n"
            )
            for message in thread.messages:
                record = {"type": "message", **message.to_dict()}
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")

    def export_markdown(self, thread_id: str, target: Path) -> None:
        """Export a thread to a Markdown transcript."""
        thread = self.load_thread(thread_id)
        target.parent.mkdir(parents=True, exist_ok=True)

        lines = [f"# {thread.title}", "", f"Exported: {utc_now_iso()}", ""]
        for message in thread.messages:
            lines.append(f"## {message.role.value.title()} ({message.created_at})")
            lines.append("")
            lines.append(message.text)
            lines.append("")

        target.write_text("\n".join(lines), encoding="utf-8")
