"""SQLite-backed repository for meetings and TTS message records."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

import aiosqlite

MessageRecord = dict[str, Any]
MeetingRecord = dict[str, Any]
MessageStatus = Literal["pending", "sent", "failed"]

MESSAGE_STATUSES: frozenset[str] = frozenset({"pending", "sent", "failed"})

# Indexed by SQLite's strftime('%w'), where Sunday is 0.
WEEKDAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


def _normalize_db_timestamp(value: str | None) -> str | None:
    """Convert SQLite timestamp strings to ISO8601 in UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.isoformat()


def _row_to_record(row: aiosqlite.Row) -> dict[str, Any]:
    record = dict(row)
    if "created_at" in record:
        record["created_at"] = _normalize_db_timestamp(record["created_at"])
    return record


class MessageRepository:
    """Persist TTS attempts and the meetings they may belong to."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS meetings (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                platform TEXT NOT NULL DEFAULT 'other',
                status TEXT NOT NULL DEFAULT 'scheduled',
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS tts_messages (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                meeting_id TEXT REFERENCES meetings(id) ON DELETE CASCADE,
                text_input TEXT NOT NULL,
                text_length INTEGER NOT NULL,
                voice_used TEXT NOT NULL DEFAULT 'alloy',
                language TEXT,
                speed REAL NOT NULL DEFAULT 1.0,
                pitch REAL NOT NULL DEFAULT 1.0,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'sent', 'failed')),
                error_message TEXT,
                audio_duration_seconds REAL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_tts_messages_user_created
                ON tts_messages(user_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_tts_messages_meeting
                ON tts_messages(meeting_id);
            CREATE INDEX IF NOT EXISTS idx_meetings_user
                ON meetings(user_id);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("MessageRepository is not initialized")
        return self._connection

    async def ping(self) -> None:
        connection = self._require_connection()
        cursor = await connection.execute("SELECT 1")
        await cursor.fetchone()
        await cursor.close()

    async def create_meeting(
        self,
        *,
        user_id: str,
        title: str,
        platform: str = "other",
        meeting_id: str | None = None,
    ) -> MeetingRecord:
        connection = self._require_connection()
        meeting_id = meeting_id or str(uuid4())
        await connection.execute(
            "INSERT INTO meetings (id, user_id, title, platform) VALUES (?, ?, ?, ?)",
            (meeting_id, user_id, title, platform),
        )
        await connection.commit()
        cursor = await connection.execute(
            "SELECT * FROM meetings WHERE id = ?", (meeting_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        assert row is not None
        return _row_to_record(row)

    async def delete_meeting(self, meeting_id: str, *, user_id: str) -> bool:
        connection = self._require_connection()
        cursor = await connection.execute(
            "DELETE FROM meetings WHERE id = ? AND user_id = ?",
            (meeting_id, user_id),
        )
        await connection.commit()
        deleted = cursor.rowcount > 0
        await cursor.close()
        return deleted

    async def meeting_belongs_to(self, meeting_id: str, user_id: str) -> bool:
        connection = self._require_connection()
        cursor = await connection.execute(
            "SELECT 1 FROM meetings WHERE id = ? AND user_id = ?",
            (meeting_id, user_id),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return row is not None

    async def create_message(
        self,
        *,
        user_id: str,
        text_input: str,
        meeting_id: str | None = None,
        voice_used: str = "alloy",
        language: str | None = None,
        speed: float = 1.0,
        pitch: float = 1.0,
        status: MessageStatus = "pending",
        message_id: str | None = None,
    ) -> MessageRecord:
        """Insert a message row; ``text_length`` is always derived from the text."""

        if status not in MESSAGE_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        connection = self._require_connection()
        message_id = message_id or str(uuid4())
        await connection.execute(
            """
            INSERT INTO tts_messages (
                id, user_id, meeting_id, text_input, text_length,
                voice_used, language, speed, pitch, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                user_id,
                meeting_id,
                text_input,
                len(text_input),
                voice_used,
                language,
                speed,
                pitch,
                status,
            ),
        )
        await connection.commit()
        record = await self._fetch_message(message_id)
        assert record is not None
        return record

    async def _fetch_message(
        self, message_id: str, user_id: str | None = None
    ) -> MessageRecord | None:
        connection = self._require_connection()
        if user_id is None:
            cursor = await connection.execute(
                "SELECT * FROM tts_messages WHERE id = ?", (message_id,)
            )
        else:
            cursor = await connection.execute(
                "SELECT * FROM tts_messages WHERE id = ? AND user_id = ?",
                (message_id, user_id),
            )
        row = await cursor.fetchone()
        await cursor.close()
        return _row_to_record(row) if row is not None else None

    async def get_message(self, message_id: str, *, user_id: str) -> MessageRecord | None:
        return await self._fetch_message(message_id, user_id)

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        *,
        error_message: str | None = None,
        user_id: str | None = None,
        forward_only: bool = True,
    ) -> MessageRecord | None:
        """Set a row's status.

        With ``forward_only`` the update applies only while the row is still
        ``pending``; ``None`` is returned when no row was changed.
        """

        if status not in MESSAGE_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        connection = self._require_connection()

        sql = "UPDATE tts_messages SET status = ?, error_message = ? WHERE id = ?"
        params: list[Any] = [status, error_message, message_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if forward_only:
            sql += " AND status = 'pending'"

        cursor = await connection.execute(sql, params)
        await connection.commit()
        changed = cursor.rowcount > 0
        await cursor.close()
        if not changed:
            return None
        return await self._fetch_message(message_id)

    async def set_duration(
        self,
        message_id: str,
        seconds: float,
        *,
        user_id: str | None = None,
    ) -> MessageRecord | None:
        connection = self._require_connection()
        sql = "UPDATE tts_messages SET audio_duration_seconds = ? WHERE id = ?"
        params: list[Any] = [seconds, message_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        cursor = await connection.execute(sql, params)
        await connection.commit()
        changed = cursor.rowcount > 0
        await cursor.close()
        if not changed:
            return None
        return await self._fetch_message(message_id)

    async def list_messages(
        self,
        *,
        user_id: str,
        meeting_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[MessageRecord]:
        connection = self._require_connection()
        sql = """
            SELECT t.*, m.title AS meeting_title
            FROM tts_messages t
            LEFT JOIN meetings m ON t.meeting_id = m.id
            WHERE t.user_id = ?
        """
        params: list[Any] = [user_id]
        if meeting_id:
            sql += " AND t.meeting_id = ?"
            params.append(meeting_id)
        if status:
            sql += " AND t.status = ?"
            params.append(status)
        sql += " ORDER BY t.created_at DESC, t.rowid DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        cursor = await connection.execute(sql, params)
        rows = await cursor.fetchall()
        await cursor.close()
        return [_row_to_record(row) for row in rows]

    # Aggregates --------------------------------------------------------

    async def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        connection = self._require_connection()
        cursor = await connection.execute(sql, params)
        rows = await cursor.fetchall()
        await cursor.close()
        return list(rows)

    async def usage_stats(self, *, user_id: str) -> dict[str, Any]:
        """Totals for one user; only ``sent`` rows count as delivered messages."""

        meetings = await self._fetch_all(
            "SELECT COUNT(*) AS count FROM meetings WHERE user_id = ?", (user_id,)
        )
        messages = await self._fetch_all(
            """
            SELECT
                COUNT(CASE WHEN status = 'sent' THEN 1 END) AS sent_count,
                COALESCE(SUM(text_length), 0) AS total_chars,
                COALESCE(SUM(audio_duration_seconds), 0) AS total_audio
            FROM tts_messages WHERE user_id = ?
            """,
            (user_id,),
        )
        row = messages[0]
        return {
            "total_meetings": max(0, int(meetings[0]["count"] or 0)),
            "total_tts_messages": max(0, int(row["sent_count"] or 0)),
            "total_characters": max(0, int(row["total_chars"] or 0)),
            "total_audio_seconds": max(0.0, float(row["total_audio"] or 0)),
        }

    async def voice_usage(self, *, user_id: str) -> list[dict[str, Any]]:
        rows = await self._fetch_all(
            """
            SELECT voice_used, COUNT(*) AS count
            FROM tts_messages
            WHERE user_id = ?
            GROUP BY voice_used
            ORDER BY count DESC, voice_used ASC
            """,
            (user_id,),
        )
        return [{"voice": row["voice_used"], "count": int(row["count"])} for row in rows]

    async def monthly_usage(self, *, user_id: str, months: int = 6) -> list[dict[str, Any]]:
        """Meetings and characters per ``YYYY-MM`` over the last ``months`` months."""

        window = f"-{int(months)} months"
        meetings = await self._fetch_all(
            """
            SELECT strftime('%Y-%m', created_at) AS month, COUNT(*) AS count
            FROM meetings
            WHERE user_id = ? AND created_at >= datetime('now', ?)
            GROUP BY month
            """,
            (user_id, window),
        )
        characters = await self._fetch_all(
            """
            SELECT strftime('%Y-%m', created_at) AS month,
                   COALESCE(SUM(text_length), 0) AS total
            FROM tts_messages
            WHERE user_id = ? AND created_at >= datetime('now', ?)
            GROUP BY month
            """,
            (user_id, window),
        )

        by_month: dict[str, dict[str, Any]] = {}
        for row in meetings:
            by_month[row["month"]] = {
                "month": row["month"],
                "meetings": int(row["count"]),
                "characters": 0,
            }
        for row in characters:
            entry = by_month.setdefault(
                row["month"], {"month": row["month"], "meetings": 0, "characters": 0}
            )
            entry["characters"] = int(row["total"])
        return [by_month[month] for month in sorted(by_month)]

    async def daily_activity(self, *, user_id: str) -> list[dict[str, Any]]:
        """Message counts per weekday, Sunday first; days without messages are omitted."""

        rows = await self._fetch_all(
            """
            SELECT CAST(strftime('%w', created_at) AS INTEGER) AS weekday,
                   COUNT(*) AS count
            FROM tts_messages
            WHERE user_id = ?
            GROUP BY weekday
            ORDER BY weekday
            """,
            (user_id,),
        )
        return [
            {"day": WEEKDAY_NAMES[row["weekday"]], "messages": int(row["count"])}
            for row in rows
        ]


__all__ = [
    "WEEKDAY_NAMES",
    "MESSAGE_STATUSES",
    "MeetingRecord",
    "MessageRecord",
    "MessageRepository",
    "MessageStatus",
]
