"""Builders and fakes shared by the test modules."""
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from channels.base import MessageSender
from models.schemas import MessageStatus, ScheduledMessage

SECRET = "test-secret"
NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Builders
# ──────────────────────────────────────────────────────────────

def make_job(**overrides: Any) -> ScheduledMessage:
    data = {
        "id": str(uuid.uuid4()),
        "user_id": "user-1",
        "to_handle": "+15551234567",
        "body": "Happy birthday!",
        "scheduled_for_utc": NOW - timedelta(minutes=1),
        "created_at": NOW - timedelta(hours=1),
        "timezone": "America/New_York",
    }
    data.update(overrides)
    return ScheduledMessage(**data)


class FakeSender(MessageSender):
    """Records sends; raises the queued errors first, in order."""

    channel = "fake"
    method = "applescript"

    def __init__(self, errors: Optional[list[Exception]] = None):
        super().__init__()
        self.errors = list(errors or [])
        self.sent: list[tuple[str, str]] = []

    async def _do_send(self, handle: str, body: str) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append((handle, body))


class RecordingReporter:
    """Stands in for StatusReporter; keeps every report instead of POSTing it."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.reports: list[tuple[str, MessageStatus, dict[str, Any]]] = []

    async def report(self, message_id, status, payload=None) -> bool:
        self.reports.append((message_id, MessageStatus(status), dict(payload or {})))
        return self.ok

    def statuses(self, message_id: str) -> list[MessageStatus]:
        return [s for mid, s, _ in self.reports if mid == message_id]

    async def close(self) -> None:
        return None


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ──────────────────────────────────────────────────────────────
#  chat.db fixture
# ──────────────────────────────────────────────────────────────

APPLE_EPOCH = 978307200


def to_apple_seconds(value: datetime) -> int:
    return int(value.timestamp()) - APPLE_EPOCH


class ChatDbFixture:
    """A minimal Messages store: handle + message tables, like chat.db."""

    def __init__(self, path, receipt_columns: bool = True):
        self.path = path
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE handle (ROWID INTEGER PRIMARY KEY, id TEXT)")
        cols = "ROWID INTEGER PRIMARY KEY, guid TEXT, text TEXT, handle_id INTEGER, is_from_me INTEGER, date INTEGER"
        if receipt_columns:
            cols += ", is_delivered INTEGER DEFAULT 0, is_read INTEGER DEFAULT 0, " \
                    "date_delivered INTEGER DEFAULT 0, date_read INTEGER DEFAULT 0"
        conn.execute(f"CREATE TABLE message ({cols})")
        conn.commit()
        conn.close()

    def add_handle(self, handle: str) -> int:
        conn = sqlite3.connect(self.path)
        cur = conn.execute("INSERT INTO handle (id) VALUES (?)", (handle,))
        conn.commit()
        rowid = cur.lastrowid
        conn.close()
        return rowid

    def add_message(self, handle_id: int, text: str, date: int, guid: str = None,
                    is_from_me: int = 1) -> int:
        conn = sqlite3.connect(self.path)
        cur = conn.execute(
            "INSERT INTO message (guid, text, handle_id, is_from_me, date) VALUES (?, ?, ?, ?, ?)",
            (guid or f"p:0/{uuid.uuid4()}", text, handle_id, is_from_me, date),
        )
        conn.commit()
        rowid = cur.lastrowid
        conn.close()
        return rowid

    def update_message(self, rowid: int, **fields: Any) -> None:
        assignments = ", ".join(f"{k} = ?" for k in fields)
        conn = sqlite3.connect(self.path)
        conn.execute(f"UPDATE message SET {assignments} WHERE ROWID = ?", (*fields.values(), rowid))
        conn.commit()
        conn.close()
