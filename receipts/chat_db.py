"""
Read-only access to the Messages store (~/Library/Messages/chat.db).

Messages.app owns the file; the gateway only ever reads it. Connections go
through SQLAlchemy on the aiosqlite driver with mode=ro, and NullPool so no
handle is held open between polls while Messages.app writes.
"""
from __future__ import annotations

import structlog
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from receipts.epoch import TimeWindow

logger = structlog.get_logger()

DEFAULT_CHAT_DB_PATH = "~/Library/Messages/chat.db"

RECEIPT_COLUMNS = ("is_delivered", "is_read", "date_delivered", "date_read")

_FIND_SENT_MESSAGE = text("""
    SELECT
        message.ROWID AS messageRowId,
        message.guid AS chatGuid
    FROM message
    JOIN handle ON handle.ROWID = message.handle_id
    WHERE handle.id = :handle
      AND message.text = :body
      AND message.is_from_me = 1
      AND (
        message.date BETWEEN :start_seconds AND :end_seconds
        OR message.date BETWEEN :start_nanos AND :end_nanos
      )
    ORDER BY message.date DESC
    LIMIT 1
""")


def resolve_chat_db_path(path: Optional[str] = None) -> Path:
    return Path(path or DEFAULT_CHAT_DB_PATH).expanduser()


class ChatDb:
    """One chat.db file. Every query opens and closes its own connection."""

    def __init__(self, path: Optional[str] = None):
        self.path = resolve_chat_db_path(path)
        self._engine: Optional[AsyncEngine] = None

    def exists(self) -> bool:
        return self.path.is_file()

    def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            url = f"sqlite+aiosqlite:///file:{quote(str(self.path.resolve()))}?mode=ro&uri=true"
            self._engine = create_async_engine(url, poolclass=NullPool)
        return self._engine

    async def find_sent_message(self, handle: str, body: str,
                                window: TimeWindow) -> Optional[dict[str, Any]]:
        """Newest outgoing message with this exact text to this handle inside the window."""
        async with self._get_engine().connect() as conn:
            result = await conn.execute(_FIND_SENT_MESSAGE, {
                "handle": handle,
                "body": body,
                "start_seconds": window.start_seconds,
                "end_seconds": window.end_seconds,
                "start_nanos": window.start_nanos,
                "end_nanos": window.end_nanos,
            })
            row = result.mappings().first()
            return dict(row) if row else None

    async def read_receipt_row(self, message_row_id: Optional[int],
                               chat_guid: Optional[str]) -> Optional[dict[str, Any]]:
        """
        Delivery/read columns for one message, by ROWID or else by guid.
        Columns this macOS version lacks are simply absent from the result.
        """
        async with self._get_engine().connect() as conn:
            info = await conn.execute(text("PRAGMA table_info(message)"))
            existing = {r[1] for r in info.fetchall()}
            fields = ["ROWID AS messageRowId", "guid AS chatGuid"]
            fields += [c for c in RECEIPT_COLUMNS if c in existing]

            if message_row_id is not None:
                where, key = "ROWID = :key", message_row_id
            else:
                where, key = "guid = :key", chat_guid or ""

            result = await conn.execute(
                text(f"SELECT {', '.join(fields)} FROM message WHERE {where} LIMIT 1"),
                {"key": key},
            )
            row = result.mappings().first()
            return dict(row) if row else None

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
