"""
Core data models for the message gateway.
These are the universal types shared across the worker, the store and the API.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageStatus(str, Enum):
    QUEUED = "QUEUED"
    SENDING = "SENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    RECEIVED = "RECEIVED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TERMINAL_STATUSES = frozenset({MessageStatus.FAILED, MessageStatus.CANCELED})


class RateTier(str, Enum):
    FREE = "free"
    PAID = "paid"


# ──────────────────────────────────────────────────────────────
#  Scheduled messages (jobs)
# ──────────────────────────────────────────────────────────────

class ScheduledMessage(BaseModel):
    """A message waiting to be sent at scheduled_for_utc, plus its delivery trail."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    to_handle: str
    body: str = Field(max_length=2000)
    scheduled_for_utc: datetime
    timezone: str = "UTC"                           # display only
    status: MessageStatus = MessageStatus.QUEUED
    attempt_count: int = 0
    last_error: Optional[str] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    receipt_correlation: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    received_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ReceiptCorrelation(BaseModel):
    """Lookup descriptor tying a sent message to its row in the Messages store."""
    model_config = ConfigDict(populate_by_name=True)

    method: str = "chat.db"
    handle: str
    body_hash: str = Field(alias="bodyHash")
    sent_at: str = Field(alias="sentAt")
    chat_db_path: str = Field(alias="chatDbPath")
    message_row_id: Optional[int] = Field(default=None, alias="messageRowId")
    chat_guid: Optional[str] = Field(default=None, alias="chatGuid")
    confidence: Optional[str] = None
    notes: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.message_row_id is not None or bool(self.chat_guid)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ──────────────────────────────────────────────────────────────
#  Gateway status callbacks
# ──────────────────────────────────────────────────────────────

def _require_uuid(value: str) -> str:
    uuid.UUID(value)
    return value


class _StatusReportBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("message_id")
    @classmethod
    def _message_id_is_uuid(cls, v: str) -> str:
        return _require_uuid(v)

    @property
    def status_enum(self) -> MessageStatus:
        return MessageStatus(self.status)

    def to_envelope(self) -> dict[str, Any]:
        return {"messageId": self.message_id, "status": self.status, "payload": self.payload}


class SentReport(_StatusReportBase):
    status: Literal["SENT"] = "SENT"

    @property
    def sent_at(self) -> Optional[str]:
        value = self.payload.get("sentAt")
        return value if isinstance(value, str) else None


class FailedReport(_StatusReportBase):
    status: Literal["FAILED"] = "FAILED"

    @property
    def error(self) -> Optional[str]:
        value = self.payload.get("error")
        return value if isinstance(value, str) else None


class DeliveredReport(_StatusReportBase):
    status: Literal["DELIVERED"] = "DELIVERED"


class ReceivedReport(_StatusReportBase):
    status: Literal["RECEIVED"] = "RECEIVED"


StatusReport = Annotated[
    Union[SentReport, FailedReport, DeliveredReport, ReceivedReport],
    Field(discriminator="status"),
]

status_report_adapter: TypeAdapter[StatusReport] = TypeAdapter(StatusReport)


def parse_status_report(raw: Any) -> StatusReport:
    """Validate a raw callback body into its typed report. Raises pydantic.ValidationError."""
    return status_report_adapter.validate_python(raw)


def build_status_report(message_id: str, status: MessageStatus,
                        payload: Optional[dict[str, Any]] = None) -> StatusReport:
    return parse_status_report({
        "messageId": message_id,
        "status": MessageStatus(status).value,
        "payload": payload or {},
    })


# ──────────────────────────────────────────────────────────────
#  Gateway direct send
# ──────────────────────────────────────────────────────────────

class SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    to: str = Field(min_length=1)
    body: str = Field(min_length=1, max_length=2000)

    @field_validator("message_id")
    @classmethod
    def _message_id_is_uuid(cls, v: str) -> str:
        return _require_uuid(v)
