"""Queue rows and their status machines."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from relayclaw.errors import IllegalTransition


class InboundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class OutboundStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    ERROR = "error"


class SendOutcome(str, Enum):
    SENT = "sent"
    RETRY = "retry"
    FAILED = "failed"
    # Blocked before posting; not counted as a send failure.
    DROPPED = "dropped"


INBOUND_TRANSITIONS = {
    InboundStatus.PENDING: {InboundStatus.PROCESSING},
    InboundStatus.PROCESSING: {InboundStatus.PROCESSED, InboundStatus.ERROR},
    InboundStatus.PROCESSED: set(),
    InboundStatus.ERROR: {InboundStatus.PENDING},
}

OUTBOUND_TRANSITIONS = {
    OutboundStatus.PENDING: {OutboundStatus.SENDING},
    OutboundStatus.SENDING: {OutboundStatus.SENT, OutboundStatus.PENDING, OutboundStatus.ERROR},
    OutboundStatus.SENT: set(),
    OutboundStatus.ERROR: {OutboundStatus.PENDING},
}


def check_transition(current, target):
    """Return ``target`` if ``current -> target`` is legal, raise otherwise."""
    if isinstance(current, InboundStatus):
        kind, table = "inbound", INBOUND_TRANSITIONS
        target = InboundStatus(target)
    else:
        kind, table = "outbound", OUTBOUND_TRANSITIONS
        current = OutboundStatus(current)
        target = OutboundStatus(target)
    if target not in table[current]:
        raise IllegalTransition(kind, current.value, target.value)
    return target


def utcnow():
    return datetime.now(timezone.utc)


def to_iso(dt):
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value):
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class InboundItem:
    message_id: str
    channel_id: str
    text: str
    channel_name: Optional[str] = None
    thread_id: Optional[str] = None
    ts: Optional[str] = None
    user_id: Optional[str] = None
    file_paths: List[str] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=utcnow)
    status: InboundStatus = InboundStatus.PENDING
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def has_attachments(self):
        return bool(self.file_paths)

    @property
    def reply_thread(self):
        """Thread a reply should land in: the existing thread, else the message itself."""
        return self.thread_id or self.ts

    @classmethod
    def from_row(cls, row):
        return cls(
            message_id=row["message_id"],
            channel_id=row["channel_id"],
            channel_name=row["channel_name"],
            thread_id=row["thread_id"],
            ts=row["ts"],
            user_id=row["user_id"],
            text=row["text"] or "",
            file_paths=json.loads(row["file_paths"]) if row["file_paths"] else [],
            fetched_at=from_iso(row["fetched_at"]),
            status=InboundStatus(row["status"]),
            processed_at=from_iso(row["processed_at"]),
            error_message=row["error_message"],
        )


@dataclass
class OutboundItem:
    message_id: str
    channel_id: str
    response_text: str
    thread_id: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    status: OutboundStatus = OutboundStatus.PENDING
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    not_before: Optional[datetime] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            channel_id=row["channel_id"],
            thread_id=row["thread_id"],
            response_text=row["response_text"],
            created_at=from_iso(row["created_at"]),
            status=OutboundStatus(row["status"]),
            sent_at=from_iso(row["sent_at"]),
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            not_before=from_iso(row["not_before"]),
        )


@dataclass
class RespondedRecord:
    message_id: str
    channel_id: str
    thread_id: Optional[str] = None
    response_text: Optional[str] = None
    responded_at: datetime = field(default_factory=utcnow)


@dataclass
class ThreadWatch:
    channel_id: str
    thread_id: str
    last_checked: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SelfResponseRecord:
    channel_id: str
    response_text: str
    thread_id: Optional[str] = None
    posted_at: datetime = field(default_factory=utcnow)
