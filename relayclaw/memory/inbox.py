"""Inbox: the persistent message/response queue.

SQLite-backed. The fetcher writes inbound messages here, the processor claims
them and writes generated responses, the sender claims responses and posts
them. Several daemon processes may share one database file; every claim is a
single IMMEDIATE transaction so a pending row goes to exactly one worker.
"""

import json
import logging
import os
import re
import sqlite3
from contextlib import contextmanager
from datetime import timedelta

from relayclaw.errors import DuplicateKey, IllegalTransition
from relayclaw.memory.database import init_db
from relayclaw.memory.models import (
    InboundItem,
    InboundStatus,
    OutboundItem,
    OutboundStatus,
    SendOutcome,
    check_transition,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

_PUNCT = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


def normalize_text(text):
    return _SPACES.sub(" ", _PUNCT.sub("", (text or "").lower())).strip()


def text_similarity(a, b):
    """Jaccard overlap of the words longer than two characters."""
    words_a = {w for w in a.split(" ") if len(w) > 2}
    words_b = {w for w in b.split(" ") if len(w) > 2}
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


class QueueStore:
    SIMILARITY_THRESHOLD = 0.7
    CONTAINMENT_MIN_CHARS = 20
    # Delay before a retried send is claimed again: base * 2**(attempt-1), capped.
    RETRY_BACKOFF_BASE = 30
    RETRY_BACKOFF_MAX = 300

    def __init__(self, db, max_retries=3, clock=utcnow):
        self.db = db
        self.max_retries = max_retries
        self.clock = clock

    @classmethod
    def open(cls, path, **kwargs):
        return cls(init_db(path), **kwargs)

    def close(self):
        self.db.close()

    @contextmanager
    def _transaction(self):
        self.db.execute("BEGIN IMMEDIATE")
        try:
            yield self.db
        except BaseException:
            self.db.execute("ROLLBACK")
            raise
        self.db.execute("COMMIT")

    def _now(self):
        return to_iso(self.clock())

    def _cutoff(self, **delta):
        return to_iso(self.clock() - timedelta(**delta))

    # ── inbound ─────────────────────────────────────────

    def enqueue_inbound(self, item):
        try:
            self.db.execute(
                """INSERT INTO message_queue
                   (message_id, channel_id, channel_name, thread_id, ts, user_id, text,
                    file_paths, fetched_at, status)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    item.message_id,
                    item.channel_id,
                    item.channel_name,
                    item.thread_id,
                    item.ts,
                    item.user_id,
                    item.text,
                    json.dumps(item.file_paths) if item.file_paths else None,
                    to_iso(item.fetched_at),
                    InboundStatus.PENDING.value,
                ),
            )
        except sqlite3.IntegrityError:
            raise DuplicateKey(item.message_id) from None
        item.status = InboundStatus.PENDING
        return item

    def claim_next_inbound(self, limit):
        now = self._now()
        with self._transaction() as db:
            rows = db.execute(
                "SELECT message_id FROM message_queue WHERE status = ? ORDER BY fetched_at ASC, id ASC LIMIT ?",
                (InboundStatus.PENDING.value, limit),
            ).fetchall()
            ids = [row["message_id"] for row in rows]
            for message_id in ids:
                db.execute(
                    "UPDATE message_queue SET status = ?, claimed_at = ?, claimed_by = ? WHERE message_id = ? AND status = ?",
                    (InboundStatus.PROCESSING.value, now, os.getpid(), message_id, InboundStatus.PENDING.value),
                )
            claimed = [self._inbound_row(db, message_id) for message_id in ids]
        if claimed:
            logger.debug(f"Claimed {len(claimed)} inbound item(s)")
        return claimed

    def _inbound_row(self, db, message_id):
        row = db.execute("SELECT * FROM message_queue WHERE message_id = ?", (message_id,)).fetchone()
        if row is None:
            raise KeyError(message_id)
        return InboundItem.from_row(row)

    def get_inbound(self, message_id):
        row = self.db.execute("SELECT * FROM message_queue WHERE message_id = ?", (message_id,)).fetchone()
        return InboundItem.from_row(row) if row else None

    def _move_inbound(self, db, message_id, target, **fields):
        current = self._inbound_row(db, message_id).status
        target = check_transition(current, target)
        assignments = ", ".join(f"{name} = ?" for name in fields)
        sql = "UPDATE message_queue SET status = ?"
        if assignments:
            sql += ", " + assignments
        cursor = db.execute(
            sql + " WHERE message_id = ? AND status = ?",
            (target.value, *fields.values(), message_id, current.value),
        )
        if cursor.rowcount != 1:
            raise IllegalTransition("inbound", current.value, target.value)
        return target

    def complete_inbound(self, message_id, outcome, error=None, response=None):
        """Finish a claimed item; a response is queued in the same transaction."""
        outcome = InboundStatus(outcome)
        with self._transaction() as db:
            self._move_inbound(db, message_id, outcome, processed_at=self._now(), error_message=error)
            if response is not None:
                self._insert_outbound(db, response)
        return response

    def retry_inbound(self, message_id):
        with self._transaction() as db:
            self._move_inbound(
                db, message_id, InboundStatus.PENDING,
                claimed_at=None, processed_at=None, error_message=None,
            )

    def retry_failed(self):
        """Reset every errored inbound and outbound row to pending."""
        with self._transaction() as db:
            inbound = db.execute(
                """UPDATE message_queue SET status = ?, claimed_at = NULL, processed_at = NULL,
                   error_message = NULL WHERE status = ?""",
                (InboundStatus.PENDING.value, InboundStatus.ERROR.value),
            ).rowcount
            outbound = db.execute(
                "UPDATE response_queue SET status = ?, retry_count = 0, claimed_at = NULL, not_before = NULL WHERE status = ?",
                (OutboundStatus.PENDING.value, OutboundStatus.ERROR.value),
            ).rowcount
        return inbound, outbound

    # ── outbound ────────────────────────────────────────

    def _insert_outbound(self, db, item):
        cursor = db.execute(
            """INSERT INTO response_queue
               (message_id, channel_id, thread_id, response_text, created_at, status, retry_count)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                item.message_id,
                item.channel_id,
                item.thread_id,
                item.response_text,
                to_iso(item.created_at),
                OutboundStatus.PENDING.value,
                item.retry_count,
            ),
        )
        item.id = cursor.lastrowid
        item.status = OutboundStatus.PENDING
        return item

    def enqueue_outbound(self, item):
        with self._transaction() as db:
            return self._insert_outbound(db, item)

    def claim_next_outbound(self, limit):
        now = self._now()
        with self._transaction() as db:
            rows = db.execute(
                """SELECT id FROM response_queue
                   WHERE status = ? AND retry_count < ? AND (not_before IS NULL OR not_before <= ?)
                   ORDER BY created_at ASC, id ASC LIMIT ?""",
                (OutboundStatus.PENDING.value, self.max_retries, now, limit),
            ).fetchall()
            ids = [row["id"] for row in rows]
            for outbound_id in ids:
                db.execute(
                    "UPDATE response_queue SET status = ?, claimed_at = ?, claimed_by = ? WHERE id = ? AND status = ?",
                    (OutboundStatus.SENDING.value, now, os.getpid(), outbound_id, OutboundStatus.PENDING.value),
                )
            claimed = [self._outbound_row(db, outbound_id) for outbound_id in ids]
        return claimed

    def _outbound_row(self, db, outbound_id):
        row = db.execute("SELECT * FROM response_queue WHERE id = ?", (outbound_id,)).fetchone()
        if row is None:
            raise KeyError(outbound_id)
        return OutboundItem.from_row(row)

    def get_outbound(self, outbound_id):
        row = self.db.execute("SELECT * FROM response_queue WHERE id = ?", (outbound_id,)).fetchone()
        return OutboundItem.from_row(row) if row else None

    def _move_outbound(self, db, outbound_id, target, **fields):
        current = self._outbound_row(db, outbound_id).status
        target = check_transition(current, target)
        assignments = "".join(f", {name} = ?" for name in fields)
        cursor = db.execute(
            f"UPDATE response_queue SET status = ?{assignments} WHERE id = ? AND status = ?",
            (target.value, *fields.values(), outbound_id, current.value),
        )
        if cursor.rowcount != 1:
            raise IllegalTransition("outbound", current.value, target.value)
        return target

    def backoff(self, attempt):
        return min(self.RETRY_BACKOFF_BASE * 2 ** (attempt - 1), self.RETRY_BACKOFF_MAX)

    def complete_outbound(self, outbound_id, outcome, error=None, retry_after=None):
        """Record the result of one send attempt and return the new status.

        ``RETRY`` and ``FAILED`` count against the retry budget; a retry that
        exhausts it lands in ``error`` instead of ``pending``. A retried row is
        not claimable again until ``retry_after`` seconds have passed, or the
        exponential backoff for its attempt count when none is given.
        """
        outcome = SendOutcome(outcome)
        with self._transaction() as db:
            item = self._outbound_row(db, outbound_id)
            if outcome is SendOutcome.SENT:
                return self._move_outbound(db, outbound_id, OutboundStatus.SENT, sent_at=self._now(), error_message=None)
            if outcome is SendOutcome.DROPPED:
                return self._move_outbound(db, outbound_id, OutboundStatus.ERROR, error_message=error)
            retries = item.retry_count + 1
            if outcome is SendOutcome.RETRY and retries < self.max_retries:
                delay = retry_after if retry_after is not None else self.backoff(retries)
                return self._move_outbound(
                    db, outbound_id, OutboundStatus.PENDING, retry_count=retries, error_message=error,
                    claimed_at=None, not_before=to_iso(self.clock() + timedelta(seconds=delay)),
                )
            return self._move_outbound(
                db, outbound_id, OutboundStatus.ERROR, retry_count=retries, error_message=error, claimed_at=None,
            )

    def release_outbound(self, outbound_id):
        """Hand a claimed but untried row back to the queue."""
        with self._transaction() as db:
            return self._move_outbound(db, outbound_id, OutboundStatus.PENDING, claimed_at=None)

    def mark_sent(self, item, posted_text=None):
        """Mark a response delivered and write its audit trail atomically.

        ``posted_text`` is what actually reached the platform when it differs
        from the queued text; the self-response ledger stores that version.
        """
        text = posted_text if posted_text is not None else item.response_text
        now = self._now()
        with self._transaction() as db:
            self._move_outbound(db, item.id, OutboundStatus.SENT, sent_at=now, error_message=None)
            db.execute(
                """INSERT OR IGNORE INTO responded_messages
                   (message_id, channel_id, thread_id, response_text, responded_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (item.message_id, item.channel_id, item.thread_id, item.response_text, now),
            )
            if item.thread_id:
                self._upsert_thread(db, item.channel_id, item.thread_id, now)
            db.execute(
                "INSERT INTO bot_responses (channel_id, thread_id, response_text, posted_at) VALUES (?, ?, ?, ?)",
                (item.channel_id, item.thread_id, text, now),
            )
        item.status = OutboundStatus.SENT
        return item

    # ── ledgers ─────────────────────────────────────────

    def has_responded(self, message_id):
        row = self.db.execute("SELECT 1 FROM responded_messages WHERE message_id = ?", (message_id,)).fetchone()
        return row is not None

    def record_responded(self, record):
        cursor = self.db.execute(
            """INSERT OR IGNORE INTO responded_messages
               (message_id, channel_id, thread_id, response_text, responded_at)
               VALUES (?, ?, ?, ?, ?)""",
            (record.message_id, record.channel_id, record.thread_id, record.response_text, to_iso(record.responded_at)),
        )
        return cursor.rowcount == 1

    def _upsert_thread(self, db, channel_id, thread_id, now):
        db.execute(
            """INSERT INTO bot_threads (channel_id, thread_id, last_checked, created_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(channel_id, thread_id) DO UPDATE SET last_checked = excluded.last_checked""",
            (channel_id, thread_id, now, now),
        )

    def upsert_thread_watch(self, channel_id, thread_id):
        self._upsert_thread(self.db, channel_id, thread_id, self._now())

    def touch_thread(self, channel_id, thread_id):
        self.db.execute(
            "UPDATE bot_threads SET last_checked = ? WHERE channel_id = ? AND thread_id = ?",
            (self._now(), channel_id, thread_id),
        )

    def active_threads(self, since_minutes=60):
        rows = self.db.execute(
            """SELECT channel_id, thread_id FROM bot_threads
               WHERE last_checked > ? ORDER BY last_checked DESC""",
            (self._cutoff(minutes=since_minutes),),
        ).fetchall()
        return [(row["channel_id"], row["thread_id"]) for row in rows]

    def record_self_response(self, record):
        self.db.execute(
            "INSERT INTO bot_responses (channel_id, thread_id, response_text, posted_at) VALUES (?, ?, ?, ?)",
            (record.channel_id, record.thread_id, record.response_text, to_iso(record.posted_at)),
        )

    def _recent_self_responses(self, channel_id, thread_id, within_minutes):
        return self.db.execute(
            """SELECT response_text FROM bot_responses
               WHERE channel_id = ? AND thread_id IS ? AND posted_at > ?
               ORDER BY posted_at DESC""",
            (channel_id, thread_id, self._cutoff(minutes=within_minutes)),
        ).fetchall()

    def is_self_response(self, channel_id, thread_id, text, within_minutes=10, fuzzy=True):
        """True if ``text`` looks like something this system posted recently.

        Exact match after normalization is always checked. With ``fuzzy`` the
        text also matches on >70% word overlap, or when one text contains the
        other and the contained text is longer than 20 characters (a quote of
        our response, or our response with something appended).
        """
        normalized = normalize_text(text)
        if not normalized:
            return False
        for row in self._recent_self_responses(channel_id, thread_id, within_minutes):
            ours = normalize_text(row["response_text"])
            if ours == normalized:
                return True
            if not fuzzy:
                continue
            if text_similarity(normalized, ours) > self.SIMILARITY_THRESHOLD:
                return True
            shorter, longer = sorted((normalized, ours), key=len)
            if len(shorter) > self.CONTAINMENT_MIN_CHARS and shorter in longer:
                return True
        return False

    def self_response_count(self, channel_id, thread_id, within_minutes=60):
        row = self.db.execute(
            """SELECT COUNT(*) AS n FROM bot_responses
               WHERE channel_id = ? AND thread_id IS ? AND posted_at > ?""",
            (channel_id, thread_id, self._cutoff(minutes=within_minutes)),
        ).fetchone()
        return row["n"]

    # ── maintenance ─────────────────────────────────────

    def recover_abandoned(self, older_than_seconds, is_alive=None):
        """Release rows whose worker died mid-claim.

        A row qualifies once its claim is older than ``older_than_seconds``
        and, when ``is_alive`` is given, the claiming PID is gone. Inbound rows
        go to ``error`` (retryable by hand); outbound rows count a failed
        attempt and go back to ``pending`` while budget remains.
        """
        cutoff = self._cutoff(seconds=older_than_seconds)
        now = self._now()

        def abandoned(rows):
            return [row for row in rows if is_alive is None or not is_alive(row["claimed_by"])]

        with self._transaction() as db:
            inbound = abandoned(db.execute(
                "SELECT message_id, claimed_by FROM message_queue WHERE status = ? AND claimed_at < ?",
                (InboundStatus.PROCESSING.value, cutoff),
            ).fetchall())
            for row in inbound:
                db.execute(
                    """UPDATE message_queue SET status = ?, processed_at = ?, error_message = ?
                       WHERE message_id = ? AND status = ?""",
                    (
                        InboundStatus.ERROR.value,
                        now,
                        "abandoned: worker died or exceeded its runtime ceiling",
                        row["message_id"],
                        InboundStatus.PROCESSING.value,
                    ),
                )
            outbound = abandoned(db.execute(
                "SELECT id, claimed_by FROM response_queue WHERE status = ? AND claimed_at < ?",
                (OutboundStatus.SENDING.value, cutoff),
            ).fetchall())
            for row in outbound:
                db.execute(
                    """UPDATE response_queue
                       SET retry_count = retry_count + 1,
                           status = CASE WHEN retry_count + 1 >= ? THEN ? ELSE ? END,
                           claimed_at = NULL,
                           error_message = ?
                       WHERE id = ? AND status = ?""",
                    (
                        self.max_retries,
                        OutboundStatus.ERROR.value,
                        OutboundStatus.PENDING.value,
                        "abandoned: sender died or exceeded its runtime ceiling",
                        row["id"],
                        OutboundStatus.SENDING.value,
                    ),
                )
        if inbound or outbound:
            logger.warning(f"Recovered abandoned claims: {len(inbound)} inbound, {len(outbound)} outbound")
        return len(inbound), len(outbound)

    def count_inbound(self, status):
        row = self.db.execute(
            "SELECT COUNT(*) AS n FROM message_queue WHERE status = ?", (InboundStatus(status).value,)
        ).fetchone()
        return row["n"]

    def count_outbound(self, status):
        status = OutboundStatus(status)
        sql = "SELECT COUNT(*) AS n FROM response_queue WHERE status = ?"
        params = [status.value]
        if status is OutboundStatus.PENDING:
            # Only rows claim_next_outbound would hand out right now.
            sql += " AND retry_count < ? AND (not_before IS NULL OR not_before <= ?)"
            params.extend([self.max_retries, self._now()])
        return self.db.execute(sql, params).fetchone()["n"]

    def counts(self):
        def grouped(table):
            rows = self.db.execute(f"SELECT status, COUNT(*) AS n FROM {table} GROUP BY status").fetchall()
            return {row["status"]: row["n"] for row in rows}

        def total(table):
            return self.db.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"]

        return {
            "inbound": grouped("message_queue"),
            "outbound": grouped("response_queue"),
            "responded": total("responded_messages"),
            "threads": total("bot_threads"),
            "self_responses": total("bot_responses"),
        }

    def purge(self, older_than_days=30):
        """Drop finished queue rows and old self-response records. The responded ledger is kept."""
        cutoff = self._cutoff(days=older_than_days)
        with self._transaction() as db:
            removed = db.execute(
                "DELETE FROM message_queue WHERE status = ? AND processed_at < ?",
                (InboundStatus.PROCESSED.value, cutoff),
            ).rowcount
            removed += db.execute(
                "DELETE FROM response_queue WHERE status = ? AND sent_at < ?",
                (OutboundStatus.SENT.value, cutoff),
            ).rowcount
            removed += db.execute("DELETE FROM bot_responses WHERE posted_at < ?", (cutoff,)).rowcount
        return removed
