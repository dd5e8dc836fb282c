"""Telegram implementation of the platform client.

The daemons are synchronous, so each call opens a short-lived ``Bot``
session inside ``asyncio.run``. The Bot API has no per-chat history, so
``history`` drains ``getUpdates`` from the last confirmed offset, files every
message under its chat in a small JSON buffer (Telegram only keeps updates
for 24 hours, and so does the buffer) and answers from that buffer. The next
poll passes the offset on, which confirms everything already buffered.
"""

import asyncio
import json
import logging
import os
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path

from telegram import Bot, ReplyParameters
from telegram.error import NetworkError, RetryAfter, TelegramError

from relayclaw.bot.platform import ChannelInfo, PlatformMessage, PostConfirmation
from relayclaw.errors import PlatformError, RateLimited, SendError

logger = logging.getLogger(__name__)

ALLOWED_UPDATES = ["message", "channel_post"]
UPDATES_PAGE = 100
BUFFER_HOURS = 24


def _retry_seconds(exc):
    value = exc.retry_after
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def message_key(chat_id, message_id):
    return f"{chat_id}:{message_id}"


def _to_payload(message):
    payload = asdict(message)
    payload["posted_at"] = message.posted_at.isoformat() if message.posted_at else None
    return payload


def _from_payload(payload):
    payload = dict(payload)
    if payload.get("posted_at"):
        payload["posted_at"] = datetime.fromisoformat(payload["posted_at"])
    return PlatformMessage(**payload)


def to_platform_message(message):
    """Flatten a telegram.Message into the fields the fetcher needs."""
    files = []
    if message.document:
        files.append(message.document.file_id)
    if message.photo:
        # Photo sizes come smallest first.
        files.append(message.photo[-1].file_id)
    author = message.from_user
    reply = message.reply_to_message
    return PlatformMessage(
        message_id=message_key(message.chat.id, message.message_id),
        channel_id=str(message.chat.id),
        ts=str(message.message_id),
        text=message.text or message.caption or "",
        user_id=str(author.id) if author else None,
        thread_id=str(reply.message_id) if reply else None,
        is_bot=bool(author and author.is_bot),
        posted_at=message.date,
        files=files,
    )


class TelegramClient:
    def __init__(self, token, channels=(), mention_token="", timeout=30, state_path=None):
        if not token:
            raise PlatformError("TELEGRAM_BOT_TOKEN is not set")
        self.token = token
        self.channels = tuple(channels)
        self.timeout = timeout
        self.state_path = Path(state_path) if state_path else None
        self._mention = mention_token
        self._memory_state = None

    def _call(self, action, transient=PlatformError):
        """Run ``action(bot)`` in a fresh session, mapping Telegram errors.

        Network failures and timeouts raise ``transient`` so callers can tell
        them apart from rejected requests.
        """
        async def runner():
            async with Bot(self.token) as bot:
                return await action(bot)

        try:
            return asyncio.run(runner())
        except RetryAfter as e:
            raise RateLimited(str(e), retry_after=_retry_seconds(e)) from e
        except NetworkError as e:
            raise transient(str(e)) from e
        except TelegramError as e:
            raise PlatformError(str(e)) from e

    @property
    def mention_token(self):
        if not self._mention:
            me = self._call(lambda bot: bot.get_me())
            self._mention = f"@{me.username}"
        return self._mention

    def resolve_channel(self, name):
        chat = self._call(lambda bot: bot.get_chat(name))
        return ChannelInfo(id=str(chat.id), name=chat.title or chat.username or str(name))

    def list_channels(self):
        # The Bot API cannot enumerate chats; the configured ones are the universe.
        return [self.resolve_channel(name) for name in self.channels]

    def _load_state(self):
        if self.state_path is None:
            return self._memory_state or {"offset": None, "buffer": {}}
        try:
            return json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return {"offset": None, "buffer": {}}
        except ValueError:
            logger.warning(f"Resetting unreadable update state {self.state_path}")
            return {"offset": None, "buffer": {}}

    def _save_state(self, state):
        if self.state_path is None:
            self._memory_state = state
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_path.with_name(f"{self.state_path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(state))
        os.replace(tmp, self.state_path)

    def poll_updates(self):
        """Drain new updates into the per-chat buffer and return the buffer."""
        state = self._load_state()

        async def drain(bot):
            offset = state["offset"]
            updates = []
            while True:
                page = await bot.get_updates(
                    offset=offset,
                    limit=UPDATES_PAGE,
                    timeout=0,
                    allowed_updates=ALLOWED_UPDATES,
                    read_timeout=self.timeout,
                )
                updates.extend(page)
                if page:
                    offset = page[-1].update_id + 1
                if len(page) < UPDATES_PAGE:
                    return updates, offset

        updates, state["offset"] = self._call(drain)
        buffer = state["buffer"]
        for update in updates:
            message = update.effective_message
            if message is None:
                continue
            msg = to_platform_message(message)
            buffer.setdefault(msg.channel_id, {})[msg.message_id] = _to_payload(msg)

        cutoff = datetime.now(timezone.utc) - timedelta(hours=BUFFER_HOURS)
        for chat_id in list(buffer):
            buffer[chat_id] = {
                key: p for key, p in buffer[chat_id].items()
                if p["posted_at"] and datetime.fromisoformat(p["posted_at"]) >= cutoff
            }
            if not buffer[chat_id]:
                del buffer[chat_id]
        self._save_state(state)
        if updates:
            logger.debug(f"Buffered {len(updates)} update(s), next offset {state['offset']}")
        return buffer

    def history(self, channel_id, window_minutes):
        since = datetime.now(timezone.utc) - timedelta(minutes=window_minutes)
        buffered = self.poll_updates().get(str(channel_id), {})
        messages = [_from_payload(p) for p in buffered.values()]
        messages = [m for m in messages if m.posted_at and m.posted_at >= since]
        messages.sort(key=lambda m: int(m.ts))
        return messages

    def post(self, channel_id, thread_id, text):
        async def send(bot):
            reply = ReplyParameters(message_id=int(thread_id), allow_sending_without_reply=True) if thread_id else None
            return await bot.send_message(
                chat_id=channel_id, text=text, reply_parameters=reply, write_timeout=self.timeout,
            )

        sent = self._call(send, transient=SendError)
        return PostConfirmation(channel_id=str(sent.chat.id), ts=str(sent.message_id), thread_id=thread_id)

    def download_file(self, ref, dest_dir):
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)

        async def download(bot):
            tg_file = await bot.get_file(ref)
            name = os.path.basename(tg_file.file_path or "") or ref
            target = dest_dir / name
            await tg_file.download_to_drive(custom_path=target)
            return target

        path = self._call(download)
        logger.debug(f"Downloaded {ref} to {path}")
        return str(path)
