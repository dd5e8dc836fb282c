"""What the queue pipeline needs from a chat platform."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol


@dataclass
class PlatformMessage:
    message_id: str
    channel_id: str
    ts: str
    text: str
    user_id: Optional[str] = None
    thread_id: Optional[str] = None
    is_bot: bool = False
    posted_at: Optional[datetime] = None
    files: List[str] = field(default_factory=list)


@dataclass
class ChannelInfo:
    id: str
    name: str


@dataclass
class PostConfirmation:
    channel_id: str
    ts: str
    thread_id: Optional[str] = None


class PlatformClient(Protocol):
    mention_token: str

    def list_channels(self) -> List[ChannelInfo]: ...

    def resolve_channel(self, name: str) -> Optional[ChannelInfo]: ...

    def history(self, channel_id: str, window_minutes: int) -> List[PlatformMessage]: ...

    def post(self, channel_id: str, thread_id: Optional[str], text: str) -> PostConfirmation: ...

    def download_file(self, ref: str, dest_dir) -> str: ...
