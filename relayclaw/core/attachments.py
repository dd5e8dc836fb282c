"""Turn downloaded attachment files into prompt context."""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = {
    "code": ("py", "js", "ts", "sh", "go", "rs", "c", "cpp", "java", "jsx", "tsx"),
    "text": ("txt", "md", "json", "yml", "yaml", "xml", "csv"),
    "image": ("png", "jpg", "jpeg", "gif", "webp"),
    "document": ("pdf",),
}
INLINE_TYPES = ("code", "text")


@dataclass
class Attachment:
    path: str
    name: str
    extension: str
    kind: Optional[str]
    size: int = 0
    content: Optional[str] = None
    error: Optional[str] = None


def file_kind(extension):
    for kind, extensions in SUPPORTED_TYPES.items():
        if extension in extensions:
            return kind
    return None


def format_size(size):
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def load_attachment(path, max_size):
    name = os.path.basename(path)
    extension = os.path.splitext(name)[1].lower().lstrip(".")
    attachment = Attachment(path=path, name=name, extension=extension, kind=file_kind(extension))
    try:
        attachment.size = os.path.getsize(path)
    except OSError as e:
        attachment.error = f"unreadable: {e.strerror or e}"
        return attachment
    if attachment.size > max_size:
        attachment.error = f"too large ({format_size(attachment.size)}, limit {format_size(max_size)})"
    elif attachment.kind in INLINE_TYPES:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as fh:
                attachment.content = fh.read()
        except OSError as e:
            attachment.error = f"unreadable: {e.strerror or e}"
    return attachment


def load_attachments(paths, max_size):
    loaded = []
    for path in paths:
        attachment = load_attachment(path, max_size)
        if attachment.error:
            logger.warning(f"Attachment {attachment.name}: {attachment.error}")
        loaded.append(attachment)
    return loaded


def attachment_context(attachments):
    """Prompt section describing the attachments; text files are inlined."""
    if not attachments:
        return ""
    parts = ["", "Message attachments:"]
    for a in attachments:
        if a.error:
            parts.append(f"- {a.name}: {a.error}")
        elif a.kind is None:
            parts.append(f"- {a.name}: unsupported file type (.{a.extension})")
        elif a.content is not None:
            parts.append(f"- {a.name} ({a.kind}, {format_size(a.size)}):")
            parts.append(f"```{a.extension}\n{a.content}\n```")
        else:
            parts.append(f"- {a.name} ({a.kind}, {format_size(a.size)}) at {a.path}")
    return "\n".join(parts)


def binary_paths(attachments):
    """Images and documents a multimodal provider can read directly."""
    return [a.path for a in attachments if not a.error and a.kind in ("image", "document")]
