"""
Message normalization for Intercom conversations.

Turns one conversation object (a `source` message plus an ordered list of
`conversation_parts`) into a timestamp-ordered list of Message models with
plain-text bodies and a two-value author role.

Every function here is pure and total: malformed or missing fields degrade
to empty strings / None rather than raising, because a single odd part must
not stop a whole page from syncing.
"""

import re
from typing import Any, List, Optional

from .models import Message

# Upstream author types that count as operators. Everything else (user,
# lead, contact, bot, missing) is treated as an end user.
OPERATOR_AUTHOR_TYPES = frozenset({"admin"})

_BREAK_TAG = re.compile(r"<br\s*/?>", re.IGNORECASE)
_BLOCK_CLOSE_TAG = re.compile(r"</(?:p|div|li|h[1-6]|blockquote|tr)\s*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]*>")
_HORIZONTAL_SPACE = re.compile(r"[ \t]+")
_SPACE_AFTER_NEWLINE = re.compile(r"\n\s+")

# Order matters: &amp; goes last so "&amp;lt;" decodes to "&lt;", not "<"
_ENTITIES = (
    ("&nbsp;", " "),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&#39;", "'"),
    ("&quot;", '"'),
    ("&amp;", "&"),
)


def html_to_text(html: Any) -> str:
    """
    Convert an Intercom HTML body to plain text.

    Rules:
    - <br> and closing block tags become newlines
    - all other tags become a space
    - a fixed set of entities is decoded
    - runs of spaces/tabs collapse to one space, whitespace after a newline is dropped
    - result is trimmed

    Examples:
        "<p>Hi</p>" -> "Hi"
        "<p>a</p><p>b &amp; c</p>" -> "a\\nb & c"
        None -> ""
    """
    if not html:
        return ""
    if not isinstance(html, str):
        html = str(html)

    text = _BREAK_TAG.sub("\n", html)
    text = _BLOCK_CLOSE_TAG.sub("\n", text)
    text = _ANY_TAG.sub(" ", text)
    for entity, replacement in _ENTITIES:
        text = text.replace(entity, replacement)

    text = _HORIZONTAL_SPACE.sub(" ", text)
    text = _SPACE_AFTER_NEWLINE.sub("\n", text)
    return text.strip()


def normalize_role(author_type: Any) -> str:
    """Map an upstream author type to `operator` or `end_user`."""
    if str(author_type or "").strip().lower() in OPERATOR_AUTHOR_TYPES:
        return "operator"
    return "end_user"


def _as_timestamp(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        ts = int(float(value))
    except (TypeError, ValueError):
        return None
    return ts if ts > 0 else None


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def normalize_message(obj: Any, sequence: int = 0) -> Message:
    """Normalize a single source or conversation part."""
    if not isinstance(obj, dict):
        obj = {}
    author = obj.get("author")
    if not isinstance(author, dict):
        author = {}

    return Message(
        part_id=_as_optional_str(obj.get("id")),
        created_at=_as_timestamp(obj.get("created_at")),
        role=normalize_role(author.get("type")),
        author_id=_as_optional_str(author.get("id")),
        author_name=_as_optional_str(author.get("name")),
        author_email=_as_optional_str(author.get("email")),
        body_text=html_to_text(obj.get("body")),
        sequence=sequence,
    )


def conversation_parts(conversation: dict) -> list:
    """The raw parts list of a conversation, tolerating both envelope shapes."""
    container = conversation.get("conversation_parts")
    if isinstance(container, dict):
        parts = container.get("conversation_parts") or []
    elif isinstance(container, list):
        parts = container
    else:
        parts = []
    return [p for p in parts if isinstance(p, dict)]


def message_sort_key(message: Message) -> tuple:
    """Timestamp first, missing as 0; ties fall back to emission order."""
    return (message.created_at or 0, message.sequence)


def build_ordered_messages(conversation: Any) -> List[Message]:
    """
    Normalize a conversation into messages ordered by timestamp.

    The source message is emitted first, then parts in upstream order, and
    ties on timestamp keep that emission order. The source is not pinned
    to the front: if a part is older, it sorts before it.
    Messages with no timestamp sort as time 0.
    """
    if not isinstance(conversation, dict):
        return []

    raw: list = []
    source = conversation.get("source")
    if isinstance(source, dict) and source:
        raw.append(source)
    raw.extend(conversation_parts(conversation))

    messages = [normalize_message(obj, sequence=i) for i, obj in enumerate(raw)]
    messages.sort(key=message_sort_key)
    return messages
