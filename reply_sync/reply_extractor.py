"""
Reply extraction.

Selects operator-authored messages from an ordered message list and pairs
each with the nearest preceding end-user message, producing ReplyRecord
rows keyed by the upstream part id.
"""

import logging
from typing import Any, Dict, List, Optional

from .models import Message, ReplyRecord
from .normalizer import build_ordered_messages, conversation_parts

logger = logging.getLogger(__name__)


def find_previous_user_message(messages: List[Message], idx: int) -> Optional[str]:
    """
    Body of the closest end-user message before `idx`, or None.

    Empty-bodied messages are skipped, so an attachment-only user part never
    shadows the real question before it.
    """
    for j in range(idx - 1, -1, -1):
        message = messages[j]
        if message.role == "end_user" and message.has_body:
            return message.body_text
    return None


def fallback_part_id(conversation_id: str, message: Message, idx: int) -> str:
    """Stable key for an operator message that arrived without an upstream id."""
    return f"source_admin_{conversation_id}_{message.created_at or idx}"


def extract_replies(
    conversation_id: str,
    messages: List[Message],
    context: Optional[Dict[str, Optional[str]]] = None,
) -> List[ReplyRecord]:
    """
    Build reply records from an ordered message list.

    Args:
        conversation_id: Upstream conversation id
        messages: Output of build_ordered_messages()
        context: Conversation-level fields copied onto every record
            (tags, assignee_id, user_* identity)

    Returns:
        Records in message order; one per operator message with a non-empty body.
    """
    context = context or {}
    records = []
    for i, message in enumerate(messages):
        if message.role != "operator" or not message.has_body:
            continue
        records.append(
            ReplyRecord(
                conversation_id=str(conversation_id),
                part_id=message.part_id or fallback_part_id(conversation_id, message, i),
                reply_created_at=message.created_at_utc,
                teammate_id=message.author_id,
                teammate_name=message.author_name,
                user_prev_message=find_previous_user_message(messages, i),
                agent_reply=message.body_text,
                **context,
            )
        )
    return records


def extract_tags(conversation: dict) -> Optional[str]:
    """Comma-joined tag names; accepts `{"tags": [...]}` or a bare list."""
    tags_obj = conversation.get("tags")
    if isinstance(tags_obj, dict):
        tags = tags_obj.get("tags")
    else:
        tags = tags_obj
    if not isinstance(tags, list):
        return None
    names = [str(t.get("name")) for t in tags if isinstance(t, dict) and t.get("name")]
    return ", ".join(names) or None


def extract_assignee_id(conversation: dict) -> Optional[str]:
    assignee = conversation.get("assignee")
    if isinstance(assignee, dict) and assignee.get("id"):
        return str(assignee["id"])
    if conversation.get("admin_assignee_id"):
        return str(conversation["admin_assignee_id"])
    return None


def extract_user_identity(conversation: dict) -> Dict[str, Optional[str]]:
    """
    End-user identity for a conversation.

    Prefers the source author when it is a user, then the first user-authored
    part, and falls back to the first contact for id and external_id.
    """
    def _str(value: Any) -> Optional[str]:
        return str(value) if value not in (None, "") else None

    best = None
    source = conversation.get("source")
    if isinstance(source, dict):
        author = source.get("author")
        if isinstance(author, dict) and str(author.get("type") or "").lower() == "user":
            best = author
    if best is None:
        for part in conversation_parts(conversation):
            author = part.get("author")
            if isinstance(author, dict) and str(author.get("type") or "").lower() == "user":
                best = author
                break

    contact = None
    contacts = conversation.get("contacts")
    if isinstance(contacts, dict):
        contact_list = contacts.get("contacts") or []
        if contact_list and isinstance(contact_list[0], dict):
            contact = contact_list[0]

    best = best or {}
    contact = contact or {}
    return {
        "user_id": _str(best.get("id")) or _str(contact.get("id")),
        "user_name": _str(best.get("name")),
        "user_email": _str(best.get("email")),
        "user_external_id": _str(contact.get("external_id")),
    }


def conversation_context(conversation: dict) -> Dict[str, Optional[str]]:
    """Conversation-level fields carried onto each reply record."""
    return {
        "tags": extract_tags(conversation),
        "assignee_id": extract_assignee_id(conversation),
        **extract_user_identity(conversation),
    }


def build_reply_records(conversation: dict) -> List[ReplyRecord]:
    """Full derivation: normalize, extract, enrich. Pure in the conversation object."""
    conversation_id = conversation.get("id")
    if not conversation_id:
        logger.warning("Conversation without id; no replies extracted")
        return []
    messages = build_ordered_messages(conversation)
    return extract_replies(str(conversation_id), messages, conversation_context(conversation))
