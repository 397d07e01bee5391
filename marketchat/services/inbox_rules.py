from typing import Iterable, Optional

from marketchat.errors import ValidationError


ID_SEPARATOR = "_"
UNKNOWN_DISPLAY_NAME = "Unknown User"
EMPTY_THREAD_PREVIEW = "No messages yet."


def conversation_id(actor_a: str, actor_b: str, listing_id: str) -> str:
    """Both participants derive the same id: the sorted pair, then the listing.

    >>> conversation_id("u2", "u1", "L9")
    'u1_u2_L9'
    """
    if not actor_a or not actor_b or not listing_id:
        raise ValidationError("actor ids and listing id must be non-empty")
    if actor_a == actor_b:
        raise ValidationError("a conversation needs two different actors")
    return ID_SEPARATOR.join(sorted([actor_a, actor_b])) + ID_SEPARATOR + listing_id


def normalize_text(text: Optional[str]) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValidationError("Message text cannot be empty")
    return cleaned


def is_unread(read_by: Iterable[str], last_message_sender_id: Optional[str], actor_id: str) -> bool:
    return actor_id not in set(read_by) and last_message_sender_id != actor_id


def display_last_message(text: str) -> str:
    return text if text else EMPTY_THREAD_PREVIEW
