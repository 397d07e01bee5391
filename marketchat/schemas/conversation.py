from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from marketchat.services import inbox_rules
from marketchat.utils.clock import as_utc


class CamelModel(BaseModel):

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Conversation(CamelModel):
    """A two-party chat thread anchored to one listing."""

    id: str
    participants: List[str]
    participant_display_names: Dict[str, str] = Field(default_factory=dict)
    visible_to: FrozenSet[str] = frozenset()
    read_by: FrozenSet[str] = frozenset()
    listing_id: str
    listing_title: str = ""
    listing_image_url: str = ""
    last_message_text: str = ""
    last_message_sender_id: Optional[str] = None
    last_message_timestamp: datetime
    created_at: datetime

    @field_validator("participants")
    @classmethod
    def _two_party(cls, value: List[str]) -> List[str]:
        # the deletion cascade may leave a single remaining participant
        if not 1 <= len(value) <= 2:
            raise ValueError("a conversation has one or two participants")
        return sorted(value)

    @field_validator("last_message_sender_id")
    @classmethod
    def _blank_sender_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None

    @field_validator("last_message_timestamp", "created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Conversation":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)

    def is_participant(self, actor_id: str) -> bool:
        return actor_id in self.participants

    def other_participant(self, actor_id: str) -> Optional[str]:
        return next((p for p in self.participants if p != actor_id), None)

    def is_unread(self, actor_id: str) -> bool:
        return inbox_rules.is_unread(self.read_by, self.last_message_sender_id, actor_id)


class Message(CamelModel):

    id: str
    conversation_id: str
    text: str
    sender_id: str
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Message":
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class InboxItem(CamelModel):
    """Inbox row as seen by one actor."""

    conversation: Conversation
    other_participant_id: Optional[str]
    display_name: str
    display_last_message: str
    is_unread: bool


class NewMessageEvent(CamelModel):

    conversation_id: str
    sender_id: str
    recipient_ids: List[str]
    text: str
    listing_title: str


class StartConversationRequest(CamelModel):

    listing_id: str = Field(min_length=1)
    # defaults to the listing's seller
    other_actor_id: Optional[str] = None


class SendMessageRequest(CamelModel):

    text: str


class AccountDeletedRequest(CamelModel):

    deleted_actor_id: str = Field(min_length=1)


class InboxPage(CamelModel):

    items: List[InboxItem]
    next_cursor: Optional[str] = None


class MessagePage(CamelModel):

    items: List[Message]
    next_cursor: Optional[str] = None


class UnreadStatus(CamelModel):

    has_unread: bool


class InboxSnapshot(CamelModel):

    type: Literal["snapshot"] = "snapshot"
    conversations: List[InboxItem]
    has_unread: bool


class InboxChange(CamelModel):

    type: Literal["change"] = "change"
    kind: Literal["added", "modified", "removed"]
    conversation_id: str
    item: Optional[InboxItem] = None
    has_unread: bool


class ThreadSnapshot(CamelModel):

    type: Literal["snapshot"] = "snapshot"
    conversation: Conversation
    messages: List[Message]


class ThreadChange(CamelModel):

    type: Literal["change"] = "change"
    kind: Literal["message", "conversation", "deleted"]
    conversation_id: str
    message: Optional[Message] = None
    conversation: Optional[Conversation] = None


InboxUpdate = Union[InboxSnapshot, InboxChange]
ThreadUpdate = Union[ThreadSnapshot, ThreadChange]
