from datetime import datetime
from typing import TypedDict

from bson import ObjectId


class MessageDocument(TypedDict, total=False):
    _id: ObjectId
    conversation_id: str
    sender_id: str
    text: str
    timestamp: datetime
