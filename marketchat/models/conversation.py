from datetime import datetime
from typing import Dict, List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    # sorted pair of actor ids
    participants: List[str]
    participant_display_names: Dict[str, str]
    visible_to: List[str]
    read_by: List[str]
    listing_id: str
    listing_title: str
    listing_image_url: str
    last_message_text: str
    last_message_sender_id: Optional[str]
    last_message_timestamp: datetime
    created_at: datetime
