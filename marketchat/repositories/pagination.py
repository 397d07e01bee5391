from datetime import datetime
from typing import Any, Dict, Tuple

from marketchat.errors import ValidationError
from marketchat.utils.clock import from_millis, to_bson, to_millis


def encode_cursor(timestamp: datetime, doc_id: Any) -> str:
    return f"{to_millis(timestamp)}:{doc_id}"


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    # Cursor format: timestamp_ms:document_id
    ts_str, _, doc_id = cursor.partition(":")
    try:
        ts_ms = int(ts_str)
    except ValueError:
        raise ValidationError("Invalid cursor") from None
    if not doc_id:
        raise ValidationError("Invalid cursor")
    return to_bson(from_millis(ts_ms)), doc_id


def before_cursor(field: str, ts: datetime, doc_id: Any) -> Dict[str, Any]:
    return {
        "$or": [
            {field: {"$lt": ts}},
            {field: ts, "_id": {"$lt": doc_id}},
        ]
    }
