from typing import List, Optional, TypedDict


class ListingDocument(TypedDict, total=False):
    _id: str
    title: str
    image_urls: List[str]
    seller_id: str
    description: Optional[str]
