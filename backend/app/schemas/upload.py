"""
Upload schemas.
"""

from pydantic import BaseModel, Field
from typing import Literal, Optional


class UploadRequest(BaseModel):
    """Base64 file body; data URLs are accepted."""
    content: str = Field(..., min_length=1, description="Base64 or data URL")
    category: Literal["order", "expense"] = "order"
    entity_id: Optional[int] = Field(None, description="Order or expense the file belongs to")
    kind: str = Field("receipt", max_length=32, description="receipt, payment, expense ...")
    filename: Optional[str] = Field(None, max_length=255, description="Original name, used for the extension")


class UploadResponse(BaseModel):
    path: str
    url: str
