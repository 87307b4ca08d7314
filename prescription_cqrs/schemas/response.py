import uuid
from typing import Any, Optional

from pydantic import BaseModel, Field


def _rid():
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Success envelope: data, success flag and request_id, mirroring the error envelope."""
    success: Optional[bool] = Field(default=True)
    request_id: str = Field(default_factory=_rid)
    data: Optional[Any] = None
