from pydantic import BaseModel, Field
from typing import Any, Optional
import uuid

def _tid():
    return uuid.uuid4().hex

class SuccessResponse(BaseModel):
    """Simple success response wrapper with just data, success, and trace_id"""
    success: Optional[bool] = Field(default=True)
    trace_id: str = Field(default_factory=_tid)
    data: Optional[Any] = None
