from pydantic import BaseModel, Field
from typing import Literal, Optional

VISITOR_JOINED = "visitor_joined"


class VisitorEvent(BaseModel):
    # stored as the ZSET member, scored by timestamp
    type: str = Field(VISITOR_JOINED, description="event kind, currently only visitor_joined")
    count: int = Field(0, ge=0, description="active sessions when the event fired")
    timestamp: int = Field(..., description="epoch ms")


class VisitorRequest(BaseModel):
    sessionId: str = Field(..., min_length=1, description="client-generated tab id")
    action: Literal["register", "heartbeat", "count"]
    includeCount: bool = False


class Notification(BaseModel):
    type: str = VISITOR_JOINED
    message: str
    count: int
    timestamp: int


class RegisterResult(BaseModel):
    is_new: bool = False
    count: Optional[int] = None
