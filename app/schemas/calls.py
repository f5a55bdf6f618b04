from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class InitiateCallIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_user_id: str = Field(alias="targetUserId", min_length=1)


class CallSessionOut(BaseModel):
    """GET /calls/session/{id}"""
    callSessionId: str
    status: str
    duration: int
    startedAt: datetime | None = None
    endedAt: datetime | None = None
    recordingUrl: str | None = None
    externalCallId: str | None = None


class CallSyncOut(BaseModel):
    status: str
    duration: int
