"""Event names and payload schemas for the real-time channel."""

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from ..domain.models import MessageType

# Inbound
JOB_JOIN = "job:join"
JOB_LEAVE = "job:leave"
JOB_UPDATE_STATUS = "job:update-status"
JOB_UPDATE_LOCATION = "job:update-location"
JOB_UPDATE_ETA = "job:update-eta"
MESSAGE_SEND = "message:send"

# Outbound
JOB_CREATED = "job:created"
JOB_JOINED = "job:joined"
JOB_LEFT = "job:left"
JOB_USER_JOINED = "job:user-joined"
JOB_USER_LEFT = "job:user-left"
JOB_STATUS_UPDATED = "job:status-updated"
JOB_LOCATION_UPDATED = "job:location-updated"
JOB_ETA_UPDATED = "job:eta-updated"
JOB_UPDATED = "job:updated"
QUOTE_RECEIVED = "quote:received"
QUOTE_APPROVED = "quote:approved"
QUOTE_ACCEPTED = "quote:accepted"
QUOTE_REJECTED = "quote:rejected"
PAYMENT_UPDATED = "payment:updated"
MESSAGE_NEW = "message:new"
NOTIFICATION_NEW = "notification:new"
ERROR = "error"


def job_room(job_id: str) -> str:
    return f"job:{job_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def role_room(role: str) -> str:
    return f"role:{role}"


@dataclass(frozen=True, slots=True)
class RealtimeEvent:
    name: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_frame(self) -> dict[str, Any]:
        return {"event": self.name, "data": self.data}


class JobRoomPayload(BaseModel):
    job_id: str = Field(..., alias="jobId", min_length=1)


class StatusUpdatePayload(JobRoomPayload):
    status: str
    notes: str | None = None


class LocationUpdatePayload(JobRoomPayload):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    eta_minutes: int | None = Field(default=None, alias="etaMinutes", ge=0)


class EtaUpdatePayload(JobRoomPayload):
    eta_minutes: int = Field(..., alias="etaMinutes", ge=0)


class MessageSendPayload(JobRoomPayload):
    content: str
    type: MessageType = MessageType.TEXT
