from datetime import datetime, time
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

CadenceModeName = Literal["immediate", "hourly", "daily", "custom"]
EventTypeName = Literal[
    "new_lead",
    "new_message",
    "lead_managed",
    "lead_converted",
    "ai_failed",
    "digest",
    "weekly_report",
]


class NotificationPreferenceResponse(BaseModel):
    id: int
    customer_id: int
    user_id: Optional[int] = None
    email_enabled: bool
    email: Optional[str] = None
    email_new_lead: bool
    email_new_message: bool
    sms_enabled: bool
    sms_phone: Optional[str] = None
    sms_new_lead: bool
    sms_new_message: bool
    notify_lead_managed: bool
    notify_lead_converted: bool
    notify_ai_failed: bool
    cadence_mode: CadenceModeName
    cadence_interval_minutes: Optional[int] = None
    digest_time: time
    max_notifications_per_day: Optional[int] = None
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    timezone: str

    model_config = ConfigDict(from_attributes=True)


class NotificationPreferenceUpdate(BaseModel):
    user_id: Optional[int] = None
    email_enabled: Optional[bool] = None
    email: Optional[EmailStr] = None
    email_new_lead: Optional[bool] = None
    email_new_message: Optional[bool] = None
    sms_enabled: Optional[bool] = None
    sms_phone: Optional[str] = Field(default=None, max_length=32)
    sms_new_lead: Optional[bool] = None
    sms_new_message: Optional[bool] = None
    notify_lead_managed: Optional[bool] = None
    notify_lead_converted: Optional[bool] = None
    notify_ai_failed: Optional[bool] = None
    cadence_mode: Optional[CadenceModeName] = None
    cadence_interval_minutes: Optional[int] = Field(default=None, ge=1)
    digest_time: Optional[time] = None
    max_notifications_per_day: Optional[int] = Field(default=None, ge=0)
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    timezone: Optional[str] = None


class EventEmitRequest(BaseModel):
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class DispatchOutcomeResponse(BaseModel):
    outcome: str
    channel: Optional[str] = None
    user_id: Optional[int] = None
    error: Optional[str] = None
    delivery_id: Optional[int] = None
    bucket_id: Optional[int] = None


class EventEmitResponse(BaseModel):
    queued: bool = False
    job_id: Optional[int] = None
    outcomes: List[DispatchOutcomeResponse] = Field(default_factory=list)


class NotificationDeliveryResponse(BaseModel):
    id: int
    customer_id: int
    user_id: Optional[int] = None
    bucket_id: Optional[int] = None
    notification_type: str
    channel: Optional[str] = None
    recipient: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    provider_message_id: Optional[str] = None
    attempts: int
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PoolNumberCreate(BaseModel):
    phone_number: str = Field(min_length=8, max_length=32)
    notes: Optional[str] = None


class PoolNumberResponse(BaseModel):
    id: int
    phone_number: str
    provider: str
    status: str
    customer_id: Optional[int] = None
    notes: Optional[str] = None
    allocated_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PoolNumberListResponse(BaseModel):
    available: List[PoolNumberResponse]
    allocated: List[PoolNumberResponse]


class ProvisionNumberRequest(BaseModel):
    region: Optional[str] = Field(default=None, max_length=20)


class ProvisionNumberResponse(BaseModel):
    success: bool
    phone_number: Optional[str] = None
    sid: Optional[str] = None
    error: Optional[str] = None


class ReleaseNumberResponse(BaseModel):
    success: bool
    error: Optional[str] = None


class InboundSmsResponse(BaseModel):
    success: bool
    conversation_id: Optional[int] = None
    message_id: Optional[int] = None
    error: Optional[str] = None
