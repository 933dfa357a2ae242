"""API request/response schemas for appointment endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class AppointmentCreateRequest(BaseModel):
    """Booking payload. `doctor_id` defaults to the calling doctor."""

    doctor_id: str | None = Field(default=None, min_length=1)
    patient_name: str = Field(min_length=1, max_length=200)
    patient_phone: str = Field(min_length=5, max_length=32)
    starts_at: datetime
    notes: str | None = Field(default=None, max_length=2000)
    patient_id: str | None = None


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    doctor_id: str
    patient_id: str | None
    patient_name: str
    patient_phone: str
    starts_at: datetime
    ends_at: datetime
    status: str
    notes: str | None


class AppointmentListResponse(BaseModel):
    items: list[AppointmentResponse]
