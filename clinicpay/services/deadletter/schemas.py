"""API schemas for the dead-letter review endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class DeadLetterSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    event_id: str
    correlation_id: str
    error_message: str
    failed_at: datetime | None
    reprocess_requested_at: datetime | None


class DeadLetterDetail(DeadLetterSummary):
    """Summary plus the decrypted raw body, exactly as the provider sent it."""

    payload: str


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterSummary]
