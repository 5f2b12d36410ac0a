from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class WebhookProvider(str, Enum):
    AUTENTIQUE = "autentique"
    VINDI = "vindi"


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class WebhookEvent(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "webhook_events"

    provider: WebhookProvider = Field(index=True)
    event_type: str = Field(index=True, max_length=64)
    external_id: str | None = Field(default=None, index=True, max_length=128)
    beneficiary_id: UUID | None = Field(default=None, foreign_key="beneficiaries.id", index=True)
    payload: dict | None = Field(default=None, sa_type=JSON)
    status: WebhookEventStatus = Field(default=WebhookEventStatus.RECEIVED, index=True)
    error: str | None = Field(default=None)
    attempts: int = Field(default=0)
    processed_at: datetime | None = Field(default=None)
