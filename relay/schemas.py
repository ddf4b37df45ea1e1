"""
Pydantic schemas for the relay.

This module contains:
- The canonical message record and its enums
- Request models for the HTTP API
- Response models for API responses
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_serializer

from relay.utils import to_iso8601


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    RECEIVED = "received"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class PatchOutcome(str, Enum):
    """Result of applying a status patch."""
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"


# =============================================================================
# Canonical Record
# =============================================================================

class MessageRecord(BaseModel):
    """
    Canonical message record, one per primary_id.

    created_at/updated_at are None until the store has persisted the record.
    """
    primary_id: str = Field(..., min_length=1, description="Idempotency key assigned by the origin")
    correlation_id: Optional[str] = Field(None, description="Context reference used to match status events")
    conversation_id: str = Field(..., min_length=1, description="Counterparty identifier")
    counterparty_display_name: str = Field(..., description="Display name of the counterparty")
    direction: Direction
    body: str = Field(default="", description="Message text, possibly empty")
    status: MessageStatus
    occurred_at: datetime = Field(..., description="Event time from the payload")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_serializer("occurred_at", "created_at", "updated_at")
    def serialize_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        return to_iso8601(value)


class StatusPatch(BaseModel):
    """Partial update derived from a status item. id is a primary or correlation id."""
    id: str = Field(..., min_length=1)
    status: MessageStatus


class ConversationSummary(BaseModel):
    """One row of the conversation list."""
    conversation_id: str
    display_name: str
    last_message: str
    last_occurred_at: datetime
    unread_count: int = Field(..., ge=0)

    @field_serializer("last_occurred_at")
    def serialize_timestamp(self, value: datetime) -> Optional[str]:
        return to_iso8601(value)


class IngestReport(BaseModel):
    """Counters produced by one ingest_batch run."""
    messages_upserted: int = 0
    messages_duplicate: int = 0
    statuses_patched: int = 0
    statuses_unmatched: int = 0
    errors_skipped: int = 0


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendRequest(BaseModel):
    """
    Request body for POST /api/send.

    Fields are optional here so that missing values reach the service and are
    rejected there with a ValidationError (HTTP 400).
    Accepts the legacy names wa_id/text as aliases.
    """
    conversation_id: Optional[str] = Field(None, alias="wa_id")
    body: Optional[str] = Field(None, alias="text")

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [{"conversation_id": "919937320320", "body": "Hello"}]
        },
    }


class StatusRequest(BaseModel):
    """Request body for POST /api/status. id may be a primary or correlation id."""
    id: Optional[str] = None
    status: Optional[str] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class StatusUpdateResponse(BaseModel):
    success: bool
    outcome: PatchOutcome


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    feed: Optional[str] = Field(None, description="Change feed state")
