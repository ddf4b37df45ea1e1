"""
Real-time events derived from change-log entries.
"""

from typing import Literal, Optional, Union

from pydantic import BaseModel

from relay.schemas import MessageRecord, MessageStatus
from relay.storage import ChangeEntry


class NewMessage(BaseModel):
    event: Literal["new_message"] = "new_message"
    conversation_id: str
    record: MessageRecord


class StatusChanged(BaseModel):
    event: Literal["message_status"] = "message_status"
    conversation_id: str
    message_id: Optional[str]
    status: MessageStatus
    record: MessageRecord


FeedEvent = Union[NewMessage, StatusChanged]

INSERT_OPERATIONS = {"insert"}
UPDATE_OPERATIONS = {"update", "replace"}


def translate_change(change: ChangeEntry) -> Optional[FeedEvent]:
    """
    Map a change-log entry to its event.

    Returns None for operations that produce no event.
    """
    record = change.record
    if change.operation in INSERT_OPERATIONS:
        return NewMessage(conversation_id=record.conversation_id, record=record)
    if change.operation in UPDATE_OPERATIONS:
        return StatusChanged(
            conversation_id=record.conversation_id,
            message_id=record.primary_id or record.correlation_id,
            status=record.status,
            record=record,
        )
    return None


def to_wire(event: FeedEvent) -> dict:
    """JSON-ready dict sent to real-time subscribers."""
    return event.model_dump(mode="json")
