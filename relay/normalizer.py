"""
Maps resolved items onto the canonical record shape.
"""

from relay.errors import ParseError
from relay.identity import MessageItem, StatusItem
from relay.schemas import Direction, MessageRecord, MessageStatus, StatusPatch


def resolve_direction(sender: str, business_number: str) -> Direction:
    """Exact match against the business identity: equal means we sent it."""
    return Direction.OUTBOUND if sender == business_number else Direction.INBOUND


def normalize_message(item: MessageItem, business_number: str) -> MessageRecord:
    """
    Build the canonical record for a message item.

    The conversation is keyed by the counterparty: the sender of an inbound
    message, the recipient of an outbound one.

    An absent display name falls back to the conversation id rather than the
    sender id. For outbound records the sender is the business itself, and
    naming the conversation after it would label every chat with our own
    number.
    """
    direction = resolve_direction(item.sender, business_number)

    if direction is Direction.OUTBOUND:
        conversation_id = item.recipient or item.sender
        default_status = MessageStatus.SENT
    else:
        conversation_id = item.sender
        default_status = MessageStatus.RECEIVED

    return MessageRecord(
        primary_id=item.primary_id,
        correlation_id=item.correlation_id,
        conversation_id=conversation_id,
        counterparty_display_name=item.display_name or conversation_id,
        direction=direction,
        body=item.body or "",
        status=item.status or default_status,
        occurred_at=item.timestamp,
    )


def to_status_patch(item: StatusItem) -> StatusPatch:
    patch_id = item.primary_id or item.correlation_id
    if not patch_id:
        raise ParseError("status item carries no id")
    return StatusPatch(id=patch_id, status=item.status)
