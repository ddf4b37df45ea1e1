"""
Conversation View: per-conversation summaries derived from the record set.
"""

import logging

from relay.schemas import ConversationSummary, Direction, MessageStatus
from relay.storage import MessageStore

logger = logging.getLogger(__name__)


def list_conversations(store: MessageStore) -> list:
    """
    Summarize every conversation.

    The first record seen for a conversation while walking the records newest
    first (occurred_at, then created_at) supplies its display name, last
    message and timestamp. unread_count counts inbound records not yet read.

    Returns:
        ConversationSummary list, most recent conversation first
    """
    summaries = {}
    for record in store.list_latest_first():
        summary = summaries.get(record.conversation_id)
        if summary is None:
            summary = ConversationSummary(
                conversation_id=record.conversation_id,
                display_name=record.counterparty_display_name,
                last_message=record.body,
                last_occurred_at=record.occurred_at,
                unread_count=0,
            )
            summaries[record.conversation_id] = summary
        if record.direction is Direction.INBOUND and record.status is not MessageStatus.READ:
            summary.unread_count += 1

    result = sorted(summaries.values(), key=lambda s: s.last_occurred_at, reverse=True)
    logger.debug(f"Summarized {len(result)} conversations")
    return result
