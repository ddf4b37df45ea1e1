"""
Core operations of the relay.

RelayService ties the pipeline together:

    payload blob -> identity resolution -> normalization -> MessageStore

It never emits real-time events itself; those are derived from the store's
change log by the ChangeFeedTranslator.
"""

import logging
from typing import Optional, Sequence

from relay import conversations
from relay.errors import ParseError, StorageError, ValidationError
from relay.identity import MessageItem, PayloadBlob, StatusItem, resolve_blob
from relay.metrics import record_ingest_item
from relay.normalizer import normalize_message, to_status_patch
from relay.schemas import (
    Direction,
    IngestReport,
    MessageRecord,
    MessageStatus,
    PatchOutcome,
)
from relay.storage import MessageStore
from relay.utils import generate_local_message_id, utcnow

logger = logging.getLogger(__name__)


class RelayService:
    def __init__(self, store: MessageStore, business_number: str):
        self.store = store
        self.business_number = business_number

    # =========================================================================
    # Ingest
    # =========================================================================

    def ingest_batch(
        self,
        blobs: Sequence[PayloadBlob],
        source_names: Optional[Sequence[str]] = None,
    ) -> IngestReport:
        """
        Ingest payload blobs one after another.

        Malformed blobs, payloads and items are skipped and counted in
        errors_skipped, as are items whose write fails with StorageError.
        A status patch that matches no message counts as statuses_unmatched.

        Args:
            blobs: raw payload blobs, each a JSON array of payload objects
            source_names: optional label per blob used in diagnostics
        """
        report = IngestReport()
        for index, blob in enumerate(blobs):
            source = source_names[index] if source_names else None
            logger.info(f"Processing payload blob: {source or index}")
            resolution = resolve_blob(blob, source)

            if resolution.errors:
                report.errors_skipped += len(resolution.errors)
                record_ingest_item("payload", "error", len(resolution.errors))

            for item in resolution.items:
                try:
                    if isinstance(item, MessageItem):
                        self._ingest_message(item, report)
                    elif isinstance(item, StatusItem):
                        self._ingest_status(item, report)
                except (ParseError, StorageError) as e:
                    report.errors_skipped += 1
                    record_ingest_item(item.kind, "error")
                    logger.error(f"Failed to ingest {item.kind} {item.primary_id}: {e}")

        logger.info(
            f"Ingest done: {report.messages_upserted} upserted, "
            f"{report.messages_duplicate} duplicates, {report.statuses_patched} patched, "
            f"{report.statuses_unmatched} unmatched, {report.errors_skipped} skipped"
        )
        return report

    def _ingest_message(self, item: MessageItem, report: IngestReport) -> None:
        record = normalize_message(item, self.business_number)
        if self.store.upsert(record):
            report.messages_upserted += 1
            record_ingest_item("message", "created")
        else:
            report.messages_duplicate += 1
            record_ingest_item("message", "duplicate")

    def _ingest_status(self, item: StatusItem, report: IngestReport) -> None:
        patch = to_status_patch(item)
        outcome = self.store.apply_status_patch(patch.id, patch.status)
        if outcome is PatchOutcome.NOT_FOUND:
            report.statuses_unmatched += 1
        else:
            report.statuses_patched += 1
        record_ingest_item("status", outcome.value)

    # =========================================================================
    # API Operations
    # =========================================================================

    def send_outbound(self, conversation_id: Optional[str], body: Optional[str]) -> MessageRecord:
        """
        Store a message sent by the business. Nothing is delivered externally.

        Raises:
            ValidationError: if conversation_id or body is missing
        """
        if not conversation_id or not body:
            raise ValidationError("conversation_id and body required")

        now = utcnow()
        record = MessageRecord(
            primary_id=generate_local_message_id(),
            conversation_id=conversation_id,
            counterparty_display_name=conversation_id,
            direction=Direction.OUTBOUND,
            body=body,
            status=MessageStatus.SENT,
            occurred_at=now,
        )
        return self.store.insert(record)

    def simulate_inbound(self, conversation_id: str, body: str) -> MessageRecord:
        """Store a fake inbound message, for manual testing of the real-time path."""
        if not conversation_id or not body:
            raise ValidationError("conversation_id and body required")

        record = MessageRecord(
            primary_id=generate_local_message_id(),
            conversation_id=conversation_id,
            counterparty_display_name=conversation_id,
            direction=Direction.INBOUND,
            body=body,
            status=MessageStatus.RECEIVED,
            occurred_at=utcnow(),
        )
        return self.store.insert(record)

    def update_status(self, message_id: Optional[str], status: Optional[str]) -> PatchOutcome:
        """
        Apply a status to the message matching message_id (primary or correlation id).

        Raises:
            ValidationError: if an argument is missing or the status is unknown
        """
        if not message_id or not status:
            raise ValidationError("id and status required")
        try:
            new_status = MessageStatus(status)
        except ValueError:
            raise ValidationError(f"unknown status {status!r}")
        return self.store.apply_status_patch(message_id, new_status)

    def get_conversation_messages(self, conversation_id: str) -> list:
        """
        Records of a conversation, oldest first.

        The records are returned as read before marking: inbound messages
        are marked read afterwards and the resulting updates flow through
        the change feed.
        """
        records = self.store.list_by_conversation(conversation_id)
        self.store.mark_conversation_read(conversation_id)
        return records

    def list_conversations(self) -> list:
        return conversations.list_conversations(self.store)
