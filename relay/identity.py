"""
Identity resolution for inbound provider payloads.

A payload blob is a JSON array of payload objects. Each payload object comes
in one of two shapes:

- envelope: {"entry": [{"changes": [{"value": {...}}]}]}, optionally wrapped
  in {"metaData": {...}}
- flat: {"messages": [...], "statuses": [...]}

Both are converted once, at the entry point, into ValueBlock instances.
Everything after that point reads ValueBlocks only.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ValidationError as ItemValidationError

from relay.errors import ParseError
from relay.schemas import MessageStatus
from relay.utils import from_epoch_seconds, utcnow

logger = logging.getLogger(__name__)

PayloadBlob = Union[bytes, str, list]


class MessageItem(BaseModel):
    kind: Literal["message"] = "message"
    primary_id: str
    correlation_id: Optional[str] = None
    sender: str
    recipient: str = ""
    display_name: Optional[str] = None
    body: str = ""
    timestamp: datetime
    status: Optional[MessageStatus] = None


class StatusItem(BaseModel):
    kind: Literal["status"] = "status"
    primary_id: Optional[str] = None
    correlation_id: Optional[str] = None
    status: MessageStatus
    recipient: Optional[str] = None
    timestamp: Optional[datetime] = None


ResolvedItem = Union[MessageItem, StatusItem]


@dataclass
class ValueBlock:
    """Canonical intermediate shape shared by both payload formats."""
    messages: list
    statuses: list
    display_names: dict = field(default_factory=dict)
    business_phone_id: str = ""


@dataclass
class Resolution:
    items: list = field(default_factory=list)
    errors: list = field(default_factory=list)


# =============================================================================
# Blob / payload classification
# =============================================================================

def decode_blob(blob: PayloadBlob, source: Optional[str] = None) -> list:
    """
    Decode a payload blob into its list of payload objects.

    Raises:
        ParseError: if the blob is not valid JSON or its top level is not an array
    """
    if isinstance(blob, (bytes, bytearray)):
        try:
            blob = blob.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"payload is not UTF-8: {e}", source)

    if isinstance(blob, str):
        try:
            blob = json.loads(blob.strip())
        except json.JSONDecodeError as e:
            raise ParseError(f"failed to parse JSON: {e}", source)

    if not isinstance(blob, list):
        raise ParseError("expected a JSON array of payloads", source)
    return blob


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _display_names(contacts: Any) -> dict:
    names = {}
    for contact in _as_list(contacts):
        if not isinstance(contact, dict):
            continue
        profile = contact.get("profile")
        name = profile.get("name") if isinstance(profile, dict) else None
        if isinstance(name, str) and name:
            names[str(contact.get("wa_id", ""))] = name
            # the first named contact doubles as a fallback for the whole block
            names.setdefault("", name)
    return names


def to_value_blocks(payload: Any, source: Optional[str] = None) -> list:
    """
    Classify a payload object and flatten it into ValueBlocks.

    Raises:
        ParseError: if the payload is not an object or its entry list is malformed
    """
    if not isinstance(payload, dict):
        raise ParseError("payload is not a JSON object", source)

    envelope = payload.get("metaData") if isinstance(payload.get("metaData"), dict) else payload
    entries = envelope.get("entry")

    if entries is None:
        return [ValueBlock(
            messages=_as_list(payload.get("messages")),
            statuses=_as_list(payload.get("statuses")),
            display_names=_display_names(payload.get("contacts")),
        )]

    if not isinstance(entries, list):
        raise ParseError("'entry' is not an array", source)

    blocks = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        for change in _as_list(entry.get("changes")):
            value = (change or {}).get("value") if isinstance(change, dict) else None
            if not isinstance(value, dict):
                continue
            metadata = value.get("metadata")
            if not isinstance(metadata, dict):
                metadata = {}
            blocks.append(ValueBlock(
                messages=_as_list(value.get("messages")),
                statuses=_as_list(value.get("statuses")),
                display_names=_display_names(value.get("contacts")),
                business_phone_id=str(metadata.get("phone_number_id") or ""),
            ))
    return blocks


# =============================================================================
# Item extraction
# =============================================================================

def _parse_status(value: Any, source: Optional[str]) -> MessageStatus:
    try:
        return MessageStatus(value)
    except ValueError:
        raise ParseError(f"unknown status {value!r}", source)


def _parse_timestamp(value: Any, source: Optional[str]):
    if value in (None, ""):
        return utcnow()
    try:
        return from_epoch_seconds(value)
    except (ValueError, OverflowError, OSError):
        raise ParseError(f"invalid timestamp {value!r}", source)


def _context_id(context: Any) -> Optional[str]:
    if isinstance(context, dict) and context.get("id"):
        return str(context["id"])
    return None


def extract_message(raw: Any, block: ValueBlock, source: Optional[str] = None) -> MessageItem:
    if not isinstance(raw, dict):
        raise ParseError("message is not a JSON object", source)
    primary_id = raw.get("id")
    if not primary_id:
        raise ParseError("message has no id", source)
    sender = raw.get("from")
    if not sender:
        raise ParseError(f"message {primary_id} has no sender", source)

    sender = str(sender)
    text = raw.get("text")
    body = text.get("body") if isinstance(text, dict) else None
    status = raw.get("status")

    try:
        return MessageItem(
            primary_id=str(primary_id),
            correlation_id=_context_id(raw.get("context")),
            sender=sender,
            recipient=str(raw.get("to") or block.business_phone_id or ""),
            display_name=block.display_names.get(sender) or block.display_names.get(""),
            body=body or raw.get("body") or "",
            timestamp=_parse_timestamp(raw.get("timestamp"), source),
            status=_parse_status(status, source) if status else None,
        )
    except ItemValidationError as e:
        raise ParseError(f"message {primary_id} is malformed: {e}", source) from e


def extract_status(raw: Any, source: Optional[str] = None) -> StatusItem:
    if not isinstance(raw, dict):
        raise ParseError("status is not a JSON object", source)
    if not raw.get("id") and not raw.get("meta_msg_id"):
        raise ParseError("status has neither id nor meta_msg_id", source)

    timestamp = raw.get("timestamp")
    try:
        return StatusItem(
            primary_id=str(raw["id"]) if raw.get("id") else None,
            correlation_id=str(raw["meta_msg_id"]) if raw.get("meta_msg_id") else None,
            status=_parse_status(raw.get("status"), source),
            recipient=raw.get("recipient_id"),
            timestamp=_parse_timestamp(timestamp, source) if timestamp else None,
        )
    except ItemValidationError as e:
        raise ParseError(f"status for {raw.get('id') or raw.get('meta_msg_id')} is malformed: {e}", source) from e


def iter_block_items(block: ValueBlock, source: Optional[str] = None) -> Iterator[Union[ResolvedItem, ParseError]]:
    """Yield messages then statuses; malformed items are yielded as ParseError."""
    for raw in block.messages:
        try:
            yield extract_message(raw, block, source)
        except ParseError as e:
            yield e
    for raw in block.statuses:
        try:
            yield extract_status(raw, source)
        except ParseError as e:
            yield e


def resolve_payload(payload: Any, source: Optional[str] = None) -> Resolution:
    """Resolve one payload object. Never raises for malformed content."""
    resolution = Resolution()
    try:
        blocks = to_value_blocks(payload, source)
    except ParseError as e:
        logger.warning(f"Skipping payload: {e}")
        resolution.errors.append(e)
        return resolution

    for block in blocks:
        for item in iter_block_items(block, source):
            if isinstance(item, ParseError):
                logger.warning(f"Skipping item: {item}")
                resolution.errors.append(item)
            else:
                resolution.items.append(item)
    return resolution


def resolve_blob(blob: PayloadBlob, source: Optional[str] = None) -> Resolution:
    """
    Resolve a whole payload blob (one batch file or one API call).

    A blob that does not decode to an array yields a single error and no items.
    """
    try:
        payloads = decode_blob(blob, source)
    except ParseError as e:
        logger.error(f"Skipping blob: {e}")
        return Resolution(errors=[e])

    resolution = Resolution()
    for index, payload in enumerate(payloads):
        label = f"{source}[{index}]" if source else f"[{index}]"
        part = resolve_payload(payload, label)
        resolution.items.extend(part.items)
        resolution.errors.extend(part.errors)
    logger.debug(f"Resolved {len(resolution.items)} items, {len(resolution.errors)} errors from {source or 'blob'}")
    return resolution
