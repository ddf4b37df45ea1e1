"""
Utility functions for the relay.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch_seconds(value: Union[str, int, float]) -> datetime:
    """
    Convert a provider epoch timestamp (seconds, usually a string) to naive UTC.

    Raises:
        ValueError: if the value is not numeric
    """
    seconds = int(str(value).strip())
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def to_iso8601(value: Optional[datetime]) -> Optional[str]:
    """Render a stored timestamp as ISO-8601 UTC with a Z suffix."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def generate_local_message_id() -> str:
    """
    Build an id for a message created locally rather than by the provider.

    Format: local-<epoch ms>-<8 hex chars>
    """
    message_id = f"local-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
    logger.debug(f"Generated local message id: {message_id}")
    return message_id
