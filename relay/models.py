"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic record/request/response schemas, see schemas.py.

The message_changes table is the change log driving real-time events. It is
written only by the triggers below, inside the transaction of the mutation
that fired them, never by application code. Each row carries a JSON snapshot
of the message as it was right after that mutation.
"""

from sqlalchemy import DDL, Column, DateTime, ForeignKey, Integer, String, Text, event
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class Message(Base):
    """
    One row per message identity.

    Table: messages
    Unique: primary_id (ensures idempotency)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    primary_id = Column(String, nullable=False, unique=True, index=True)
    correlation_id = Column(String, nullable=True, index=True)
    conversation_id = Column(String, nullable=False, index=True)
    counterparty_display_name = Column(String, nullable=False)
    direction = Column(String, nullable=False)  # inbound | outbound
    body = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False)  # received | sent | delivered | read
    occurred_at = Column(DateTime, nullable=False, index=True)  # naive UTC
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class MessageChange(Base):
    """
    Ordered, durable log of mutations on messages.

    Table: message_changes
    id is the feed cursor; AUTOINCREMENT keeps it strictly increasing.
    Rows are never pruned here; retention is handled outside the relay.
    """
    __tablename__ = "message_changes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_pk = Column(Integer, ForeignKey("messages.id"), nullable=False)
    operation = Column(String, nullable=False)  # insert | update
    snapshot = Column(Text, nullable=False)  # JSON of the row right after the mutation
    changed_at = Column(DateTime, nullable=False)


SNAPSHOT_COLUMNS = (
    "primary_id",
    "correlation_id",
    "conversation_id",
    "counterparty_display_name",
    "direction",
    "body",
    "status",
    "occurred_at",
    "created_at",
    "updated_at",
)

_SNAPSHOT_SQL = "json_object(" + ", ".join(f"'{name}', NEW.{name}" for name in SNAPSHOT_COLUMNS) + ")"


def _change_trigger(name: str, timing: str, operation: str) -> DDL:
    return DDL(
        f"CREATE TRIGGER IF NOT EXISTS {name} {timing} ON messages "
        "BEGIN "
        "INSERT INTO message_changes (message_pk, operation, snapshot, changed_at) "
        f"VALUES (NEW.id, '{operation}', {_SNAPSHOT_SQL}, CURRENT_TIMESTAMP); "
        "END"
    )


_CHANGE_TRIGGERS = [
    _change_trigger("messages_after_insert", "AFTER INSERT", "insert"),
    _change_trigger("messages_after_update", "AFTER UPDATE", "update"),
]

# Registered on the metadata so both tables exist before the triggers are created
for _trigger in _CHANGE_TRIGGERS:
    event.listen(Base.metadata, "after_create", _trigger.execute_if(dialect="sqlite"))
