import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, inspect, or_, text, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from relay.errors import StorageError
from relay.models import Base, Message, MessageChange
from relay.schemas import Direction, MessageRecord, MessageStatus, PatchOutcome
from relay.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ChangeEntry:
    """One change-log row with the record snapshot it carries."""
    change_id: int
    operation: str
    record: MessageRecord


def create_store(database_url: str, clock: Optional[Callable[[], datetime]] = None) -> "MessageStore":
    """
    Build the store handle used by every component.

    Called once at startup; the handle is then passed explicitly.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        # check_same_thread=False is required for SQLite to work with FastAPI's async
        # and with the change feed's worker thread
        connect_args["check_same_thread"] = False

    engine = create_engine(database_url, connect_args=connect_args, echo=False)
    return MessageStore(engine, clock=clock)


class MessageStore:
    """
    Idempotent message persistence over SQLAlchemy.

    Every SQLAlchemy failure other than the duplicate-key case of upsert is
    raised as StorageError.
    """

    def __init__(self, engine: Engine, clock: Optional[Callable[[], datetime]] = None):
        self.engine = engine
        self._clock = clock or utcnow
        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
        )

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Storage operation failed: {e}")
            raise StorageError(str(e)) from e
        finally:
            db.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init_schema(self) -> None:
        """
        Create tables and change-log triggers.
        Called during application startup.
        """
        logger.debug(f"Initializing database with URL: {self.engine.url!r}")
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StorageError(str(e)) from e

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and both tables exist, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self._session_factory() as db:
                db.execute(text("SELECT 1"))
            tables = set(inspect(self.engine).get_table_names())
            missing = {"messages", "message_changes"} - tables
            if missing:
                logger.error(f"Database schema not applied: missing {sorted(missing)}")
                return False
            logger.debug("Database health check passed")
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()

    # =========================================================================
    # Write Path
    # =========================================================================

    def _to_row(self, record: MessageRecord, now: datetime) -> Message:
        return Message(
            primary_id=record.primary_id,
            correlation_id=record.correlation_id,
            conversation_id=record.conversation_id,
            counterparty_display_name=record.counterparty_display_name,
            direction=record.direction.value,
            body=record.body,
            status=record.status.value,
            occurred_at=record.occurred_at,
            created_at=now,
            updated_at=now,
        )

    def upsert(self, record: MessageRecord) -> bool:
        """
        Insert the record unless its primary_id already exists.

        An existing row only gets its updated_at refreshed; content is
        first-writer-wins.

        Returns:
            True if a row was inserted, False for a duplicate
        """
        now = self._clock()
        with self._session() as db:
            existing = db.query(Message).filter(Message.primary_id == record.primary_id).first()
            if existing is not None:
                existing.updated_at = now
                db.commit()
                logger.info(f"Duplicate message detected: {record.primary_id}")
                return False

            db.add(self._to_row(record, now))
            try:
                db.commit()
                logger.info(f"Message created: {record.primary_id}")
                return True
            except IntegrityError:
                # Lost a race against a concurrent insert of the same primary_id
                db.rollback()
                logger.info(f"Duplicate message detected on insert: {record.primary_id}")

            db.query(Message).filter(Message.primary_id == record.primary_id).update(
                {Message.updated_at: now}, synchronize_session=False
            )
            db.commit()
            return False

    def insert(self, record: MessageRecord) -> MessageRecord:
        """Insert a record that must not exist yet and return the stored version."""
        now = self._clock()
        with self._session() as db:
            row = self._to_row(record, now)
            db.add(row)
            db.commit()
            logger.info(f"Message inserted: {record.primary_id}")
            return MessageRecord.model_validate(row)

    def apply_status_patch(self, message_id: str, status: MessageStatus) -> PatchOutcome:
        """
        Set status on the first record whose primary_id or correlation_id matches.

        Returns:
            UPDATED, UNCHANGED when the record already has that status,
            NOT_FOUND when nothing matches (not an error)
        """
        with self._session() as db:
            row = (
                db.query(Message)
                .filter(or_(Message.primary_id == message_id, Message.correlation_id == message_id))
                .order_by(Message.id.asc())
                .first()
            )
            if row is None:
                logger.info(f"Status patch matched no message: {message_id} -> {status.value}")
                return PatchOutcome.NOT_FOUND
            if row.status == status.value:
                logger.debug(f"Status patch is a no-op: {message_id} already {status.value}")
                return PatchOutcome.UNCHANGED

            row.status = status.value
            row.updated_at = self._clock()
            db.commit()
            logger.info(f"Status update: {message_id} -> {status.value}")
            return PatchOutcome.UPDATED

    def mark_conversation_read(self, conversation_id: str) -> int:
        """
        Mark every unread inbound message of a conversation as read.

        Returns:
            Number of records changed
        """
        with self._session() as db:
            count = (
                db.query(Message)
                .filter(
                    Message.conversation_id == conversation_id,
                    Message.direction == Direction.INBOUND.value,
                    Message.status != MessageStatus.READ.value,
                )
                .update(
                    {Message.status: MessageStatus.READ.value, Message.updated_at: self._clock()},
                    synchronize_session=False,
                )
            )
            db.commit()
            logger.info(f"Marked {count} messages read in conversation {conversation_id}")
            return count

    # =========================================================================
    # Read Path
    # =========================================================================

    def get_by_primary_id(self, primary_id: str) -> Optional[MessageRecord]:
        with self._session() as db:
            row = db.query(Message).filter(Message.primary_id == primary_id).first()
            return MessageRecord.model_validate(row) if row else None

    def count(self) -> int:
        with self._session() as db:
            return db.query(func.count(Message.id)).scalar() or 0

    def list_by_conversation(self, conversation_id: str) -> list:
        """Records of a conversation, oldest first (occurred_at, then created_at)."""
        with self._session() as db:
            rows = (
                db.query(Message)
                .filter(Message.conversation_id == conversation_id)
                .order_by(Message.occurred_at.asc(), Message.created_at.asc(), Message.id.asc())
                .all()
            )
            logger.debug(f"Retrieved {len(rows)} messages for conversation {conversation_id}")
            return [MessageRecord.model_validate(row) for row in rows]

    def list_latest_first(self) -> list:
        """All records, most recent first (occurred_at, then created_at)."""
        with self._session() as db:
            rows = (
                db.query(Message)
                .order_by(Message.occurred_at.desc(), Message.created_at.desc(), Message.id.desc())
                .all()
            )
            return [MessageRecord.model_validate(row) for row in rows]

    # =========================================================================
    # Change Log
    # =========================================================================

    def latest_change_id(self) -> int:
        with self._session() as db:
            return db.query(func.max(MessageChange.id)).scalar() or 0

    def read_changes(self, after_id: int, limit: int = 100) -> list:
        """
        Change-log entries after a cursor, in log order.

        Each entry carries the full record as it was right after its mutation.
        """
        with self._session() as db:
            rows = (
                db.query(MessageChange)
                .filter(MessageChange.id > after_id)
                .order_by(MessageChange.id.asc())
                .limit(limit)
                .all()
            )
            return [
                ChangeEntry(
                    change_id=change.id,
                    operation=change.operation,
                    record=record_from_snapshot(change.snapshot),
                )
                for change in rows
            ]


def record_from_snapshot(snapshot: str) -> MessageRecord:
    """Rebuild a record from the JSON written by the change-log triggers."""
    data = json.loads(snapshot)
    for key in ("occurred_at", "created_at", "updated_at"):
        if data.get(key):
            # SQLite stores DateTime as 'YYYY-MM-DD HH:MM:SS.ffffff'
            data[key] = datetime.fromisoformat(data[key])
    return MessageRecord.model_validate(data)
