import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import create_engine, text, func
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from relaydesk.config import settings
from relaydesk.grouping import arrange
from relaydesk.schemas import (
    DeliveryError,
    ErrorKind,
    MessageCreate,
    MessageImport,
    MessageRecord,
    MessageStatus,
    MessageUpdate,
    VerificationStatus,
)
from relaydesk.utils import to_unix_timestamp

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)

# Records handed to the dispatcher outlive their session
SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from relaydesk.models import Message  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            result = db.execute(text(
                "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages'"
            )).scalar()
            if result == 0:
                logger.error("Database schema not applied: 'messages' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Store
# =============================================================================

class MessageNotFound(Exception):
    """No message with the given id."""


class MessageLocked(Exception):
    """The message has a delivery attempt in flight."""


class MessageAlreadySent(Exception):
    """The message reached the terminal sent state and cannot change."""


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _to_record(row) -> MessageRecord:
    last_error = None
    if row.error_kind:
        last_error = DeliveryError(kind=row.error_kind, detail=row.error_detail or "")
    return MessageRecord(
        id=row.id,
        sender=row.sender,
        receiver=row.receiver,
        scheduled_time=datetime.fromisoformat(row.scheduled_time),
        unix_timestamp=row.unix_timestamp,
        content=row.content,
        status=row.status,
        delivery_receipt_id=row.delivery_receipt_id,
        verification_status=row.verification_status,
        last_error=last_error,
    )


class MessageStore:
    """
    Ordered collection of messages backed by the messages table.

    Every mutation commits before returning, so a reader never sees a
    half-applied transition (e.g. sent without its receipt id). All
    methods are synchronous; on the event loop nothing interleaves with
    them.

    Two writers use the store: operator actions (add, update, delete,
    clear, replace_all) and the dispatcher (mark_* methods). Operator
    writes are refused for a message that is currently sending.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        default_timezone: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self._default_timezone = default_timezone or settings.DEFAULT_TIMEZONE

    def _unix(self, value: datetime) -> int:
        return to_unix_timestamp(value, self._default_timezone)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_messages(self, status: Optional[MessageStatus] = None) -> list[MessageRecord]:
        """All messages in list order, optionally filtered by status."""
        from relaydesk.models import Message

        with self._session_factory() as db:
            query = db.query(Message)
            if status is not None:
                query = query.filter(Message.status == status.value)
            rows = query.order_by(Message.position.asc()).all()
            return [_to_record(row) for row in rows]

    def get(self, message_id: str) -> Optional[MessageRecord]:
        from relaydesk.models import Message

        with self._session_factory() as db:
            row = db.get(Message, message_id)
            return _to_record(row) if row is not None else None

    def last_sent_timestamp(self, sender: str, receiver: str) -> Optional[int]:
        """Latest unix_timestamp already sent in this conversation, if any."""
        from relaydesk.models import Message

        with self._session_factory() as db:
            return db.query(func.max(Message.unix_timestamp)).filter(
                Message.sender == sender,
                Message.receiver == receiver,
                Message.status == MessageStatus.SENT.value,
            ).scalar()

    # -------------------------------------------------------------------------
    # Operator mutations
    # -------------------------------------------------------------------------

    def add(self, data: MessageCreate) -> MessageRecord:
        """
        Append a new pending message, then regroup the list so each
        conversation stays contiguous and in timestamp order.
        """
        from relaydesk.models import Message

        message_id = uuid.uuid4().hex
        logger.info(f"Adding message: id={message_id}, sender={data.sender}, receiver={data.receiver}")

        with self._session_factory() as db:
            last_position = db.query(func.max(Message.position)).scalar()
            row = Message(
                id=message_id,
                position=(last_position + 1) if last_position is not None else 0,
                sender=data.sender,
                receiver=data.receiver,
                scheduled_time=data.scheduled_time.isoformat(),
                unix_timestamp=self._unix(data.scheduled_time),
                content=data.content,
                status=MessageStatus.PENDING.value,
                created_at=_utc_now(),
            )
            db.add(row)
            db.flush()

            rows = db.query(Message).order_by(Message.position.asc()).all()
            for position, member in enumerate(arrange(rows)):
                member.position = position
            db.commit()
            return _to_record(row)

    def update(self, message_id: str, data: MessageUpdate) -> MessageRecord:
        """
        Replace a message's editable fields and make it pending again.

        Raises:
            MessageNotFound, MessageLocked (sending), MessageAlreadySent
        """
        with self._session_factory() as db:
            row = self._load(db, message_id)
            if row.status == MessageStatus.SENDING.value:
                raise MessageLocked(message_id)
            if row.status == MessageStatus.SENT.value:
                raise MessageAlreadySent(message_id)

            row.sender = data.sender
            row.receiver = data.receiver
            row.scheduled_time = data.scheduled_time.isoformat()
            row.unix_timestamp = self._unix(data.scheduled_time)
            row.content = data.content
            row.status = MessageStatus.PENDING.value
            row.delivery_receipt_id = None
            row.verification_status = None
            row.error_kind = None
            row.error_detail = None
            db.commit()
            logger.info(f"Message updated: {message_id}")
            return _to_record(row)

    def delete(self, message_id: str) -> None:
        """
        Raises:
            MessageNotFound, MessageLocked (sending)
        """
        with self._session_factory() as db:
            row = self._load(db, message_id)
            if row.status == MessageStatus.SENDING.value:
                raise MessageLocked(message_id)
            db.delete(row)
            db.commit()
            logger.info(f"Message deleted: {message_id}")

    def clear(self) -> int:
        """Remove every message. Refused while any message is sending."""
        from relaydesk.models import Message

        with self._session_factory() as db:
            self._ensure_none_sending(db)
            removed = db.query(Message).delete()
            db.commit()
            logger.info(f"Message store cleared: {removed} removed")
            return removed

    def replace_all(self, records: list[MessageImport]) -> int:
        """
        Replace the whole store with imported records, keeping their order.

        Raises:
            MessageLocked: a message is currently sending
            ValueError: duplicate ids in the import
        """
        from relaydesk.models import Message

        ids = [record.id for record in records if record.id]
        if len(ids) != len(set(ids)):
            raise ValueError("import contains duplicate message ids")

        with self._session_factory() as db:
            self._ensure_none_sending(db)
            db.query(Message).delete()
            created_at = _utc_now()
            for position, record in enumerate(records):
                db.add(Message(
                    id=record.id or uuid.uuid4().hex,
                    position=position,
                    sender=record.sender,
                    receiver=record.receiver,
                    scheduled_time=record.scheduled_time.isoformat(),
                    unix_timestamp=self._unix(record.scheduled_time),
                    content=record.content,
                    status=record.status.value,
                    delivery_receipt_id=record.delivery_receipt_id,
                    verification_status=(
                        record.verification_status.value if record.verification_status else None
                    ),
                    error_kind=record.last_error.kind.value if record.last_error else None,
                    error_detail=record.last_error.detail if record.last_error else None,
                    created_at=created_at,
                ))
            db.commit()
        logger.info(f"Message store replaced by import: {len(records)} records")
        return len(records)

    # -------------------------------------------------------------------------
    # Dispatcher transitions
    # -------------------------------------------------------------------------

    def mark_sending(self, message_id: str) -> MessageRecord:
        with self._session_factory() as db:
            row = self._load(db, message_id)
            if row.status == MessageStatus.SENT.value:
                raise MessageAlreadySent(message_id)
            row.status = MessageStatus.SENDING.value
            row.error_kind = None
            row.error_detail = None
            db.commit()
            return _to_record(row)

    def mark_pending(self, message_id: str) -> MessageRecord:
        """Release a message claimed for sending without attempting it."""
        with self._session_factory() as db:
            row = self._load(db, message_id)
            if row.status == MessageStatus.SENT.value:
                raise MessageAlreadySent(message_id)
            row.status = MessageStatus.PENDING.value
            db.commit()
            return _to_record(row)

    def mark_sent(
        self,
        message_id: str,
        receipt_id: Optional[int],
        verification_status: Optional[VerificationStatus] = None,
    ) -> MessageRecord:
        with self._session_factory() as db:
            row = self._load(db, message_id)
            row.status = MessageStatus.SENT.value
            row.delivery_receipt_id = receipt_id
            row.verification_status = verification_status.value if verification_status else None
            row.error_kind = None
            row.error_detail = None
            db.commit()
            return _to_record(row)

    def mark_failed(self, message_id: str, kind: ErrorKind, detail: str) -> MessageRecord:
        with self._session_factory() as db:
            row = self._load(db, message_id)
            if row.status == MessageStatus.SENT.value:
                raise MessageAlreadySent(message_id)
            row.status = MessageStatus.FAILED.value
            row.error_kind = kind.value
            row.error_detail = detail
            db.commit()
            return _to_record(row)

    def set_verification(self, message_id: str, status: VerificationStatus) -> MessageRecord:
        with self._session_factory() as db:
            row = self._load(db, message_id)
            row.verification_status = status.value
            db.commit()
            return _to_record(row)

    def recover_interrupted(self) -> int:
        """
        Fail messages left sending by a previous process.

        They are not put back to pending: the relay may already hold them.
        """
        from relaydesk.models import Message

        with self._session_factory() as db:
            rows = db.query(Message).filter(Message.status == MessageStatus.SENDING.value).all()
            for row in rows:
                row.status = MessageStatus.FAILED.value
                row.error_kind = ErrorKind.EXCEPTION.value
                row.error_detail = "delivery interrupted; check the relay before resending"
            db.commit()
        if rows:
            logger.warning(f"Recovered {len(rows)} interrupted message(s) as failed")
        return len(rows)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _load(db: Session, message_id: str):
        from relaydesk.models import Message

        row = db.get(Message, message_id)
        if row is None:
            raise MessageNotFound(message_id)
        return row

    @staticmethod
    def _ensure_none_sending(db: Session) -> None:
        from relaydesk.models import Message

        in_flight = db.query(Message.id).filter(
            Message.status == MessageStatus.SENDING.value
        ).first()
        if in_flight is not None:
            raise MessageLocked(in_flight[0])
