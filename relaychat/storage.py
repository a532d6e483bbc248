import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import create_engine, text, func
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.exc import SQLAlchemyError

from relaychat.errors import StoreReadError, StoreWriteError

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class MessageStore:
    """
    Append-only, ordered message log backed by SQLite (or any SQLAlchemy URL).

    A single writer lock serializes appends so id assignment, commit order
    and the order handed to the broadcast hub are the same. Reads do not take
    the lock; each read runs in its own transaction and sees either the
    pre- or post-commit state.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url

        connect_args = {}
        if database_url.startswith("sqlite"):
            # Sessions are used from the event loop and worker threads
            connect_args["check_same_thread"] = False

        self.engine = create_engine(
            database_url,
            connect_args=connect_args,
            echo=False,
        )
        # Rows are handed to the hub and forwarder after the session closes
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        self._write_lock = threading.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init(self) -> None:
        """
        Create the messages table if it does not exist yet.
        An absent database file starts out empty.
        """
        logger.debug(f"Initializing message store with URL: {self.database_url}")
        try:
            # Import models to register them with Base.metadata
            from relaychat.models import Message  # noqa: F401

            Base.metadata.create_all(bind=self.engine)
            logger.info("Message store initialized", extra={"messages": self.count()})
        except (SQLAlchemyError, StoreReadError) as e:
            logger.error(f"Failed to initialize message store: {e}")
            raise

    def dispose(self) -> None:
        self.engine.dispose()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and the messages table exists.
        """
        logger.debug("Checking database health...")
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
                if self.engine.dialect.name == "sqlite":
                    result = db.execute(text(
                        "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages'"
                    )).scalar()
                    if result == 0:
                        logger.error("Database schema not applied: 'messages' table not found")
                        return False
            logger.debug("Database health check passed")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    # =========================================================================
    # Writes
    # =========================================================================

    def append(
        self,
        sender: str,
        body: str,
        origin: str,
        sent_at: Optional[str] = None,
    ):
        """
        Durably append one message and return the stored row.

        The commit completes before this returns. Identical payloads are
        stored as separate messages.

        Raises:
            StoreWriteError: the message was not saved
        """
        from relaychat.models import Message

        with self._write_lock:
            db = self.SessionLocal()
            try:
                message = Message(
                    sender=sender,
                    body=body,
                    created_at=utc_timestamp(),
                    origin=origin,
                    sent_at=sent_at,
                )
                db.add(message)
                db.commit()
                logger.debug(f"Message appended: id={message.id}, origin={origin}")
                return message
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to append message from {sender}: {e}")
                raise StoreWriteError("message was not saved") from e
            finally:
                db.close()

    # =========================================================================
    # Reads
    # =========================================================================

    def read_all(self) -> List:
        """Return every message in append order."""
        return self.read_from(0)

    def read_from(self, cursor: int) -> List:
        """
        Return messages at position `cursor` or later, in append order.

        Position 0 is the first message ever appended, so a cursor equal to
        the store length yields nothing.

        Raises:
            StoreReadError: storage is unreadable
        """
        from relaychat.models import Message

        try:
            with self.SessionLocal() as db:
                return (
                    db.query(Message)
                    .order_by(Message.id.asc())
                    .offset(max(cursor, 0))
                    .all()
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to read messages from cursor {cursor}: {e}")
            raise StoreReadError(str(e)) from e

    def count(self) -> int:
        """Number of stored messages (the cursor a new reader starts at)."""
        from relaychat.models import Message

        try:
            with self.SessionLocal() as db:
                return db.query(func.count(Message.id)).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to count messages: {e}")
            raise StoreReadError(str(e)) from e
