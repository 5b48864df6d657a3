import logging
from typing import Generator, List, Optional

from sqlalchemy import create_engine, event, func, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from stampbot.config import settings
from stampbot.utils import now_ms

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)


@event.listens_for(engine, "connect")
def _enable_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores FOREIGN KEY constraints unless asked per connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("subscribers", "messages")


class SubscriberNotFoundError(LookupError):
    """Raised when a write references an identity with no subscriber row."""

    def __init__(self, identity: str):
        super().__init__(f"No subscriber with identity {identity!r}")
        self.identity = identity


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from stampbot import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            for table in REQUIRED_TABLES:
                result = db.execute(
                    text("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=:name"),
                    {"name": table},
                ).scalar()
                if result == 0:
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Subscriber Repository Functions
# =============================================================================

def subscribe(
    db: Session,
    identity: str,
    display_name: Optional[str],
    token: str,
    proof: str,
):
    """
    Create or reactivate a subscriber with fresh consent (upsert).

    A single INSERT ... ON CONFLICT statement, so concurrent subscribe and
    unsubscribe calls for the same identity cannot interleave. created_at is
    kept on re-subscribe; a missing display name keeps the stored one.

    Args:
        db: Database session
        identity: Subscriber identity
        display_name: Optional display name
        token: Consent token issued at subscribe time
        proof: Formatted consent proof

    Returns:
        The subscriber row after the upsert
    """
    from stampbot.models import Subscriber

    now = now_ms()
    logger.info(f"Subscribing: identity={identity}")

    stmt = sqlite_insert(Subscriber).values(
        identity=identity,
        display_name=display_name,
        subscribed=True,
        consent_timestamp=now,
        consent_token=token,
        consent_proof=proof,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["identity"],
        set_={
            "subscribed": True,
            "display_name": func.coalesce(stmt.excluded.display_name, Subscriber.display_name),
            "consent_timestamp": stmt.excluded.consent_timestamp,
            "consent_token": stmt.excluded.consent_token,
            "consent_proof": stmt.excluded.consent_proof,
            "updated_at": stmt.excluded.updated_at,
        },
    )

    try:
        db.execute(stmt)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to subscribe {identity}: {e}")
        raise

    return db.get(Subscriber, identity, populate_existing=True)


def unsubscribe(db: Session, identity: str) -> bool:
    """
    Mark a subscriber as unsubscribed.

    The flag is cleared by one conditional UPDATE guarded on the current flag,
    which is the only protection against double-unsubscribe side effects.

    Returns:
        True if a subscribed row was changed, False if the identity is
        unknown or already unsubscribed
    """
    from stampbot.models import Subscriber

    logger.info(f"Unsubscribing: identity={identity}")

    try:
        result = db.execute(
            update(Subscriber)
            .where(Subscriber.identity == identity, Subscriber.subscribed.is_(True))
            .values(subscribed=False, updated_at=now_ms())
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to unsubscribe {identity}: {e}")
        raise

    changed = result.rowcount > 0
    logger.info(f"Unsubscribe result for {identity}: {'changed' if changed else 'no-op'}")
    return changed


def get_subscriber(db: Session, identity: str):
    """
    Retrieve a subscriber by identity.

    Returns:
        Subscriber object if found, None otherwise
    """
    from stampbot.models import Subscriber

    return db.get(Subscriber, identity, populate_existing=True)


def is_subscribed(db: Session, identity: str) -> bool:
    """Unknown identities count as not subscribed."""
    subscriber = get_subscriber(db, identity)
    return subscriber is not None and bool(subscriber.subscribed)


def list_subscribed(db: Session) -> list:
    """All active subscribers, read in one query and ordered by identity."""
    from stampbot.models import Subscriber

    rows = db.scalars(
        select(Subscriber)
        .where(Subscriber.subscribed.is_(True))
        .order_by(Subscriber.identity.asc())
    ).all()
    logger.debug(f"Active subscribers: {len(rows)}")
    return list(rows)


def get_first_activity(db: Session) -> Optional[int]:
    """Earliest subscriber creation time, None while the table is empty."""
    from stampbot.models import Subscriber

    return db.scalar(select(func.min(Subscriber.created_at)))


# =============================================================================
# Message Repository Functions
# =============================================================================

def record_message(
    db: Session,
    identity: str,
    subject: str,
    body: str,
    proof: str,
) -> int:
    """
    Append a message to the audit trail.

    Args:
        db: Database session
        identity: Subscriber the message was sent to
        subject: Message subject
        body: Message body
        proof: Formatted proof of the liveness check for this send

    Returns:
        The new message id

    Raises:
        SubscriberNotFoundError: identity has no subscriber row
    """
    from stampbot.models import Message, Subscriber

    # Subscribers are never deleted, so the check cannot go stale before insert
    if db.get(Subscriber, identity) is None:
        logger.error(f"Refusing to record message for unknown subscriber {identity}")
        raise SubscriberNotFoundError(identity)

    message = Message(
        identity=identity,
        subject=subject,
        body=body,
        sent_at=now_ms(),
        proof=proof,
    )

    try:
        db.add(message)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record message for {identity}: {e}")
        raise

    logger.info(f"Message recorded: id={message.id}, identity={identity}")
    return message.id


def get_messages(db: Session, identity: str, limit: int = 10) -> List:
    """
    Messages sent to a subscriber, most recent first.

    Ordering: sent_at DESC, id DESC (deterministic within one millisecond)
    A negative limit is treated as 0.
    """
    from stampbot.models import Message

    limit = max(limit, 0)
    rows = db.scalars(
        select(Message)
        .where(Message.identity == identity)
        .order_by(Message.sent_at.desc(), Message.id.desc())
        .limit(limit)
    ).all()
    return list(rows)


def get_last_message(db: Session, identity: str):
    messages = get_messages(db, identity, limit=1)
    return messages[0] if messages else None


def count_messages_since(db: Session, since_ms: int) -> int:
    """Number of messages sent at or after since_ms."""
    from stampbot.models import Message

    return db.scalar(
        select(func.count(Message.id)).where(Message.sent_at >= since_ms)
    ) or 0


def get_stats(db: Session) -> dict:
    """
    Aggregate counts for the /stats endpoint.

    Computes:
    - total_subscribers: every subscriber row ever created
    - active_subscribers: rows with the subscription flag set
    - total_messages: rows in the message audit trail

    Returns:
        Dictionary with stats data
    """
    from stampbot.models import Message, Subscriber

    total_subscribers = db.scalar(select(func.count()).select_from(Subscriber)) or 0
    active_subscribers = db.scalar(
        select(func.count()).select_from(Subscriber).where(Subscriber.subscribed.is_(True))
    ) or 0
    total_messages = db.scalar(select(func.count()).select_from(Message)) or 0

    logger.debug(
        f"Stats computed: {total_subscribers} subscribers, "
        f"{active_subscribers} active, {total_messages} messages"
    )

    return {
        "total_subscribers": total_subscribers,
        "active_subscribers": active_subscribers,
        "total_messages": total_messages,
    }
