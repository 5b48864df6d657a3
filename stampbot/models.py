"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
All timestamps are epoch milliseconds.
"""

from sqlalchemy import BigInteger, Boolean, Column, ForeignKey, Integer, String, Text

from stampbot.storage import Base


class Subscriber(Base):
    """
    SQLAlchemy model for a subscriber and their consent record.

    Table: subscribers
    Primary Key: identity (one row per end user, never hard-deleted)
    """
    __tablename__ = "subscribers"

    identity = Column(String, primary_key=True)
    display_name = Column(String, nullable=True)
    subscribed = Column(Boolean, nullable=False, default=True, index=True)
    consent_timestamp = Column(BigInteger, nullable=False)
    consent_token = Column(String, nullable=False)
    consent_proof = Column(Text, nullable=False)  # formatted Proof
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class Message(Base):
    """
    SQLAlchemy model for the append-only message audit trail.

    Table: messages
    Primary Key: id (autoincrement)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity = Column(String, ForeignKey("subscribers.identity"), nullable=False, index=True)
    subject = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    sent_at = Column(BigInteger, nullable=False, index=True)
    proof = Column(Text, nullable=False)  # formatted Proof of the liveness check
