"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from relaychat.storage import Base


ORIGIN_LOCAL = "local"
ORIGIN_RELAYED = "relayed"


class Message(Base):
    """
    SQLAlchemy model for the append-only message log of one node.

    Table: messages
    Primary Key: id (assigned in arrival order)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    sender = Column(String, nullable=False, index=True)
    body = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)  # Server time ISO-8601, this node
    origin = Column(String, nullable=False, default=ORIGIN_LOCAL)  # local | relayed
    sent_at = Column(String, nullable=True)  # Peer's timestamp for relayed messages

    def __repr__(self) -> str:
        return f"<Message id={self.id} sender={self.sender!r} origin={self.origin}>"
