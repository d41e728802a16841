"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from relaydesk.storage import Base


class Message(Base):
    """
    SQLAlchemy model for the operator's message list.

    Table: messages
    Primary Key: id (opaque, stable across edits)
    List order: position ASC
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, index=True)
    position = Column(Integer, nullable=False, index=True)
    sender = Column(String, nullable=False, index=True)
    receiver = Column(String, nullable=False, index=True)
    scheduled_time = Column(String, nullable=False)  # ISO-8601 as entered
    unix_timestamp = Column(Integer, nullable=False)  # derived from scheduled_time
    content = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    delivery_receipt_id = Column(Integer, nullable=True)
    verification_status = Column(String, nullable=True)
    error_kind = Column(String, nullable=True)
    error_detail = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
