"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from whatsapp_ai.storage import Base


class KVEntry(Base):
    """
    One key-value record of the chat store.

    Table: kv_entries
    Primary Key: key (e.g. "metadata:+14155550100", "chunk:+14155550100:0")
    """
    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(Integer, nullable=True, index=True)  # epoch seconds, NULL = never
