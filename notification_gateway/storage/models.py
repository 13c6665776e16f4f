"""
Table for the SQL-backed document store.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base, Mapped, mapped_column

Base = declarative_base()


class DocumentRow(Base):
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    body: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("ix_documents_collection_updated", "collection", "updated_at"),)
