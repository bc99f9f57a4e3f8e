from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""


class DocumentRow(Base):
    """One document of the document store.

    Stores:
    - collection: Collection path, including parent ids for subcollections
      (e.g. "client_plan_content/u1_p1_2025-W10/sessions")
    - doc_id: Document id, unique within its collection
    - data: Document fields as JSON
    - created_at / updated_at: Row bookkeeping (document-level timestamps live in data)
    """

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String, nullable=False, index=True)
    doc_id: Mapped[str] = mapped_column(String, nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc_id"),
        Index("idx_documents_collection_doc_id", "collection", "doc_id"),
    )
