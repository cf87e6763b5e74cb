"""Occurrence tables."""

from __future__ import annotations

import datetime as dt
from typing import ClassVar, Optional

from sqlalchemy import Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlmodel import Field, Relationship, SQLModel


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class OccurrenceRecord(SQLModel, table=True):
    """One scheduled instance of a care item for a client on a calendar day."""

    __tablename__: ClassVar[str] = "occurrence"
    __table_args__ = (
        UniqueConstraint("client_id", "care_item_slug", "date_key", name="uniq_client_slug_day"),
        Index("ix_occurrence_client_date", "client_id", "date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(nullable=False, max_length=64)
    care_item_slug: str = Field(nullable=False, max_length=128, index=True)
    date: dt.date = Field(nullable=False)
    date_key: str = Field(nullable=False, max_length=10)
    status: str = Field(default="Due", nullable=False, max_length=32)
    cost_cents: Optional[int] = Field(default=None)
    completed_on: Optional[dt.date] = Field(default=None)
    completed_by: Optional[str] = Field(default=None, max_length=64)
    completed_at: Optional[dt.datetime] = Field(default=None)
    done_by: Optional[str] = Field(default=None, max_length=64)
    done_at: Optional[dt.datetime] = Field(default=None)
    created_at: dt.datetime = Field(default_factory=_utcnow, nullable=False)
    updated_at: dt.datetime = Field(default_factory=_utcnow, nullable=False)

    comments: list["OccurrenceComment"] = Relationship(
        sa_relationship=relationship(
            "OccurrenceComment",
            order_by="OccurrenceComment.id",
            cascade="all, delete-orphan",
        ),
    )
    files: list["OccurrenceFile"] = Relationship(
        sa_relationship=relationship(
            "OccurrenceFile",
            order_by="OccurrenceFile.id",
            cascade="all, delete-orphan",
        ),
    )


class OccurrenceComment(SQLModel, table=True):
    """Append-only comment; one row per append keeps concurrent writers apart."""

    __tablename__: ClassVar[str] = "occurrence_comment"

    id: Optional[int] = Field(default=None, primary_key=True)
    occurrence_id: int = Field(foreign_key="occurrence.id", nullable=False, index=True)
    body: str = Field(nullable=False)
    created_at: dt.datetime = Field(default_factory=_utcnow, nullable=False)


class OccurrenceFile(SQLModel, table=True):
    """Append-only file reference attached to an occurrence."""

    __tablename__: ClassVar[str] = "occurrence_file"

    id: Optional[int] = Field(default=None, primary_key=True)
    occurrence_id: int = Field(foreign_key="occurrence.id", nullable=False, index=True)
    file_ref: str = Field(nullable=False, max_length=512)
    created_at: dt.datetime = Field(default_factory=_utcnow, nullable=False)
