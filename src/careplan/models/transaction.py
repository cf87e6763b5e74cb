"""Purchase and refund ledger tables.

Money columns hold integer cents.
"""

from __future__ import annotations

import datetime as dt
from typing import ClassVar, Optional

from sqlalchemy import Index
from sqlalchemy.orm import relationship
from sqlmodel import Field, Relationship, SQLModel


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class TransactionRecord(SQLModel, table=True):
    """A dated purchase or refund made for a client."""

    __tablename__: ClassVar[str] = "care_transaction"
    __table_args__ = (Index("ix_transaction_client_year", "client_id", "year"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(nullable=False, max_length=64)
    year: int = Field(nullable=False)
    date: dt.date = Field(nullable=False)
    type: str = Field(nullable=False, max_length=16)
    made_by: str = Field(nullable=False, max_length=64)
    receipt_ref: Optional[str] = Field(default=None, max_length=512)
    note: Optional[str] = Field(default=None)
    voided_at: Optional[dt.datetime] = Field(default=None)
    created_at: dt.datetime = Field(default_factory=_utcnow, nullable=False)

    lines: list["TransactionLineRecord"] = Relationship(
        back_populates="transaction",
        sa_relationship=relationship(
            "TransactionLineRecord",
            back_populates="transaction",
            foreign_keys="TransactionLineRecord.transaction_id",
            order_by="TransactionLineRecord.position",
        ),
    )


class TransactionLineRecord(SQLModel, table=True):
    """One line of a transaction; refund lines point at the purchase line they refund."""

    __tablename__: ClassVar[str] = "care_transaction_line"

    id: Optional[int] = Field(default=None, primary_key=True)
    transaction_id: int = Field(foreign_key="care_transaction.id", nullable=False, index=True)
    position: int = Field(default=0, nullable=False)
    category_id: str = Field(nullable=False, max_length=64)
    care_item_slug: str = Field(nullable=False, max_length=128)
    label: str = Field(default="", max_length=128)
    amount_cents: int = Field(nullable=False)
    refunded_cents: int = Field(default=0, nullable=False)
    refund_of_transaction_id: Optional[int] = Field(default=None, foreign_key="care_transaction.id")
    refund_of_line_id: Optional[int] = Field(
        default=None, foreign_key="care_transaction_line.id", index=True
    )

    transaction: "TransactionRecord" = Relationship(
        back_populates="lines",
        sa_relationship=relationship(
            "TransactionRecord",
            back_populates="lines",
            foreign_keys="TransactionLineRecord.transaction_id",
        ),
    )
