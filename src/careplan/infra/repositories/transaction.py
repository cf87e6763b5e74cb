"""SQLModel implementation of the transaction ledger repository."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import selectinload
from sqlmodel import Session, col, select

from ...domain.clock import as_utc
from ...domain.entities import Transaction, TransactionLine, TransactionType
from ...errors import RefundExceedsPurchaseError, TransactionNotFoundError
from ...logging_config import get_logger
from ...models.transaction import TransactionLineRecord, TransactionRecord
from ..retry import storage_guard

logger = get_logger("infra.transactions")


def _to_entity(row: TransactionRecord) -> Transaction:
    return Transaction(
        id=row.id,
        client_id=row.client_id,
        type=TransactionType(row.type),
        date=row.date,
        made_by=row.made_by,
        receipt_ref=row.receipt_ref,
        note=row.note,
        voided_at=as_utc(row.voided_at),
        created_at=as_utc(row.created_at),
        lines=[
            TransactionLine(
                id=line.id,
                category_id=line.category_id,
                care_item_slug=line.care_item_slug,
                label=line.label,
                amount=line.amount_cents,
                refunded=line.refunded_cents,
                refund_of_transaction_id=line.refund_of_transaction_id,
                refund_of_line_id=line.refund_of_line_id,
            )
            for line in row.lines
        ],
    )


def _with_lines(statement):
    return statement.options(selectinload(TransactionRecord.lines))  # type: ignore[arg-type]


class SQLModelTransactionRepository:
    """SQLModel-based transaction repository implementation."""

    def __init__(self, session_factory: Callable[[], Session]):
        """Initialize with a session factory."""
        self.session_factory = session_factory

    def _insert(self, session: Session, transaction: Transaction) -> int:
        row = TransactionRecord(
            client_id=transaction.client_id,
            year=transaction.year,
            date=transaction.date,
            type=transaction.type.value,
            made_by=transaction.made_by,
            receipt_ref=transaction.receipt_ref,
            note=transaction.note,
        )
        session.add(row)
        session.flush()
        for position, line in enumerate(transaction.lines):
            session.add(
                TransactionLineRecord(
                    transaction_id=row.id,
                    position=position,
                    category_id=line.category_id,
                    care_item_slug=line.care_item_slug,
                    label=line.label,
                    amount_cents=line.amount,
                    refund_of_transaction_id=line.refund_of_transaction_id,
                    refund_of_line_id=line.refund_of_line_id,
                )
            )
        return row.id

    def _reload(self, transaction_id: int) -> Transaction:
        stored = self.get(transaction_id)
        if stored is None:
            raise TransactionNotFoundError(
                "Transaction disappeared after insert", transaction_id=transaction_id
            )
        return stored

    def add_purchase(self, transaction: Transaction) -> Transaction:
        """Insert a purchase and its lines."""
        with storage_guard("transaction.purchase"), self.session_factory() as session:
            transaction_id = self._insert(session, transaction)
            session.commit()
        return self._reload(transaction_id)

    def add_refund(self, transaction: Transaction) -> Transaction:
        """Insert a refund after reserving each line against its purchase line.

        Each reservation is a conditional UPDATE that only matches while the
        purchase line still has enough left, so two concurrent refunds cannot
        both take the last of it.
        """
        with storage_guard("transaction.refund"), self.session_factory() as session:
            for line in transaction.lines:
                result = session.execute(
                    update(TransactionLineRecord)
                    .where(col(TransactionLineRecord.id) == line.refund_of_line_id)
                    .where(
                        col(TransactionLineRecord.transaction_id) == line.refund_of_transaction_id
                    )
                    .where(
                        col(TransactionLineRecord.refunded_cents) + line.amount
                        <= col(TransactionLineRecord.amount_cents)
                    )
                    .values(refunded_cents=col(TransactionLineRecord.refunded_cents) + line.amount)
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise RefundExceedsPurchaseError(
                        "Refund exceeds the remaining amount of the purchase line",
                        transaction_id=line.refund_of_transaction_id,
                        line_id=line.refund_of_line_id,
                        amount_cents=line.amount,
                    )
            transaction_id = self._insert(session, transaction)
            session.commit()
        return self._reload(transaction_id)

    def get(self, transaction_id: int) -> Optional[Transaction]:
        """Retrieve a transaction by ID, voided or not."""
        with storage_guard("transaction.get"), self.session_factory() as session:
            row = session.exec(
                _with_lines(select(TransactionRecord).where(TransactionRecord.id == transaction_id))
            ).first()
            return _to_entity(row) if row else None

    def list_for_year(self, client_id: str, year: int) -> list[Transaction]:
        """Non-voided transactions for a client's year, newest first."""
        statement = _with_lines(
            select(TransactionRecord)
            .where(TransactionRecord.client_id == client_id)
            .where(TransactionRecord.year == year)
            .where(col(TransactionRecord.voided_at).is_(None))
            .order_by(col(TransactionRecord.date).desc(), col(TransactionRecord.id).desc())
        )
        with storage_guard("transaction.list"), self.session_factory() as session:
            return [_to_entity(row) for row in session.exec(statement).all()]

    def void(self, transaction_id: int, voided_at: datetime) -> bool:
        """Void a transaction and hand back whatever a refund had reserved."""
        with storage_guard("transaction.void"), self.session_factory() as session:
            result = session.execute(
                update(TransactionRecord)
                .where(col(TransactionRecord.id) == transaction_id)
                .where(col(TransactionRecord.voided_at).is_(None))
                .values(voided_at=voided_at)
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            lines = session.exec(
                select(TransactionLineRecord).where(
                    TransactionLineRecord.transaction_id == transaction_id
                )
            ).all()
            for line in lines:
                if line.refund_of_line_id is None:
                    continue
                session.execute(
                    update(TransactionLineRecord)
                    .where(col(TransactionLineRecord.id) == line.refund_of_line_id)
                    .values(
                        refunded_cents=col(TransactionLineRecord.refunded_cents) - line.amount_cents
                    )
                )
            session.commit()
        logger.info("Voided transaction", extra={"transaction_id": transaction_id})
        return True
