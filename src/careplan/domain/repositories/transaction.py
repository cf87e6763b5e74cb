"""Transaction ledger repository protocol."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..entities import Transaction


class TransactionRepository(Protocol):
    """Storage port for purchase and refund transactions.

    Purchase lines carry a running ``refunded`` total. Implementations must
    raise it atomically with the refund insert, so concurrent refunds can
    never take more than a line's amount.
    """

    def add_purchase(self, transaction: Transaction) -> Transaction:
        """Insert a purchase and its lines; returns it with ids assigned."""
        ...

    def add_refund(self, transaction: Transaction) -> Transaction:
        """Insert a refund and reserve its amounts against the purchase lines.

        Raises ``RefundExceedsPurchaseError`` and writes nothing if any line
        would take a purchase line past its amount.
        """
        ...

    def get(self, transaction_id: int) -> Optional[Transaction]:
        """Retrieve a transaction by ID, voided or not."""
        ...

    def list_for_year(self, client_id: str, year: int) -> list[Transaction]:
        """Non-voided transactions for a client's year, newest first."""
        ...

    def void(self, transaction_id: int, voided_at: datetime) -> bool:
        """Void a transaction, releasing whatever a refund had reserved.

        Returns False if it was missing or already voided.
        """
        ...
