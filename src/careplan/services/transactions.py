"""Purchase and refund ledger.

A purchase charges each of its lines to the client's budget; a refund gives
back part of one or more purchase lines. The ledger row is written first and
the budget is charged in one versioned write afterwards. If the budget write
is rejected the transaction is voided again, so the ledger never records spend
the budget does not carry.
"""

from __future__ import annotations

from typing import Callable, Iterable, NamedTuple, Optional, TypeVar

from ..domain.clock import Clock
from ..domain.entities import (
    RefundableLine,
    Transaction,
    TransactionLine,
    TransactionType,
    normalize_slug,
    require_client_id,
    require_year,
)
from ..domain.repositories.transaction import TransactionRepository
from ..errors import (
    CarePlanError,
    InvalidMoneyError,
    RefundExceedsPurchaseError,
    RefundYearMismatchError,
    TransactionNotFoundError,
    ValidationError,
)
from ..infra.retry import DEFAULT_POLICY, RetryPolicy, retry_transient
from ..logging_config import get_logger
from ..money import Money, to_cents
from .budgeting import BudgetAggregator, SpendLine
from .recurrence import DateLike, to_date

logger = get_logger("services.transactions")

T = TypeVar("T")


class PurchaseLine(NamedTuple):
    category_id: str
    care_item_slug: str
    amount: Money
    label: Optional[str] = None


class RefundLine(NamedTuple):
    """Part of a purchase line being given back."""

    transaction_id: int
    line_id: int
    amount: Money


def _positive_cents(amount: Money) -> int:
    cents = to_cents(amount, field="amount")
    if cents <= 0:
        raise InvalidMoneyError("Line amount must be positive", field="amount", value=str(amount))
    return cents


def _require_text(value: Optional[str], field: str) -> str:
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ValidationError(f"{field} is required", field=field)
    return text


class TransactionLedger:
    """Records purchases and refunds and keeps the budget in step with them."""

    def __init__(
        self,
        repository: TransactionRepository,
        budget: BudgetAggregator,
        *,
        clock: Clock,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.repository = repository
        self.budget = budget
        self.clock = clock
        self.retry_policy = retry_policy

    def _retry(self, operation: Callable[[], T], description: str) -> T:
        return retry_transient(operation, policy=self.retry_policy, description=description)

    def _charge(self, stored: Transaction, sign: int) -> Transaction:
        spend = [
            SpendLine(line.category_id, line.care_item_slug, sign * line.amount, line.label)
            for line in stored.lines
        ]
        try:
            self.budget.apply_spend_lines(stored.client_id, stored.year, spend)
        except CarePlanError as exc:
            self.repository.void(stored.id, self.clock.now())
            logger.warning(
                "Voided %s after budget rejection: %s",
                stored.type.value.lower(),
                exc.message,
                extra={"transaction_id": stored.id, "client_id": stored.client_id},
            )
            raise
        return stored

    def _purchase(self, client_id: str, transaction_id: int) -> Transaction:
        purchase = self._retry(lambda: self.repository.get(transaction_id), "load transaction")
        if (
            purchase is None
            or purchase.client_id != client_id
            or purchase.type is not TransactionType.PURCHASE
            or purchase.voided_at is not None
        ):
            raise TransactionNotFoundError(
                "Purchase not found", transaction_id=transaction_id, client_id=client_id
            )
        return purchase

    def record_purchase(
        self,
        client_id: str,
        on: DateLike,
        lines: Iterable[PurchaseLine],
        *,
        made_by: str,
        receipt_ref: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        """Record a purchase and charge each line to its category's care item."""
        client = require_client_id(client_id)
        when = to_date(on)
        prepared = []
        for line in lines:
            category_id = _require_text(line.category_id, "category_id")
            slug = normalize_slug(line.care_item_slug)
            if not slug:
                raise ValidationError("care_item_slug is required", field="care_item_slug")
            prepared.append(
                TransactionLine(
                    category_id=category_id,
                    care_item_slug=slug,
                    label=line.label or slug,
                    amount=_positive_cents(line.amount),
                )
            )
        if not prepared:
            raise ValidationError("A purchase needs at least one line", field="lines")

        stored = self.repository.add_purchase(
            Transaction(
                client_id=client,
                type=TransactionType.PURCHASE,
                date=when,
                made_by=_require_text(made_by, "made_by"),
                lines=prepared,
                receipt_ref=receipt_ref,
                note=note,
            )
        )
        self._charge(stored, 1)
        logger.info(
            "Recorded purchase",
            extra={
                "transaction_id": stored.id,
                "client_id": client,
                "year": stored.year,
                "total_cents": stored.total,
            },
        )
        return stored

    def record_refund(
        self,
        client_id: str,
        on: DateLike,
        lines: Iterable[RefundLine],
        *,
        made_by: str,
        receipt_ref: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        """Give back part of earlier purchase lines and reduce spend by the same amount.

        Every refunded line must belong to a live purchase of the same client
        and budget year, and the refund may not take a line past its amount.
        """
        client = require_client_id(client_id)
        when = to_date(on)
        requested = list(lines)
        if not requested:
            raise ValidationError("A refund needs at least one line", field="lines")

        purchases: dict[int, Transaction] = {}
        wanted: dict[int, int] = {}
        prepared = []
        for line in requested:
            purchase = purchases.get(line.transaction_id)
            if purchase is None:
                purchase = purchases[line.transaction_id] = self._purchase(
                    client, line.transaction_id
                )
            if purchase.year != when.year:
                raise RefundYearMismatchError(
                    "Refund must fall in the purchase's budget year",
                    transaction_id=purchase.id,
                    purchase_year=purchase.year,
                    refund_year=when.year,
                )
            original = purchase.find_line(line.line_id)
            if original is None:
                raise TransactionNotFoundError(
                    "Purchase line not found",
                    transaction_id=purchase.id,
                    line_id=line.line_id,
                )
            cents = _positive_cents(line.amount)
            wanted[original.id] = wanted.get(original.id, 0) + cents
            if wanted[original.id] > original.remaining_refundable:
                raise RefundExceedsPurchaseError(
                    "Refund exceeds the remaining amount of the purchase line",
                    transaction_id=purchase.id,
                    line_id=original.id,
                    amount_cents=wanted[original.id],
                    remaining_cents=original.remaining_refundable,
                )
            prepared.append(
                TransactionLine(
                    category_id=original.category_id,
                    care_item_slug=original.care_item_slug,
                    label=original.label,
                    amount=cents,
                    refund_of_transaction_id=purchase.id,
                    refund_of_line_id=original.id,
                )
            )

        stored = self.repository.add_refund(
            Transaction(
                client_id=client,
                type=TransactionType.REFUND,
                date=when,
                made_by=_require_text(made_by, "made_by"),
                lines=prepared,
                receipt_ref=receipt_ref,
                note=note,
            )
        )
        self._charge(stored, -1)
        logger.info(
            "Recorded refund",
            extra={
                "transaction_id": stored.id,
                "client_id": client,
                "year": stored.year,
                "total_cents": stored.total,
            },
        )
        return stored

    def refundables(self, client_id: str, year: int) -> list[RefundableLine]:
        """Purchase lines of the year that still have something left to refund."""
        client = require_client_id(client_id)
        year = require_year(year)
        transactions = self._retry(
            lambda: self.repository.list_for_year(client, year), "list transactions"
        )
        return [
            RefundableLine(
                transaction_id=transaction.id,
                purchase_date=transaction.date,
                line_id=line.id,
                category_id=line.category_id,
                care_item_slug=line.care_item_slug,
                label=line.label,
                original_amount=line.amount,
                refunded=line.refunded,
                remaining=line.remaining_refundable,
            )
            for transaction in transactions
            if transaction.type is TransactionType.PURCHASE
            for line in transaction.lines
            if line.remaining_refundable > 0
        ]

    def list_transactions(self, client_id: str, year: int) -> list[Transaction]:
        client = require_client_id(client_id)
        year = require_year(year)
        return self._retry(lambda: self.repository.list_for_year(client, year), "list transactions")

    def get(self, client_id: str, transaction_id: int) -> Transaction:
        client = require_client_id(client_id)
        transaction = self._retry(lambda: self.repository.get(transaction_id), "load transaction")
        if transaction is None or transaction.client_id != client:
            raise TransactionNotFoundError(
                "Transaction not found", transaction_id=transaction_id, client_id=client
            )
        return transaction


__all__ = ["PurchaseLine", "RefundLine", "TransactionLedger"]
