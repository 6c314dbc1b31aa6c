"""Allowance ledger: an append-only list of income and expense transactions."""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlmodel import select

from .dates import Clock, parse_date, today_kst, utc_now
from .exceptions import InsufficientFundsError, ValidationError
from .models import (
    AllowanceStatistics,
    AllowanceTransaction,
    CategoryShare,
    EXPENSE_CATEGORIES,
    INCOME_CATEGORIES,
    TransactionType,
)
from .money import AmountLike, format_currency, require_positive, to_amount
from .ops import StructuredLogger
from .persistence import AllowanceTransactionRow, Database, to_record

_TOP_CATEGORY_LIMIT = 5
_RECENT_LIMIT = 10


class AllowanceLedger:
    """Record transactions and derive balances for one family's children.

    Balances are never stored; they are always recomputed from the ledger as
    total income minus total expense.
    """

    def __init__(
        self,
        database: Database,
        *,
        clock: Clock = utc_now,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._db = database
        self._clock = clock
        self._logger = logger or StructuredLogger()

    def record_income(
        self,
        user_id: str,
        amount: AmountLike,
        category: str,
        *,
        description: str | None = None,
        day: date | str | None = None,
        mission_id: str | None = None,
        reward_id: str | None = None,
        parent_note: str | None = None,
    ) -> AllowanceTransaction:
        """Write one income row.

        Only mission rewards and streak bonuses produce income.  A second payout
        for the same ``mission_id`` or ``reward_id`` raises
        :class:`~moneyseed.exceptions.ConflictError`.
        """

        if category not in INCOME_CATEGORIES:
            raise ValidationError(f"Income category {category!r} is not allowed.")
        value = require_positive(to_amount(amount), maximum=None)
        row = AllowanceTransactionRow(
            user_id=user_id,
            amount=value,
            type=TransactionType.INCOME.value,
            category=category,
            description=description,
            date=parse_date(day) if day is not None else today_kst(self._clock),
            mission_id=mission_id,
            reward_id=reward_id,
            parent_note=parent_note,
        )
        self._db.insert(row)
        self._logger.log(
            "income_recorded",
            user=user_id,
            amount=value,
            category=category,
            mission=mission_id,
        )
        return to_record(row)

    def add_expense(
        self,
        user_id: str,
        amount: AmountLike,
        category: str,
        description: str | None = None,
        day: date | str | None = None,
    ) -> AllowanceTransaction:
        if category not in EXPENSE_CATEGORIES:
            raise ValidationError(f"Unknown expense category {category!r}.")
        value = require_positive(to_amount(amount))
        balance = self.get_balance(user_id)
        if value > balance:
            raise InsufficientFundsError(
                f"Cannot spend {format_currency(value)}; balance is {format_currency(balance)}."
            )
        row = AllowanceTransactionRow(
            user_id=user_id,
            amount=value,
            type=TransactionType.EXPENSE.value,
            category=category,
            description=(description or "").strip() or None,
            date=parse_date(day) if day is not None else today_kst(self._clock),
        )
        self._db.insert(row)
        self._logger.log("expense_recorded", user=user_id, amount=value, category=category)
        return to_record(row)

    def get_balance(self, user_id: str) -> int:
        totals = self._totals(user_id)
        return totals[TransactionType.INCOME.value] - totals[TransactionType.EXPENSE.value]

    def list_transactions(
        self,
        user_id: str,
        start: date | str | None = None,
        end: date | str | None = None,
    ) -> List[AllowanceTransaction]:
        """Transactions for ``user_id`` between ``start`` and ``end`` inclusive, newest first."""

        criteria = [AllowanceTransactionRow.user_id == user_id]
        if start is not None:
            criteria.append(AllowanceTransactionRow.date >= parse_date(start))
        if end is not None:
            criteria.append(AllowanceTransactionRow.date <= parse_date(end))
        rows = self._db.find(
            AllowanceTransactionRow,
            *criteria,
            order_by=(AllowanceTransactionRow.date.desc(), AllowanceTransactionRow.created_at.desc()),
        )
        return [to_record(row) for row in rows]

    def get_statistics(self, user_id: str, period: str = "month") -> AllowanceStatistics:
        if period not in {"month", "all"}:
            raise ValidationError("Period must be 'month' or 'all'.")
        today = today_kst(self._clock)
        month_start = today.replace(day=1)
        transactions = self.list_transactions(user_id)
        in_period = [
            item for item in transactions if period == "all" or item.date >= month_start
        ]
        this_month = [item for item in transactions if item.date >= month_start]

        total_income = _sum(in_period, TransactionType.INCOME)
        total_expense = _sum(in_period, TransactionType.EXPENSE)

        by_category: Dict[str, int] = defaultdict(int)
        for item in in_period:
            if item.type is TransactionType.EXPENSE:
                by_category[item.category] += item.amount
        shares = [
            CategoryShare(
                category=category,
                amount=amount,
                percentage=(amount / total_expense * 100) if total_expense else 0.0,
            )
            for category, amount in by_category.items()
        ]
        shares.sort(key=lambda share: share.amount, reverse=True)

        return AllowanceStatistics(
            current_balance=self.get_balance(user_id),
            total_income=total_income,
            total_expense=total_expense,
            monthly_income=_sum(this_month, TransactionType.INCOME),
            monthly_expense=_sum(this_month, TransactionType.EXPENSE),
            top_categories=shares[:_TOP_CATEGORY_LIMIT],
            recent_transactions=transactions[:_RECENT_LIMIT],
        )

    def find_by_mission(self, mission_id: str) -> Optional[AllowanceTransaction]:
        row = self._db.first(AllowanceTransactionRow, AllowanceTransactionRow.mission_id == mission_id)
        return to_record(row) if row is not None else None

    def find_by_reward(self, reward_id: str) -> Optional[AllowanceTransaction]:
        row = self._db.first(AllowanceTransactionRow, AllowanceTransactionRow.reward_id == reward_id)
        return to_record(row) if row is not None else None

    def _totals(self, user_id: str) -> Dict[str, int]:
        statement = (
            select(AllowanceTransactionRow.type, func.coalesce(func.sum(AllowanceTransactionRow.amount), 0))
            .where(AllowanceTransactionRow.user_id == user_id)
            .group_by(AllowanceTransactionRow.type)
        )
        totals = {TransactionType.INCOME.value: 0, TransactionType.EXPENSE.value: 0}
        with self._db.session() as session:
            for kind, amount in session.exec(statement).all():
                totals[kind] = int(amount)
        return totals


def _sum(transactions: List[AllowanceTransaction], kind: TransactionType) -> int:
    return sum(item.amount for item in transactions if item.type is kind)


__all__ = ["AllowanceLedger"]
