"""Data access for budgets, categories and transactions.

Each store is a ``Protocol`` with a single SQLAlchemy adapter. Services depend
on the protocol so tests can hand in fakes; the adapters contain no business
rules beyond the row filters they are asked for.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional, Protocol

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    Budget,
    BudgetSpending,
    Category,
    Subcategory,
    Transaction,
    TransactionType,
    budget_owner_key,
    budget_scope_key,
)


class DuplicateBudgetSlot(Exception):
    """Insert rejected by the (period, scope, owner) unique index."""


@dataclass(frozen=True)
class SpendingEntry:
    category_id: Optional[str]
    subcategory_id: Optional[str]
    actual_spend_cents: int
    transaction_count: int


@dataclass(frozen=True)
class ExpenseRow:
    category_id: str
    subcategory_id: Optional[str]
    amount_cents: int


@dataclass(frozen=True)
class TransactionScope:
    """Transactions a user can see: their own plus their household's."""

    user_id: str
    household_id: Optional[str] = None


def _is_unique_violation(exc: IntegrityError) -> bool:
    if getattr(exc.orig, "pgcode", None) == "23505":
        return True
    return "UNIQUE constraint failed" in str(exc.orig)


class BudgetStore(Protocol):
    def find_all_by_period(self, period: date) -> list[Budget]: ...

    def find_by_id(self, budget_id: str) -> Optional[Budget]: ...

    def find_by_id_including_deleted(self, budget_id: str) -> Optional[Budget]: ...

    def create(self, budget: Budget) -> Budget: ...

    def update(self, budget_id: str, changes: dict[str, object]) -> Optional[Budget]: ...

    def delete(self, budget_id: str) -> None: ...

    def get_budget_spending_by_period(
        self, period: date, user_id: str
    ) -> dict[str, SpendingEntry]: ...

    def exists_for_period(
        self,
        period: date,
        category_id: Optional[str],
        subcategory_id: Optional[str],
        user_id: str,
        household_id: Optional[str],
    ) -> bool: ...


class CategoryStore(Protocol):
    def find_categories_by_ids(self, ids: Iterable[str]) -> list[Category]: ...

    def find_subcategories_by_ids(self, ids: Iterable[str]) -> list[Subcategory]: ...

    def find_category_by_id(self, category_id: str) -> Optional[Category]: ...

    def find_subcategory_by_id(self, subcategory_id: str) -> Optional[Subcategory]: ...


class TransactionStore(Protocol):
    def count_expenses(self, start: date, end: date, scope: TransactionScope) -> int: ...

    def fetch_expense_projections(
        self, start: date, end: date, scope: TransactionScope
    ) -> list[ExpenseRow]: ...


class SqlBudgetStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_all_by_period(self, period: date) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.period == period, Budget.deleted_at.is_(None))
            .order_by(Budget.amount_cents.desc(), Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def find_by_id(self, budget_id: str) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget).where(Budget.id == budget_id, Budget.deleted_at.is_(None))
        )

    def find_by_id_including_deleted(self, budget_id: str) -> Optional[Budget]:
        return self.session.get(Budget, budget_id)

    def create(self, budget: Budget) -> Budget:
        self.session.add(budget)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            if _is_unique_violation(exc):
                raise DuplicateBudgetSlot(str(exc.orig)) from exc
            raise
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: str, changes: dict[str, object]) -> Optional[Budget]:
        budget = self.find_by_id(budget_id)
        if budget is None:
            return None
        for name, value in changes.items():
            setattr(budget, name, value)
        budget.updated_at = datetime.utcnow()
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: str) -> None:
        now = datetime.utcnow()
        self.session.execute(
            update(Budget)
            .where(Budget.id == budget_id, Budget.deleted_at.is_(None))
            .values(deleted_at=now, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()

    def get_budget_spending_by_period(
        self, period: date, user_id: str
    ) -> dict[str, SpendingEntry]:
        rows = self.session.scalars(
            select(BudgetSpending).where(
                BudgetSpending.period == period,
                BudgetSpending.user_id == user_id,
            )
        ).all()
        return {
            row.scope_key: SpendingEntry(
                category_id=row.category_id,
                subcategory_id=row.subcategory_id,
                actual_spend_cents=row.actual_spend_cents,
                transaction_count=row.transaction_count,
            )
            for row in rows
        }

    def exists_for_period(
        self,
        period: date,
        category_id: Optional[str],
        subcategory_id: Optional[str],
        user_id: str,
        household_id: Optional[str],
    ) -> bool:
        if not category_id and not subcategory_id:
            return False
        stmt = (
            select(Budget.id)
            .where(
                Budget.period == period,
                Budget.scope_key == budget_scope_key(category_id or "", subcategory_id),
                Budget.owner_key == budget_owner_key(user_id, household_id),
                Budget.deleted_at.is_(None),
            )
            .limit(1)
        )
        return self.session.scalar(stmt) is not None


class SqlCategoryStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_categories_by_ids(self, ids: Iterable[str]) -> list[Category]:
        ids = list(ids)
        if not ids:
            return []
        return list(
            self.session.scalars(select(Category).where(Category.id.in_(ids))).all()
        )

    def find_subcategories_by_ids(self, ids: Iterable[str]) -> list[Subcategory]:
        ids = list(ids)
        if not ids:
            return []
        return list(
            self.session.scalars(
                select(Subcategory).where(Subcategory.id.in_(ids))
            ).all()
        )

    def find_category_by_id(self, category_id: str) -> Optional[Category]:
        return self.session.get(Category, category_id)

    def find_subcategory_by_id(self, subcategory_id: str) -> Optional[Subcategory]:
        return self.session.get(Subcategory, subcategory_id)


class SqlTransactionStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _expense_filters(start: date, end: date, scope: TransactionScope) -> list:
        if scope.household_id:
            visible = or_(
                Transaction.user_id == scope.user_id,
                Transaction.household_id == scope.household_id,
            )
        else:
            visible = Transaction.user_id == scope.user_id
        return [
            visible,
            Transaction.deleted_at.is_(None),
            Transaction.type == TransactionType.expense,
            Transaction.category_id.is_not(None),
            Transaction.date.between(start, end),
        ]

    def count_expenses(self, start: date, end: date, scope: TransactionScope) -> int:
        stmt = (
            select(func.count())
            .select_from(Transaction)
            .where(*self._expense_filters(start, end, scope))
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def fetch_expense_projections(
        self, start: date, end: date, scope: TransactionScope
    ) -> list[ExpenseRow]:
        stmt = (
            select(
                Transaction.category_id,
                Transaction.subcategory_id,
                Transaction.amount_cents,
            )
            .where(*self._expense_filters(start, end, scope))
            .order_by(Transaction.date.asc())
        )
        return [
            ExpenseRow(
                category_id=row.category_id,
                subcategory_id=row.subcategory_id,
                amount_cents=int(row.amount_cents or 0),
            )
            for row in self.session.execute(stmt)
        ]

    def user_ids_with_expenses(self, start: date, end: date) -> list[str]:
        stmt = (
            select(Transaction.user_id)
            .where(
                Transaction.deleted_at.is_(None),
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
            )
            .distinct()
        )
        return list(self.session.scalars(stmt).all())
