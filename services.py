from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional, Union

from sqlalchemy import and_, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cache import CacheInvalidator, InvalidationScope, NullInvalidator
from models import (
    Budget,
    BudgetSpending,
    Category,
    Household,
    HouseholdMember,
    MemberStatus,
    Subcategory,
    TransactionType,
    UserActiveHousehold,
    budget_owner_key,
    budget_scope_key,
    new_id,
)
from periods import month_bounds, next_period, normalize_period
from schemas import BudgetIn, BudgetUpdateIn, CategoryIn, SubcategoryIn
from stores import (
    BudgetStore,
    CategoryStore,
    DuplicateBudgetSlot,
    ExpenseRow,
    SpendingEntry,
    SqlBudgetStore,
    SqlCategoryStore,
    SqlTransactionStore,
    TransactionScope,
    TransactionStore,
)

logger = logging.getLogger(__name__)


class BudgetValidationError(ValueError):
    pass


class BudgetConflict(ValueError):
    pass


class BudgetNotFound(LookupError):
    pass


class NotAuthenticated(PermissionError):
    pass


class BudgetAccessDenied(PermissionError):
    pass


DUPLICATE_BUDGET_MESSAGE = "Budget already exists for this period and category"


class HouseholdService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_active_household_id(self, user_id: str) -> Optional[str]:
        """Explicitly selected household first, then the default membership."""
        selected = self.session.scalar(
            select(UserActiveHousehold.household_id)
            .join(
                HouseholdMember,
                and_(
                    HouseholdMember.household_id == UserActiveHousehold.household_id,
                    HouseholdMember.user_id == UserActiveHousehold.user_id,
                ),
            )
            .where(
                UserActiveHousehold.user_id == user_id,
                HouseholdMember.status == MemberStatus.active,
            )
        )
        if selected:
            return selected
        return self.session.scalar(
            select(HouseholdMember.household_id)
            .where(
                HouseholdMember.user_id == user_id,
                HouseholdMember.is_default.is_(True),
                HouseholdMember.status == MemberStatus.active,
            )
            .order_by(HouseholdMember.created_at)
            .limit(1)
        )

    def create(self, name: str, owner_id: str) -> Household:
        household = Household(name=name.strip(), created_by=owner_id)
        self.session.add(household)
        self.session.flush()
        self.session.add(
            HouseholdMember(
                household_id=household.id,
                user_id=owner_id,
                status=MemberStatus.active,
                is_default=True,
            )
        )
        self.session.commit()
        self.session.refresh(household)
        return household

    def add_member(
        self,
        household_id: str,
        user_id: str,
        *,
        status: MemberStatus = MemberStatus.active,
        is_default: bool = True,
    ) -> HouseholdMember:
        member = HouseholdMember(
            household_id=household_id,
            user_id=user_id,
            status=status,
            is_default=is_default,
        )
        self.session.add(member)
        self.session.commit()
        return member

    def set_active(self, user_id: str, household_id: str) -> None:
        member = self.session.scalar(
            select(HouseholdMember).where(
                HouseholdMember.household_id == household_id,
                HouseholdMember.user_id == user_id,
                HouseholdMember.status == MemberStatus.active,
            )
        )
        if not member:
            raise ValueError("Not an active member of this household")
        row = self.session.scalar(
            select(UserActiveHousehold).where(UserActiveHousehold.user_id == user_id)
        )
        if row:
            row.household_id = household_id
        else:
            self.session.add(
                UserActiveHousehold(user_id=user_id, household_id=household_id)
            )
        self.session.commit()

    def active_member_ids(self) -> list[str]:
        return list(
            self.session.scalars(
                select(HouseholdMember.user_id)
                .where(HouseholdMember.status == MemberStatus.active)
                .distinct()
            ).all()
        )


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[str] = None) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.name)
        if self.user_id:
            stmt = stmt.where(
                (Category.user_id == self.user_id) | Category.user_id.is_(None)
            )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return list(self.session.scalars(stmt).all())

    def create(self, data: CategoryIn, *, category_id: Optional[str] = None) -> Category:
        category = Category(
            id=category_id or new_id(),
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def create_subcategory(
        self, data: SubcategoryIn, *, subcategory_id: Optional[str] = None
    ) -> Subcategory:
        parent = self.session.get(Category, data.category_id)
        if not parent:
            raise ValueError("Category not found")
        subcategory = Subcategory(
            id=subcategory_id or new_id(),
            category_id=parent.id,
            user_id=self.user_id,
            name=data.name.strip(),
        )
        self.session.add(subcategory)
        self.session.commit()
        self.session.refresh(subcategory)
        return subcategory

    def archive(self, category_id: str) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        category.archived_at = datetime.utcnow()
        self.session.commit()


@dataclass
class SpendMaps:
    """Spend per category and per subcategory for one month.

    A transaction tagged with both a category and a subcategory lands in both
    maps, once each.
    """

    by_category: dict[str, int] = field(default_factory=dict)
    by_subcategory: dict[str, int] = field(default_factory=dict)
    category_counts: dict[str, int] = field(default_factory=dict)
    subcategory_counts: dict[str, int] = field(default_factory=dict)
    subcategory_parents: dict[str, str] = field(default_factory=dict)
    source: str = "scan"

    def add(
        self, category_id: Optional[str], subcategory_id: Optional[str], amount_cents: int
    ) -> None:
        spend = abs(amount_cents)
        if category_id:
            self.by_category[category_id] = self.by_category.get(category_id, 0) + spend
            self.category_counts[category_id] = (
                self.category_counts.get(category_id, 0) + 1
            )
        if subcategory_id:
            self.by_subcategory[subcategory_id] = (
                self.by_subcategory.get(subcategory_id, 0) + spend
            )
            self.subcategory_counts[subcategory_id] = (
                self.subcategory_counts.get(subcategory_id, 0) + 1
            )
            if category_id:
                self.subcategory_parents[subcategory_id] = category_id

    def spend_for(self, budget: Budget) -> int:
        if budget.subcategory_id:
            return self.by_subcategory.get(budget.subcategory_id, 0)
        if budget.category_id:
            return self.by_category.get(budget.category_id, 0)
        return 0

    def entries(self) -> dict[str, SpendingEntry]:
        out: dict[str, SpendingEntry] = {}
        for category_id, spend in self.by_category.items():
            out[budget_scope_key(category_id, None)] = SpendingEntry(
                category_id=category_id,
                subcategory_id=None,
                actual_spend_cents=spend,
                transaction_count=self.category_counts.get(category_id, 0),
            )
        for subcategory_id, spend in self.by_subcategory.items():
            out[budget_scope_key("", subcategory_id)] = SpendingEntry(
                category_id=self.subcategory_parents.get(subcategory_id),
                subcategory_id=subcategory_id,
                actual_spend_cents=spend,
                transaction_count=self.subcategory_counts.get(subcategory_id, 0),
            )
        return out

    @classmethod
    def from_aggregate(cls, spending: dict[str, SpendingEntry]) -> "SpendMaps":
        maps = cls(source="aggregate")
        for key, entry in spending.items():
            if key.startswith("category:"):
                maps.by_category[key[len("category:"):]] = entry.actual_spend_cents
                maps.category_counts[key[len("category:"):]] = entry.transaction_count
            elif key.startswith("subcategory:"):
                subcategory_id = key[len("subcategory:"):]
                maps.by_subcategory[subcategory_id] = entry.actual_spend_cents
                maps.subcategory_counts[subcategory_id] = entry.transaction_count
                if entry.category_id:
                    maps.subcategory_parents[subcategory_id] = entry.category_id
        return maps


def fold_expense_rows(rows: Iterable[ExpenseRow]) -> SpendMaps:
    maps = SpendMaps()
    for row in rows:
        maps.add(row.category_id, row.subcategory_id, row.amount_cents)
    return maps


def refresh_budget_spending(
    session: Session, period: Union[date, datetime], user_id: str
) -> int:
    """Rebuild the precomputed spend rows one user sees for one month."""
    period = normalize_period(period)
    household_id = HouseholdService(session).get_active_household_id(user_id)
    bounds = month_bounds(period)
    rows = SqlTransactionStore(session).fetch_expense_projections(
        bounds.start, bounds.end, TransactionScope(user_id, household_id)
    )
    maps = fold_expense_rows(rows)

    session.execute(
        delete(BudgetSpending).where(
            BudgetSpending.period == period, BudgetSpending.user_id == user_id
        )
    )
    entries = maps.entries()
    for scope_key, entry in entries.items():
        session.add(
            BudgetSpending(
                period=period,
                user_id=user_id,
                scope_key=scope_key,
                category_id=entry.category_id,
                subcategory_id=entry.subcategory_id,
                actual_spend_cents=entry.actual_spend_cents,
                transaction_count=entry.transaction_count,
            )
        )
    session.flush()
    return len(entries)


def rebuild_budget_spending(session: Session, period: Union[date, datetime]) -> int:
    period = normalize_period(period)
    bounds = month_bounds(period)
    user_ids = set(
        SqlTransactionStore(session).user_ids_with_expenses(bounds.start, bounds.end)
    )
    user_ids.update(HouseholdService(session).active_member_ids())
    user_ids.update(
        session.scalars(
            select(Budget.user_id)
            .where(Budget.period == period, Budget.deleted_at.is_(None))
            .distinct()
        ).all()
    )
    for user_id in sorted(user_ids):
        refresh_budget_spending(session, period, user_id)
    session.commit()
    return len(user_ids)


@dataclass
class BudgetView:
    budget: Budget
    category: Optional[Category]
    subcategory: Optional[Subcategory]
    actual_spend_cents: int


class OwnershipGuard:
    def __init__(self, budgets: BudgetStore, user_id: Optional[str]) -> None:
        self.budgets = budgets
        self.user_id = user_id

    def require_budget_ownership(self, budget_id: str) -> Budget:
        if not self.user_id:
            raise NotAuthenticated("Unauthorized")
        budget = self.budgets.find_by_id_including_deleted(budget_id)
        if budget is None:
            raise BudgetNotFound("Budget not found")
        if budget.user_id != self.user_id:
            logger.warning(
                f"ownership_violation: resource=budget id={budget_id} "
                f"user_id={self.user_id}"
            )
            raise BudgetAccessDenied(
                "You don't have permission to access this budget"
            )
        return budget


class BudgetService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[str] = None,
        *,
        budgets: Optional[BudgetStore] = None,
        categories: Optional[CategoryStore] = None,
        transactions: Optional[TransactionStore] = None,
        households: Optional[HouseholdService] = None,
        invalidator: Optional[CacheInvalidator] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.budgets = budgets or SqlBudgetStore(session)
        self.categories = categories or SqlCategoryStore(session)
        self.transactions = transactions or SqlTransactionStore(session)
        self.households = households or HouseholdService(session)
        self.invalidator = invalidator or NullInvalidator()
        self.guard = OwnershipGuard(self.budgets, user_id)

    def _is_visible(self, budget: Budget, household_id: Optional[str]) -> bool:
        if household_id and budget.household_id == household_id:
            return True
        if budget.user_id == self.user_id:
            if household_id:
                # Rows tied to another household are stale; skip them.
                return budget.household_id is None
            return True
        return False

    def get_budgets(self, period: Union[date, datetime]) -> list[BudgetView]:
        if not self.user_id:
            return []
        period = normalize_period(period)
        household_id = self.households.get_active_household_id(self.user_id)

        rows = self.budgets.find_all_by_period(period)
        visible = [row for row in rows if self._is_visible(row, household_id)]
        if not visible:
            return []

        categories_by_id, subcategories_by_id = self._display_lookups(visible)
        spend = self._spend_maps(period, household_id)
        return [
            BudgetView(
                budget=row,
                category=categories_by_id.get(row.category_id),
                subcategory=(
                    subcategories_by_id.get(row.subcategory_id)
                    if row.subcategory_id
                    else None
                ),
                actual_spend_cents=spend.spend_for(row),
            )
            for row in visible
        ]

    def get_budget(self, budget_id: str) -> Optional[BudgetView]:
        if not self.user_id:
            return None
        row = self.budgets.find_by_id(budget_id)
        if row is None:
            return None
        household_id = self.households.get_active_household_id(self.user_id)
        if not self._is_visible(row, household_id):
            return None
        category = subcategory = None
        try:
            category = self.categories.find_category_by_id(row.category_id)
            if row.subcategory_id:
                subcategory = self.categories.find_subcategory_by_id(row.subcategory_id)
        except SQLAlchemyError as exc:
            logger.warning(f"budget_display_lookup_failed: budget_id={row.id} error={exc}")
            self._reset_after_failure(exc)
        spend = self._spend_maps(row.period, household_id)
        return BudgetView(
            budget=row,
            category=category,
            subcategory=subcategory,
            actual_spend_cents=spend.spend_for(row),
        )

    def _display_lookups(
        self, rows: list[Budget]
    ) -> tuple[dict[str, Category], dict[str, Subcategory]]:
        category_ids = sorted({row.category_id for row in rows if row.category_id})
        subcategory_ids = sorted(
            {row.subcategory_id for row in rows if row.subcategory_id}
        )

        categories: list[Category] = []
        subcategories: list[Subcategory] = []
        if category_ids:
            try:
                categories = self.categories.find_categories_by_ids(category_ids)
            except SQLAlchemyError as exc:
                logger.warning(f"budget_category_lookup_failed: error={exc}")
                self._reset_after_failure(exc)
        if subcategory_ids:
            try:
                subcategories = self.categories.find_subcategories_by_ids(
                    subcategory_ids
                )
            except SQLAlchemyError as exc:
                logger.warning(f"budget_subcategory_lookup_failed: error={exc}")
                self._reset_after_failure(exc)
        return (
            {c.id: c for c in categories},
            {s.id: s for s in subcategories},
        )

    def _spend_maps(self, period: date, household_id: Optional[str]) -> SpendMaps:
        try:
            spending = self.budgets.get_budget_spending_by_period(period, self.user_id)
        except Exception as exc:
            logger.debug(
                f"budget_spend: aggregate unavailable, scanning transactions "
                f"period={period.isoformat()} error={exc}"
            )
            self._reset_after_failure(exc)
            return self._scan_spend(period, household_id)

        if spending:
            logger.debug(
                f"budget_spend: using aggregate period={period.isoformat()} "
                f"rows={len(spending)}"
            )
            return SpendMaps.from_aggregate(spending)

        logger.debug(
            f"budget_spend: aggregate empty, scanning transactions "
            f"period={period.isoformat()}"
        )
        return self._scan_spend(period, household_id)

    def _scan_spend(self, period: date, household_id: Optional[str]) -> SpendMaps:
        bounds = month_bounds(period)
        scope = TransactionScope(self.user_id, household_id)
        try:
            if self.transactions.count_expenses(bounds.start, bounds.end, scope) == 0:
                return SpendMaps()
            rows = self.transactions.fetch_expense_projections(
                bounds.start, bounds.end, scope
            )
        except SQLAlchemyError as exc:
            logger.warning(
                f"budget_spend_scan_failed: period={period.isoformat()} error={exc}"
            )
            self._reset_after_failure(exc)
            return SpendMaps()
        return fold_expense_rows(rows)

    def _reset_after_failure(self, exc: Exception) -> None:
        # PostgreSQL aborts the whole transaction after a failed statement;
        # later reads need a fresh one. Budget rows reload on next access.
        if isinstance(exc, SQLAlchemyError):
            self.session.rollback()

    def _check_scope(self, category_id: str, subcategory_id: Optional[str]) -> None:
        category = self.categories.find_category_by_id(category_id)
        if not category or category.archived_at is not None:
            raise BudgetValidationError("Category not found")
        if category.type != TransactionType.expense:
            raise BudgetValidationError("Budgets can only be set for expense categories")
        if subcategory_id:
            subcategory = self.categories.find_subcategory_by_id(subcategory_id)
            if not subcategory or subcategory.category_id != category_id:
                raise BudgetValidationError("Subcategory does not belong to category")

    def create_budget(self, data: BudgetIn) -> Budget:
        if data.amount_cents <= 0:
            raise BudgetValidationError("Budget amount must be greater than zero")
        if not data.category_id:
            raise BudgetValidationError("Budget category is required")
        if not self.user_id:
            raise NotAuthenticated("Unauthorized")

        period = normalize_period(data.period)
        household_id = (
            self.households.get_active_household_id(self.user_id)
            if data.shared
            else None
        )
        self._check_scope(data.category_id, data.subcategory_id)

        if self.budgets.exists_for_period(
            period, data.category_id, data.subcategory_id, self.user_id, household_id
        ):
            raise BudgetConflict(DUPLICATE_BUDGET_MESSAGE)

        budget = Budget(
            id=new_id(),
            period=period,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            subcategory_id=data.subcategory_id,
            user_id=self.user_id,
            household_id=household_id,
            is_recurring=data.is_recurring,
            note=data.note,
            scope_key=budget_scope_key(data.category_id, data.subcategory_id),
            owner_key=budget_owner_key(self.user_id, household_id),
        )
        try:
            budget = self.budgets.create(budget)
        except DuplicateBudgetSlot as exc:
            raise BudgetConflict(DUPLICATE_BUDGET_MESSAGE) from exc

        logger.info(
            f"budget_created: id={budget.id} period={period.isoformat()} "
            f"scope={budget.scope_key} owner={budget.owner_key}"
        )
        self.invalidator.invalidate(
            InvalidationScope(period, self.user_id, household_id)
        )
        return budget

    def update_budget(self, budget_id: str, data: BudgetUpdateIn) -> Budget:
        if data.amount_cents <= 0:
            raise BudgetValidationError("Budget amount must be greater than zero")
        self.guard.require_budget_ownership(budget_id)

        changes: dict[str, object] = {"amount_cents": data.amount_cents}
        if "note" in data.model_fields_set:
            changes["note"] = data.note
        budget = self.budgets.update(budget_id, changes)
        if budget is None:
            raise BudgetNotFound("Budget not found")

        self.invalidator.invalidate(
            InvalidationScope(budget.period, budget.user_id, budget.household_id)
        )
        return budget

    def delete_budget(self, budget_id: str) -> None:
        budget = self.guard.require_budget_ownership(budget_id)
        self.budgets.delete(budget_id)
        logger.info(f"budget_deleted: id={budget_id}")
        self.invalidator.invalidate(
            InvalidationScope(budget.period, budget.user_id, budget.household_id)
        )

    def copy_recurring_budgets(
        self,
        source_period: Union[date, datetime],
        target_period: Optional[Union[date, datetime]] = None,
    ) -> list[Budget]:
        """Copy the caller's recurring budgets into another month.

        Slots already taken in the target month are skipped.
        """
        if not self.user_id:
            raise NotAuthenticated("Unauthorized")
        source = normalize_period(source_period)
        target = (
            normalize_period(target_period) if target_period else next_period(source)
        )
        if source == target:
            raise BudgetValidationError("Target period must differ from source period")

        household_id = self.households.get_active_household_id(self.user_id)
        recurring = [
            row
            for row in self.budgets.find_all_by_period(source)
            if row.is_recurring
            and row.user_id == self.user_id
            and self._is_visible(row, household_id)
        ]

        created: list[Budget] = []
        for row in recurring:
            if self.budgets.exists_for_period(
                target, row.category_id, row.subcategory_id, self.user_id, row.household_id
            ):
                continue
            clone = Budget(
                id=new_id(),
                period=target,
                amount_cents=row.amount_cents,
                category_id=row.category_id,
                subcategory_id=row.subcategory_id,
                user_id=self.user_id,
                household_id=row.household_id,
                is_recurring=True,
                note=row.note,
                scope_key=row.scope_key,
                owner_key=row.owner_key,
            )
            try:
                created.append(self.budgets.create(clone))
            except DuplicateBudgetSlot:
                logger.info(
                    f"budget_copy_skipped: scope={row.scope_key} "
                    f"period={target.isoformat()}"
                )

        logger.info(
            f"budget_copy: source={source.isoformat()} target={target.isoformat()} "
            f"created={len(created)} candidates={len(recurring)}"
        )
        if created:
            self.invalidator.invalidate(
                InvalidationScope(target, self.user_id, household_id)
            )
        return created
