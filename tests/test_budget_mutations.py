from datetime import date, datetime

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from cache import InvalidationScope
from database import Base, create_db_engine
from models import Budget, TransactionType
from schemas import BudgetIn, BudgetUpdateIn, CategoryIn, SubcategoryIn
from services import (
    BudgetAccessDenied,
    BudgetConflict,
    BudgetNotFound,
    BudgetService,
    BudgetValidationError,
    CategoryService,
    HouseholdService,
    NotAuthenticated,
)
from stores import SqlBudgetStore


def make_session() -> Session:
    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine, expire_on_commit=False)


def seed(session: Session) -> None:
    categories = CategoryService(session)
    categories.create(CategoryIn(name="Groceries"), category_id="groceries")
    categories.create(CategoryIn(name="Dining"), category_id="dining")
    categories.create_subcategory(
        SubcategoryIn(category_id="dining", name="Coffee"), subcategory_id="coffee"
    )
    categories.create(CategoryIn(name="Rent"), category_id="rent")
    categories.create_subcategory(
        SubcategoryIn(category_id="rent", name="Deposit"), subcategory_id="deposit"
    )


class RecordingInvalidator:
    def __init__(self) -> None:
        self.scopes: list[InvalidationScope] = []

    def invalidate(self, scope: InvalidationScope) -> None:
        self.scopes.append(scope)


class UntouchableStore:
    def __getattr__(self, name):
        raise AssertionError(f"store.{name} must not be called")


class NoPrecheckStore(SqlBudgetStore):
    def exists_for_period(self, *args, **kwargs) -> bool:
        return False


def groceries(period=date(2025, 3, 1), amount_cents=50_000, **extra) -> BudgetIn:
    return BudgetIn(
        period=period, amount_cents=amount_cents, category_id="groceries", **extra
    )


def test_duplicate_slot_is_rejected() -> None:
    session = make_session()
    seed(session)
    svc = BudgetService(session, "alice")

    svc.create_budget(groceries())
    with pytest.raises(BudgetConflict):
        svc.create_budget(groceries(period=date(2025, 3, 20), amount_cents=1_000))


def test_unique_index_violation_maps_to_conflict() -> None:
    session = make_session()
    seed(session)
    svc = BudgetService(session, "alice", budgets=NoPrecheckStore(session))

    svc.create_budget(groceries())
    with pytest.raises(BudgetConflict):
        svc.create_budget(groceries())

    live = session.scalars(select(Budget).where(Budget.deleted_at.is_(None))).all()
    assert len(live) == 1


def test_household_members_share_one_slot() -> None:
    session = make_session()
    seed(session)
    households = HouseholdService(session)
    home = households.create("Home", "alice")
    households.add_member(home.id, "bob")

    BudgetService(session, "alice").create_budget(groceries())
    with pytest.raises(BudgetConflict):
        BudgetService(session, "bob").create_budget(groceries())

    personal = BudgetService(session, "bob").create_budget(groceries(shared=False))
    assert personal.household_id is None


def test_category_and_subcategory_slots_are_distinct() -> None:
    session = make_session()
    seed(session)
    svc = BudgetService(session, "alice")

    svc.create_budget(
        BudgetIn(period=date(2025, 3, 1), amount_cents=20_000, category_id="dining")
    )
    coffee = svc.create_budget(
        BudgetIn(
            period=date(2025, 3, 1),
            amount_cents=5_000,
            category_id="dining",
            subcategory_id="coffee",
        )
    )
    assert coffee.scope_key == "subcategory:coffee"


def test_deleted_slot_can_be_recreated() -> None:
    session = make_session()
    seed(session)
    svc = BudgetService(session, "alice")
    first = svc.create_budget(groceries())
    svc.delete_budget(first.id)

    second = svc.create_budget(groceries(amount_cents=30_000))
    assert second.id != first.id


@pytest.mark.parametrize("amount_cents", [0, -500])
def test_non_positive_amount_rejected_before_store(amount_cents: int) -> None:
    session = make_session()
    svc = BudgetService(
        session,
        "alice",
        budgets=UntouchableStore(),
        categories=UntouchableStore(),
        households=UntouchableStore(),
    )
    with pytest.raises(BudgetValidationError):
        svc.create_budget(groceries(amount_cents=amount_cents))


def test_missing_category_rejected() -> None:
    session = make_session()
    svc = BudgetService(session, "alice", budgets=UntouchableStore())
    with pytest.raises(BudgetValidationError):
        svc.create_budget(BudgetIn(period=date(2025, 3, 1), amount_cents=100))


def test_unknown_or_mismatched_scope_rejected() -> None:
    session = make_session()
    seed(session)
    svc = BudgetService(session, "alice")

    with pytest.raises(BudgetValidationError):
        svc.create_budget(
            BudgetIn(period=date(2025, 3, 1), amount_cents=100, category_id="nope")
        )
    with pytest.raises(BudgetValidationError):
        svc.create_budget(
            BudgetIn(
                period=date(2025, 3, 1),
                amount_cents=100,
                category_id="dining",
                subcategory_id="deposit",
            )
        )


def test_income_category_cannot_be_budgeted() -> None:
    session = make_session()
    CategoryService(session).create(
        CategoryIn(name="Salary", type=TransactionType.income), category_id="salary"
    )
    with pytest.raises(BudgetValidationError):
        BudgetService(session, "alice").create_budget(
            BudgetIn(period=date(2025, 3, 1), amount_cents=100, category_id="salary")
        )


def test_archived_category_cannot_be_budgeted() -> None:
    session = make_session()
    categories = CategoryService(session, "alice")
    categories.create(CategoryIn(name="Hobbies"), category_id="hobbies")
    categories.create(CategoryIn(name="Travel"), category_id="travel")

    categories.archive("hobbies")

    assert [c.id for c in categories.list_all()] == ["travel"]
    assert {c.id for c in categories.list_all(include_archived=True)} == {
        "hobbies",
        "travel",
    }
    with pytest.raises(BudgetValidationError):
        BudgetService(session, "alice").create_budget(
            BudgetIn(period=date(2025, 3, 1), amount_cents=100, category_id="hobbies")
        )


def test_only_owner_can_archive_category() -> None:
    session = make_session()
    seed(session)
    CategoryService(session, "alice").create(CategoryIn(name="Pets"), category_id="pets")

    with pytest.raises(ValueError):
        CategoryService(session, "bob").archive("pets")
    with pytest.raises(ValueError):
        CategoryService(session, "alice").archive("groceries")
    with pytest.raises(ValueError):
        CategoryService(session, "alice").archive("missing")


def test_create_requires_principal() -> None:
    session = make_session()
    seed(session)
    with pytest.raises(NotAuthenticated):
        BudgetService(session, None).create_budget(groceries())


def test_period_is_normalized_to_first_of_month() -> None:
    session = make_session()
    seed(session)
    svc = BudgetService(session, "alice")

    created = svc.create_budget(groceries(period=datetime(2025, 3, 17, 14, 30)))
    assert created.period == date(2025, 3, 1)

    for query_day in (date(2025, 3, 1), datetime(2025, 3, 31, 23, 59), date(2025, 3, 9)):
        assert [v.budget.id for v in svc.get_budgets(query_day)] == [created.id]
    assert svc.get_budgets(date(2025, 4, 1)) == []


def test_update_changes_amount_and_note() -> None:
    session = make_session()
    seed(session)
    svc = BudgetService(session, "alice")
    created = svc.create_budget(groceries(note="weekly shop"))

    updated = svc.update_budget(created.id, BudgetUpdateIn(amount_cents=60_000))
    assert updated.amount_cents == 60_000
    assert updated.note == "weekly shop"

    updated = svc.update_budget(
        created.id, BudgetUpdateIn(amount_cents=60_000, note=None)
    )
    assert updated.note is None


def test_update_rejects_non_positive_amount() -> None:
    session = make_session()
    seed(session)
    svc = BudgetService(session, "alice")
    created = svc.create_budget(groceries())

    with pytest.raises(BudgetValidationError):
        svc.update_budget(created.id, BudgetUpdateIn(amount_cents=0))


def test_other_user_cannot_update_or_delete() -> None:
    session = make_session()
    seed(session)
    created = BudgetService(session, "alice").create_budget(groceries())
    mallory = BudgetService(session, "mallory")

    with pytest.raises(BudgetAccessDenied):
        mallory.update_budget(created.id, BudgetUpdateIn(amount_cents=1))
    with pytest.raises(BudgetAccessDenied):
        mallory.delete_budget(created.id)

    session.expire_all()
    row = session.get(Budget, created.id)
    assert row.amount_cents == 50_000
    assert row.deleted_at is None


def test_guard_distinguishes_missing_and_anonymous() -> None:
    session = make_session()
    seed(session)
    created = BudgetService(session, "alice").create_budget(groceries())

    with pytest.raises(BudgetNotFound):
        BudgetService(session, "alice").delete_budget("does-not-exist")
    with pytest.raises(NotAuthenticated):
        BudgetService(session, None).delete_budget(created.id)


def test_delete_is_soft_and_repeatable() -> None:
    session = make_session()
    seed(session)
    svc = BudgetService(session, "alice")
    created = svc.create_budget(groceries())

    svc.delete_budget(created.id)
    session.expire_all()
    deleted_at = session.get(Budget, created.id).deleted_at
    assert deleted_at is not None

    svc.delete_budget(created.id)
    session.expire_all()
    assert session.get(Budget, created.id).deleted_at == deleted_at
    assert svc.get_budgets(date(2025, 3, 1)) == []
    assert svc.get_budget(created.id) is None

    with pytest.raises(BudgetNotFound):
        svc.update_budget(created.id, BudgetUpdateIn(amount_cents=10))


def test_mutations_invalidate_cache_scope() -> None:
    session = make_session()
    seed(session)
    invalidator = RecordingInvalidator()
    svc = BudgetService(session, "alice", invalidator=invalidator)

    created = svc.create_budget(groceries(period=date(2025, 3, 14)))
    svc.update_budget(created.id, BudgetUpdateIn(amount_cents=1_000))
    svc.delete_budget(created.id)

    assert invalidator.scopes == [
        InvalidationScope(date(2025, 3, 1), "alice", None),
        InvalidationScope(date(2025, 3, 1), "alice", None),
        InvalidationScope(date(2025, 3, 1), "alice", None),
    ]


def test_failed_create_does_not_invalidate() -> None:
    session = make_session()
    seed(session)
    invalidator = RecordingInvalidator()
    svc = BudgetService(session, "alice", invalidator=invalidator)
    svc.create_budget(groceries())
    invalidator.scopes.clear()

    with pytest.raises(BudgetConflict):
        svc.create_budget(groceries())
    assert invalidator.scopes == []
