from datetime import date

from sqlalchemy.orm import Session

from database import Base, create_db_engine
from models import Budget, budget_owner_key, budget_scope_key
from schemas import BudgetIn, CategoryIn
from services import BudgetService, CategoryService, HouseholdService


def make_session() -> Session:
    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine, expire_on_commit=False)


def seed(session: Session) -> str:
    categories = CategoryService(session)
    categories.create(CategoryIn(name="Groceries"), category_id="groceries")
    categories.create(CategoryIn(name="Fun"), category_id="fun")
    households = HouseholdService(session)
    home = households.create("Home", "alice")
    households.add_member(home.id, "bob")
    return home.id


def test_household_budget_shared_personal_budget_private() -> None:
    session = make_session()
    home_id = seed(session)
    alice = BudgetService(session, "alice")
    shared = alice.create_budget(
        BudgetIn(period=date(2025, 3, 1), amount_cents=40_000, category_id="groceries")
    )
    personal = alice.create_budget(
        BudgetIn(
            period=date(2025, 3, 1),
            amount_cents=8_000,
            category_id="fun",
            shared=False,
        )
    )
    assert shared.household_id == home_id
    assert personal.household_id is None

    alice_ids = {v.budget.id for v in alice.get_budgets(date(2025, 3, 1))}
    bob_ids = {
        v.budget.id for v in BudgetService(session, "bob").get_budgets(date(2025, 3, 1))
    }

    assert alice_ids == {shared.id, personal.id}
    assert bob_ids == {shared.id}


def test_outsider_sees_no_household_budgets() -> None:
    session = make_session()
    seed(session)
    BudgetService(session, "alice").create_budget(
        BudgetIn(period=date(2025, 3, 1), amount_cents=40_000, category_id="groceries")
    )

    assert BudgetService(session, "carol").get_budgets(date(2025, 3, 1)) == []


def test_own_budget_from_another_household_is_hidden() -> None:
    session = make_session()
    home_id = seed(session)
    old = HouseholdService(session).create("Old flat", "dave")
    session.add(
        Budget(
            period=date(2025, 3, 1),
            amount_cents=1_000,
            category_id="groceries",
            user_id="alice",
            household_id=old.id,
            scope_key=budget_scope_key("groceries", None),
            owner_key=budget_owner_key("alice", old.id),
        )
    )
    session.commit()

    views = BudgetService(session, "alice").get_budgets(date(2025, 3, 1))
    assert views == []
    assert HouseholdService(session).get_active_household_id("alice") == home_id


def test_user_without_household_sees_all_own_budgets() -> None:
    session = make_session()
    CategoryService(session).create(CategoryIn(name="Groceries"), category_id="groceries")
    svc = BudgetService(session, "erin")
    created = svc.create_budget(
        BudgetIn(period=date(2025, 3, 1), amount_cents=2_500, category_id="groceries")
    )

    views = svc.get_budgets(date(2025, 3, 1))
    assert [v.budget.id for v in views] == [created.id]
    assert created.household_id is None


def test_budgets_listed_by_amount_descending() -> None:
    session = make_session()
    seed(session)
    alice = BudgetService(session, "alice")
    alice.create_budget(
        BudgetIn(period=date(2025, 3, 1), amount_cents=1_000, category_id="fun")
    )
    alice.create_budget(
        BudgetIn(period=date(2025, 3, 1), amount_cents=9_000, category_id="groceries")
    )

    amounts = [v.budget.amount_cents for v in alice.get_budgets(date(2025, 3, 31))]
    assert amounts == [9_000, 1_000]
