from datetime import date

from budget_display import budget_status
from cache import BudgetListCache, InvalidationScope


def test_budget_status_thresholds() -> None:
    assert budget_status(50_000, 24_575).status == "ok"
    assert budget_status(10_000, 9_000).status == "warning"
    assert budget_status(10_000, 10_000).status == "over"

    over = budget_status(10_000, 12_500)
    assert over.percentage == 125.0
    assert over.remaining_cents == 0

    ok = budget_status(50_000, 24_575)
    assert ok.percentage == 49.15
    assert ok.remaining_cents == 25_425


def test_budget_status_with_zero_amount() -> None:
    status = budget_status(0, 0)
    assert status.percentage == 0.0
    assert status.status == "over"


def test_cache_expires_and_invalidates_whole_period() -> None:
    now = [100.0]
    cache: BudgetListCache[list[str]] = BudgetListCache(ttl_secs=30, clock=lambda: now[0])
    march, april = date(2025, 3, 1), date(2025, 4, 1)

    cache.put("alice", march, ["a"])
    cache.put("bob", march, ["b"])
    cache.put("alice", april, ["c"])
    assert cache.get("alice", march) == ["a"]

    cache.invalidate(InvalidationScope(march, "alice", "home"))
    assert cache.get("alice", march) is None
    assert cache.get("bob", march) is None
    assert cache.get("alice", april) == ["c"]

    now[0] += 31
    assert cache.get("alice", april) is None


def test_listing_computed_before_a_mutation_is_not_cached() -> None:
    cache: BudgetListCache[list[str]] = BudgetListCache(ttl_secs=30)
    march = date(2025, 3, 1)

    before = cache.generation(march)
    cache.invalidate(InvalidationScope(march, "bob"))
    assert cache.put("alice", march, ["stale"], generation=before) is False
    assert cache.get("alice", march) is None

    current = cache.generation(march)
    assert cache.put("alice", march, ["fresh"], generation=current) is True
    assert cache.get("alice", march) == ["fresh"]

    before_clear = cache.generation(date(2025, 4, 1))
    cache.clear()
    assert cache.put("alice", date(2025, 4, 1), ["stale"], generation=before_clear) is False
