from datetime import timedelta

from models.budget import BudgetCategory, RecurringConfig
from services.budget_service import BudgetService
from services.ledger_engine import LedgerConsistencyEngine
from tests.fakes import FakeBudgetRepository, FakeTransactionRepository, make_budget, now_utc
from utils.errors import NotFoundError, ValidationError


def make_service():
    budgets = FakeBudgetRepository()
    transactions = FakeTransactionRepository()
    return BudgetService(budgets, transactions), budgets, LedgerConsistencyEngine(budgets, transactions)


def test_create_requires_matching_total() -> None:
    service, _, _ = make_service()
    budget = make_budget(limits={"food": 1_000, "transport": 500})
    budget.total_budget = 2_000

    result = service.create(budget)

    assert isinstance(result.error, ValidationError)
    assert result.error.context == {"total_budget": 2_000, "sum_of_limits": 1_500}


def test_create_rejects_bad_definitions() -> None:
    service, _, _ = make_service()
    duplicate = make_budget(limits={"food": 1_000})
    duplicate.categories.append(BudgetCategory(name="Food", limit=0))
    inverted = make_budget(start_date=now_utc(), end_date=now_utc() - timedelta(days=1))
    recurring = make_budget(is_recurring=True, recurring=None)
    threshold = make_budget()
    threshold.categories[0].notifications.threshold = 150

    for budget in (duplicate, inverted, recurring, threshold, make_budget(period="hourly")):
        assert isinstance(service.create(budget).error, ValidationError)


def test_create_starts_with_zero_spend() -> None:
    service, budgets, _ = make_service()
    budget = make_budget()
    budget.categories[0].spent = 500
    budget.total_spent = 500

    created = service.create(budget).value

    assert budgets.stored(created.id).total_spent == 0
    assert budgets.stored(created.id).categories[0].spent == 0


def test_update_keeps_spend_of_surviving_lines() -> None:
    service, budgets, engine = make_service()
    budget = service.create(make_budget(limits={"food": 1_000_000, "transport": 500_000})).value
    engine.apply_delta(1, "food", 300_000)
    engine.apply_delta(1, "transport", 100_000)

    result = service.update(
        budget.id, 1,
        categories=[BudgetCategory(name="food", limit=800_000), BudgetCategory(name="bills", limit=200_000)],
        total_budget=1_000_000,
    )

    assert result.ok
    stored = budgets.stored(budget.id)
    assert [(c.name, c.spent) for c in stored.categories] == [("food", 300_000), ("bills", 0)]
    assert stored.total_spent == 300_000


def test_update_validates_total() -> None:
    service, _, _ = make_service()
    budget = service.create(make_budget()).value
    result = service.update(budget.id, 1, categories=[BudgetCategory(name="food", limit=10)])
    assert isinstance(result.error, ValidationError)
    assert isinstance(service.update(999, 1, name="x").error, NotFoundError)


def test_set_category_limit() -> None:
    service, budgets, _ = make_service()
    assert isinstance(service.set_category_limit(1, "food", 1_000).error, NotFoundError)

    budget = service.create(make_budget(limits={"food": 1_000_000})).value
    updated = service.set_category_limit(1, "Transport", 250_000).value

    assert updated.find_category("transport").limit == 250_000
    assert updated.total_budget == 1_250_000
    assert budgets.stored(budget.id).total_budget == budgets.stored(budget.id).limits_total()

    service.set_category_limit(1, "food", 500_000)
    assert budgets.stored(budget.id).total_budget == 750_000


def test_summary_alerts_and_rendering() -> None:
    service, _, engine = make_service()
    service.create(make_budget(limits={"food": 100_000, "transport": 100_000}))
    engine.apply_delta(1, "food", 90_000)

    summary = service.summary(1).value[0]
    assert summary["total_spent"] == 90_000
    assert summary["remaining"] == 110_000
    assert summary["categories"][0]["percentage"] == 90.0

    alerts = service.get_alerts(1).value
    assert [(a.type, a.category) for a in alerts] == [("category", "food")]

    text = service.format_summary(1, "id")
    assert "Rp90.000" in text and "food" in text
    remaining = service.format_summary(1, "en", remaining_only=True)
    assert "Remaining: Rp110,000" in remaining
    assert service.format_summary(2, "en").startswith("📭")


def test_summary_text_is_plain_and_keeps_names_verbatim() -> None:
    service, _, _ = make_service()
    service.create(make_budget(name="Dapur_rumah"))

    for language in ("id", "en"):
        text = service.format_summary(1, language)
        assert "💰 Dapur_rumah (" in text
        assert "*" not in text


def test_get_and_delete() -> None:
    service, _, _ = make_service()
    budget = service.create(make_budget()).value
    assert service.get(budget.id, 1).value["budget"].id == budget.id
    assert isinstance(service.get(budget.id, 2).error, NotFoundError)
    assert service.delete(budget.id, 1).ok
    assert isinstance(service.delete(budget.id, 1).error, NotFoundError)


def test_renew_expired_rolls_window_forward() -> None:
    service, budgets, _ = make_service()
    now = now_utc()
    old = make_budget(
        start_date=now - timedelta(days=40), end_date=now - timedelta(days=10),
        is_recurring=True, recurring=RecurringConfig(frequency="monthly"),
    )
    old = service.create(old).value
    budgets.stored(old.id).categories[0].spent = 1_234
    stopped = service.create(make_budget(
        name="Once", start_date=now - timedelta(days=40), end_date=now - timedelta(days=10),
        is_recurring=True, recurring=RecurringConfig(frequency="weekly", auto_renew=False),
    )).value

    created = service.renew_expired(now)

    assert len(created) == 1
    renewed = created[0]
    assert renewed.start_date > old.start_date
    assert renewed.start_date <= now <= renewed.end_date
    assert renewed.categories[0].spent == 0
    assert renewed.total_budget == old.total_budget
    assert budgets.stored(old.id).status == "completed"
    assert budgets.stored(stopped.id).status == "completed"
    assert service.renew_expired(now) == []
