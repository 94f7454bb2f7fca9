from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from models import BudgetPeriod, CategoryType
from periods import generate_windows
from schemas import BudgetIn, CategoryIn, TransactionIn
from services import (
    AggregationError,
    BudgetNotFound,
    BudgetService,
    CategoryService,
    TransactionService,
    percent_used,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _spend(session: Session, category_id, day: date, cents: int, **kwargs) -> None:
    TransactionService(session).create(
        TransactionIn(date=day, amount_cents=cents, category_id=category_id, **kwargs)
    )


def test_percent_used_rounding():
    assert percent_used(20_000, 40_000) == 50.0
    assert percent_used(5_000, 40_000) == 12.5
    assert percent_used(1, 3) == 33.33
    assert percent_used(2, 3) == 66.67
    # 0.625 rounds away from zero, not to even.
    assert percent_used(1, 160) == 0.63
    assert percent_used(999, 0) == 0.0


def test_monthly_scenario_two_windows():
    with _session() as session:
        groceries = CategoryService(session).create(CategoryIn(name="Groceries"))
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(
                name="Food",
                amount=Decimal("400"),
                period=BudgetPeriod.monthly,
                start_date=date(2024, 1, 1),
                categories=[groceries.id],
            )
        )
        _spend(session, groceries.id, date(2024, 1, 5), -7_550)
        _spend(session, groceries.id, date(2024, 1, 20), -12_450)
        _spend(session, groceries.id, date(2024, 2, 10), -5_000)

        progress = budgets.progress(budget.id, date(2024, 1, 1), date(2024, 3, 1))

        assert len(progress) == 2
        january, february = progress
        assert (january.period_start, january.period_end) == (
            date(2024, 1, 1),
            date(2024, 2, 1),
        )
        assert january.spent_cents == 20_000
        assert january.remaining_cents == 20_000
        assert january.percent_used == 50.0
        assert february.spent_cents == 5_000
        assert february.remaining_cents == 35_000
        assert february.percent_used == 12.5
        assert february.budget_id == budget.id
        assert february.name == "Food"
        assert [c.id for c in february.categories] == [groceries.id]


def test_window_without_spend_reports_zero():
    with _session() as session:
        rent = CategoryService(session).create(CategoryIn(name="Rent"))
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(
                amount_cents=100_000,
                period=BudgetPeriod.monthly,
                start_date=date(2024, 1, 1),
                categories=[rent.id],
            )
        )
        _spend(session, rent.id, date(2024, 2, 1), -100_000)

        progress = budgets.progress(budget.id, date(2024, 1, 1), date(2024, 3, 1))

        assert [p.spent_cents for p in progress] == [0, 100_000]
        assert progress[0].remaining_cents == 100_000
        assert progress[0].percent_used == 0.0
        assert progress[1].remaining_cents == 0


def test_overspend_goes_negative():
    with _session() as session:
        fun = CategoryService(session).create(CategoryIn(name="Fun"))
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(
                amount_cents=10_000,
                period=BudgetPeriod.weekly,
                start_date=date(2024, 1, 1),
                categories=[fun.id],
            )
        )
        _spend(session, fun.id, date(2024, 1, 2), -15_000)

        (week,) = budgets.progress(budget.id, date(2024, 1, 1), date(2024, 1, 8))
        assert week.remaining_cents == -5_000
        assert week.percent_used == 150.0


def test_children_transfers_deleted_and_other_workspaces():
    with _session() as session:
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food"))
        dining = categories.create(CategoryIn(name="Dining", parent_id=food.id))
        travel = categories.create(CategoryIn(name="Travel"))

        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(
                amount_cents=50_000,
                period=BudgetPeriod.monthly,
                start_date=date(2024, 1, 1),
                categories=[food.id],
            )
        )

        _spend(session, food.id, date(2024, 1, 3), -1_000)
        _spend(session, dining.id, date(2024, 1, 4), -2_000)
        # refunds still count by absolute value
        _spend(session, food.id, date(2024, 1, 5), 500)
        _spend(session, food.id, date(2024, 1, 6), -4_000, is_transfer=True)
        _spend(session, travel.id, date(2024, 1, 7), -8_000)
        _spend(session, None, date(2024, 1, 8), -16_000)

        txns = TransactionService(session)
        deleted = txns.create(
            TransactionIn(date=date(2024, 1, 9), amount_cents=-32_000, category_id=food.id)
        )
        txns.soft_delete(deleted.id)

        other = CategoryService(session, workspace_id=2).create(CategoryIn(name="Food"))
        TransactionService(session, workspace_id=2).create(
            TransactionIn(date=date(2024, 1, 10), amount_cents=-64_000, category_id=other.id)
        )

        (january,) = budgets.progress(budget.id, date(2024, 1, 1), date(2024, 2, 1))
        assert january.spent_cents == 3_500


def test_spend_is_conserved_across_windows():
    with _session() as session:
        misc = CategoryService(session).create(CategoryIn(name="Misc"))
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(
                amount_cents=7_500,
                period=BudgetPeriod.weekly,
                start_date=date(2024, 1, 3),
                categories=[misc.id],
            )
        )
        amounts = [-1_234, -999, -5_000, 250, -1, -77_777, -12]
        days = [
            date(2024, 1, 3),
            date(2024, 1, 9),
            date(2024, 1, 10),
            date(2024, 1, 24),
            date(2024, 2, 6),
            date(2024, 2, 7),
            date(2024, 3, 1),
        ]
        for day, cents in zip(days, amounts):
            _spend(session, misc.id, day, cents)

        progress = budgets.progress(budget.id, date(2024, 1, 1), date(2024, 2, 7))
        windows = generate_windows(
            date(2024, 1, 3), BudgetPeriod.weekly, date(2024, 1, 3), date(2024, 2, 7)
        )
        assert [p.period_start for p in progress] == [w.start for w in windows]

        expected = sum(
            abs(cents)
            for day, cents in zip(days, amounts)
            if windows[0].start <= day < windows[-1].end
        )
        assert sum(p.spent_cents for p in progress) == expected
        assert all(p.spent_cents >= 0 for p in progress)


def test_progress_is_idempotent():
    with _session() as session:
        misc = CategoryService(session).create(CategoryIn(name="Misc"))
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(
                amount_cents=1_000,
                period=BudgetPeriod.monthly,
                start_date=date(2024, 1, 15),
                categories=[misc.id],
            )
        )
        _spend(session, misc.id, date(2024, 2, 1), -300)

        first = budgets.progress(budget.id, today=date(2024, 4, 2))
        second = budgets.progress(budget.id, today=date(2024, 4, 2))
        assert first == second
        assert [p.period_start for p in first] == [
            date(2024, 1, 15),
            date(2024, 2, 15),
            date(2024, 3, 15),
        ]


def test_progress_respects_end_date_and_lifetime():
    with _session() as session:
        misc = CategoryService(session).create(CategoryIn(name="Misc"))
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(
                amount_cents=1_000,
                period=BudgetPeriod.monthly,
                start_date=date(2024, 1, 1),
                end_date=date(2024, 3, 1),
                categories=[misc.id],
            )
        )

        progress = budgets.progress(budget.id, today=date(2024, 12, 31))
        # end_date is inclusive, so the window starting on it is reported.
        assert [p.period_start for p in progress] == [
            date(2024, 1, 1),
            date(2024, 2, 1),
            date(2024, 3, 1),
        ]

        assert budgets.progress(budget.id, date(2025, 1, 1), date(2025, 6, 1)) == []
        assert budgets.progress(budget.id, date(2023, 1, 1), date(2023, 6, 1)) == []


def test_progress_for_unknown_or_foreign_budget():
    with _session() as session:
        misc = CategoryService(session).create(CategoryIn(name="Misc"))
        budget = BudgetService(session).create(
            BudgetIn(
                amount_cents=1_000,
                period=BudgetPeriod.monthly,
                start_date=date(2024, 1, 1),
                categories=[misc.id],
            )
        )
        with pytest.raises(BudgetNotFound):
            BudgetService(session).progress(budget.id + 1)
        with pytest.raises(BudgetNotFound):
            BudgetService(session, workspace_id=2).progress(budget.id)


def test_storage_failure_surfaces_as_aggregation_error(monkeypatch):
    with _session() as session:
        misc = CategoryService(session).create(
            CategoryIn(name="Misc", type=CategoryType.expense)
        )
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(
                amount_cents=1_000,
                period=BudgetPeriod.monthly,
                start_date=date(2024, 1, 1),
                categories=[misc.id],
            )
        )

        real_execute = session.execute

        def broken_execute(statement, *args, **kwargs):
            if "transactions" in str(statement):
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return real_execute(statement, *args, **kwargs)

        monkeypatch.setattr(session, "execute", broken_execute)
        with pytest.raises(AggregationError):
            budgets.progress(budget.id, date(2024, 1, 1), date(2024, 2, 1))
