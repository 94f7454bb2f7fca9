from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models import (
    Budget,
    BudgetCategoryClaim,
    BudgetPeriod,
    Category,
    Transaction,
    budget_categories,
)
from periods import Window, generate_windows, resolve_progress_range, window_index_for
from schemas import BudgetIn, BudgetUpdateIn, CategoryIn, TransactionIn


logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = (
    "One or more categories are already assigned to another budget with the same period"
)


class CategoryNotFound(ValueError):
    pass


class TransactionNotFound(ValueError):
    pass


class BudgetNotFound(ValueError):
    pass


class BudgetValidationError(ValueError):
    pass


class CategoryConflictError(ValueError):
    def __init__(self, detail: str = CONFLICT_MESSAGE) -> None:
        super().__init__(detail)


class AggregationError(RuntimeError):
    pass


def get_current_workspace_id() -> int:
    return 1


def get_current_user_id() -> int:
    return 1


def percent_used(spent_cents: int, amount_cents: int) -> float:
    """``spent / amount * 100`` rounded half away from zero to two places."""
    if amount_cents <= 0:
        return 0.0
    ratio = Decimal(spent_cents) * 100 / Decimal(amount_cents)
    return float(ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class BudgetProgress:
    budget_id: int
    name: Optional[str]
    amount_cents: int
    period: BudgetPeriod
    period_start: date
    period_end: date
    spent_cents: int
    remaining_cents: int
    percent_used: float
    categories: list[Category]


def assemble_progress(
    budget: Budget,
    windows: Sequence[Window],
    spent_by_window: dict[int, int],
) -> list[BudgetProgress]:
    progress: list[BudgetProgress] = []
    for index, window in enumerate(windows):
        spent = spent_by_window.get(index, 0)
        progress.append(
            BudgetProgress(
                budget_id=budget.id,
                name=budget.name,
                amount_cents=budget.amount_cents,
                period=budget.period,
                period_start=window.start,
                period_end=window.end,
                spent_cents=spent,
                remaining_cents=budget.amount_cents - spent,
                percent_used=percent_used(spent, budget.amount_cents),
                categories=list(budget.categories),
            )
        )
    return progress


class CategoryService:
    def __init__(
        self,
        session: Session,
        workspace_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.workspace_id = workspace_id or get_current_workspace_id()
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.workspace_id == self.workspace_id)
            .order_by(Category.type, Category.parent_id.is_not(None), Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.workspace_id != self.workspace_id:
            raise CategoryNotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        category_type = data.type
        if data.parent_id is not None:
            parent = self.get(data.parent_id)
            if parent.parent_id is not None:
                raise ValueError(
                    "Cannot nest under a subcategory. Only one level of nesting is allowed."
                )
            category_type = parent.type

        existing = self.session.scalar(
            select(Category).where(
                Category.workspace_id == self.workspace_id,
                Category.parent_id.is_(None)
                if data.parent_id is None
                else Category.parent_id == data.parent_id,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")

        category = Category(
            workspace_id=self.workspace_id,
            user_id=self.user_id,
            name=data.name.strip(),
            type=category_type,
            parent_id=data.parent_id,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def ensure_exist(self, category_ids: Iterable[int]) -> list[Category]:
        wanted = set(category_ids)
        if not wanted:
            return []
        found = self.session.scalars(
            select(Category)
            .where(
                Category.workspace_id == self.workspace_id,
                Category.id.in_(sorted(wanted)),
            )
            .order_by(Category.id)
        ).all()
        missing = wanted - {c.id for c in found}
        if missing:
            raise CategoryNotFound(
                "Category not found: " + ", ".join(str(i) for i in sorted(missing))
            )
        return found

    def expand_with_children(self, category_ids: Iterable[int]) -> set[int]:
        """Return ``category_ids`` plus the ids of their direct subcategories."""
        base = set(category_ids)
        if not base:
            return set()
        child_ids = self.session.scalars(
            select(Category.id).where(
                Category.workspace_id == self.workspace_id,
                Category.parent_id.in_(sorted(base)),
            )
        ).all()
        return base | set(child_ids)


class TransactionService:
    def __init__(
        self,
        session: Session,
        workspace_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.workspace_id = workspace_id or get_current_workspace_id()
        self.user_id = user_id or get_current_user_id()

    def create(self, data: TransactionIn) -> Transaction:
        if data.category_id is not None:
            CategoryService(self.session, self.workspace_id).get(data.category_id)
        txn = Transaction(
            workspace_id=self.workspace_id,
            user_id=self.user_id,
            date=data.date,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            is_transfer=data.is_transfer,
            note=data.note,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def list_between(self, start: date, end: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.workspace_id == self.workspace_id,
                Transaction.deleted_at.is_(None),
                Transaction.date >= start,
                Transaction.date < end,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def soft_delete(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if (
            not txn
            or txn.workspace_id != self.workspace_id
            or txn.deleted_at is not None
        ):
            raise TransactionNotFound("Transaction not found")
        txn.deleted_at = datetime.utcnow()
        self.session.commit()


class BudgetService:
    def __init__(
        self,
        session: Session,
        workspace_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.workspace_id = workspace_id or get_current_workspace_id()
        self.user_id = user_id or get_current_user_id()
        self.categories = CategoryService(session, self.workspace_id, self.user_id)

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.workspace_id == self.workspace_id)
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.workspace_id == self.workspace_id, Budget.id == budget_id)
        )
        budget = self.session.scalar(stmt)
        if not budget:
            raise BudgetNotFound("Budget not found")
        return budget

    def assert_no_conflict(
        self,
        category_ids: Iterable[int],
        period: BudgetPeriod,
        exclude_budget_id: Optional[int] = None,
    ) -> set[int]:
        """Fail if another budget of ``period`` already tracks any category.

        Both sides are expanded to include direct subcategories, so a budget on
        a parent category conflicts with one on its child and the other way
        round. Returns the candidate's expanded set.
        """
        expanded = self.categories.expand_with_children(category_ids)

        stmt = select(budget_categories.c.category_id).join(
            Budget, Budget.id == budget_categories.c.budget_id
        ).where(
            Budget.workspace_id == self.workspace_id,
            Budget.period == period,
        )
        if exclude_budget_id is not None:
            stmt = stmt.where(Budget.id != exclude_budget_id)
        taken = self.categories.expand_with_children(self.session.scalars(stmt).all())

        if expanded & taken:
            logger.info(
                f"budget_conflict: workspace={self.workspace_id} period={period.value}"
            )
            raise CategoryConflictError()
        return expanded

    def _write_claims(self, budget: Budget, expanded: set[int]) -> None:
        self.session.execute(
            delete(BudgetCategoryClaim).where(BudgetCategoryClaim.budget_id == budget.id)
        )
        self.session.flush()
        for category_id in sorted(expanded):
            self.session.add(
                BudgetCategoryClaim(
                    budget_id=budget.id,
                    workspace_id=self.workspace_id,
                    period=budget.period,
                    category_id=category_id,
                )
            )
        self.session.flush()

    @staticmethod
    def _is_claim_violation(exc: IntegrityError) -> bool:
        message = str(exc.orig)
        return "budget_category_claims" in message or "uq_budget_claim" in message

    def _flush_claims(self, budget: Budget, expanded: Optional[set[int]]) -> None:
        try:
            self.session.flush()
            if expanded is not None:
                self._write_claims(budget, expanded)
        except IntegrityError as exc:
            self.session.rollback()
            if self._is_claim_violation(exc):
                logger.info(
                    f"budget_conflict: workspace={self.workspace_id} source=constraint"
                )
                raise CategoryConflictError() from exc
            raise

    def create(self, data: BudgetIn) -> Budget:
        categories = self.categories.ensure_exist(data.categories)
        expanded = self.assert_no_conflict(data.categories, data.period)

        budget = Budget(
            workspace_id=self.workspace_id,
            user_id=self.user_id,
            name=data.name,
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            categories=categories,
        )
        self.session.add(budget)
        self._flush_claims(budget, expanded)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(
            f"budget_created: workspace={self.workspace_id} budget={budget.id} "
            f"period={budget.period.value}"
        )
        return budget

    def update(self, budget_id: int, data: BudgetUpdateIn) -> Budget:
        budget = self.get(budget_id)
        changes = data.changes()

        for required in ("amount_cents", "period", "start_date", "categories"):
            if required in changes and changes[required] is None:
                raise BudgetValidationError(f"{required} cannot be cleared")

        start_date = changes.get("start_date", budget.start_date)
        end_date = changes.get("end_date", budget.end_date)
        if end_date is not None and end_date < start_date:
            raise BudgetValidationError("end_date must not be before start_date")

        # Validate everything before touching the instance so a rejected update
        # leaves nothing pending in the session.
        expanded: Optional[set[int]] = None
        new_categories: Optional[list[Category]] = None
        if "categories" in changes or "period" in changes:
            category_ids = changes.get("categories") or [c.id for c in budget.categories]
            if "categories" in changes:
                new_categories = self.categories.ensure_exist(category_ids)
            expanded = self.assert_no_conflict(
                category_ids,
                changes.get("period", budget.period),
                exclude_budget_id=budget.id,
            )

        if new_categories is not None:
            budget.categories = new_categories
        for field in ("name", "amount_cents", "period", "start_date", "end_date"):
            if field in changes:
                setattr(budget, field, changes[field])

        self._flush_claims(budget, expanded)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(
            f"budget_updated: workspace={self.workspace_id} budget={budget.id} "
            f"fields={','.join(sorted(changes))}"
        )
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.execute(
            delete(BudgetCategoryClaim).where(BudgetCategoryClaim.budget_id == budget.id)
        )
        self.session.delete(budget)
        self.session.commit()
        logger.info(f"budget_deleted: workspace={self.workspace_id} budget={budget_id}")

    def aggregate_spent_by_window(
        self,
        category_ids: Iterable[int],
        global_start: date,
        global_end: date,
        windows: Sequence[Window],
    ) -> dict[int, int]:
        stmt = select(Transaction.date, Transaction.amount_cents).where(
            Transaction.workspace_id == self.workspace_id,
            Transaction.category_id.in_(sorted(set(category_ids))),
            Transaction.is_transfer.is_(False),
            Transaction.deleted_at.is_(None),
            Transaction.date >= global_start,
            Transaction.date < global_end,
        )
        try:
            rows = self.session.execute(stmt).all()
        except SQLAlchemyError as exc:
            logger.exception(
                f"budget_progress_aggregation_failed: workspace={self.workspace_id} "
                f"start={global_start} end={global_end}"
            )
            raise AggregationError("Error computing budget progress") from exc

        starts = [w.start for w in windows]
        spent: dict[int, int] = {}
        for row in rows:
            index = window_index_for(windows, row.date, starts)
            if index is None:
                continue
            spent[index] = spent.get(index, 0) + abs(row.amount_cents)
        return spent

    def progress(
        self,
        budget_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
        *,
        today: Optional[date] = None,
    ) -> list[BudgetProgress]:
        budget = self.get(budget_id)
        range_start, range_end = resolve_progress_range(
            budget.start_date, budget.end_date, start, end, today=today
        )
        windows = generate_windows(
            budget.start_date, budget.period, range_start, range_end
        )
        if not windows:
            return []

        try:
            expanded = self.categories.expand_with_children(
                c.id for c in budget.categories
            )
        except SQLAlchemyError as exc:
            logger.exception(
                f"budget_progress_expansion_failed: workspace={self.workspace_id} "
                f"budget={budget.id}"
            )
            raise AggregationError("Error computing budget progress") from exc
        spent = self.aggregate_spent_by_window(
            expanded, windows[0].start, windows[-1].end, windows
        )
        return assemble_progress(budget, windows, spent)
