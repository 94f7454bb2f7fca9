from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from models import BudgetPeriod, CategoryType


def decimal_to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.expense
    parent_id: Optional[int] = None


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType
    parent_id: Optional[int] = None


class TransactionIn(BaseModel):
    date: date
    amount_cents: int
    category_id: Optional[int] = None
    is_transfer: bool = False
    note: Optional[str] = Field(default=None, max_length=200)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    amount_cents: int
    category_id: Optional[int] = None
    is_transfer: bool
    note: Optional[str] = None


class _BudgetFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    # Either a decimal ``amount`` or integer ``amount_cents`` may be sent.
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=14, decimal_places=2)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    categories: Optional[list[int]] = Field(default=None, min_length=1)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _truncate_datetime(cls, value):
        if isinstance(value, str) and "T" in value:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        return value

    @field_validator("categories")
    @classmethod
    def _dedupe_categories(cls, value: Optional[list[int]]) -> Optional[list[int]]:
        if value is None:
            return value
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _resolve_amount(self):
        if self.amount is not None and self.amount_cents is not None:
            if decimal_to_cents(self.amount) != self.amount_cents:
                raise ValueError("amount and amount_cents disagree")
        if self.amount is not None and self.amount_cents is None:
            self.amount_cents = decimal_to_cents(self.amount)
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class BudgetIn(_BudgetFields):
    @model_validator(mode="after")
    def _require_create_fields(self):
        missing = [
            name
            for name in ("amount_cents", "period", "start_date", "categories")
            if getattr(self, name) is None
        ]
        if "amount_cents" in missing and self.amount is not None:
            missing.remove("amount_cents")
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")
        return self


class BudgetUpdateIn(_BudgetFields):
    """Partial update; only fields present in the payload are applied."""

    def changes(self) -> dict[str, object]:
        fields = set(self.model_fields_set)
        if "amount" in fields:
            fields.discard("amount")
            fields.add("amount_cents")
        return {name: getattr(self, name) for name in fields}


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: Optional[str] = None
    amount_cents: int
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date] = None
    categories: list[CategoryOut]
    user_id: int
    created_at: datetime
    updated_at: datetime


class BudgetProgressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    budget_id: int
    name: Optional[str] = None
    amount_cents: int
    period: BudgetPeriod
    period_start: date
    period_end: date
    spent_cents: int
    remaining_cents: int
    percent_used: float
    categories: list[CategoryOut]

    # Decimal mirrors of the cent fields, in the same form ``amount`` is sent.
    @computed_field
    @property
    def amount(self) -> Decimal:
        return cents_to_decimal(self.amount_cents)

    @computed_field
    @property
    def spent(self) -> Decimal:
        return cents_to_decimal(self.spent_cents)

    @computed_field
    @property
    def remaining(self) -> Decimal:
        return cents_to_decimal(self.remaining_cents)
