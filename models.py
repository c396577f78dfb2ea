from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class EventKind(str, Enum):
    checkpoint = "checkpoint"
    debit = "debit"
    credit = "credit"


class ExpenseCategory(str, Enum):
    food = "food"
    daily = "daily"
    transport = "transport"
    entertainment = "entertainment"
    utility = "utility"
    medical = "medical"
    other = "other"


class IncomeCategory(str, Enum):
    salary = "salary"
    bonus = "bonus"
    investment = "investment"
    transfer = "transfer"
    other = "other"


class BalanceChangeKind(str, Enum):
    checkpoint = "checkpoint"
    debit = "debit"
    credit = "credit"
    reconcile = "reconcile"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Circle(Base, TimestampMixin):
    __tablename__ = "circles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="JPY")
    current_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    entries: Mapped[list["LedgerEntry"]] = relationship(
        "LedgerEntry", back_populates="circle"
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("circle_id", "name", name="uq_tag_circle_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    circle_id: Mapped[int] = mapped_column(ForeignKey("circles.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    entries: Mapped[list["LedgerEntry"]] = relationship(
        "LedgerEntry", secondary="entry_tags", back_populates="tags"
    )


entry_tags = Table(
    "entry_tags",
    Base.metadata,
    Column("entry_id", Integer, ForeignKey("ledger_entries.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class LedgerEntry(Base, TimestampMixin):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    circle_id: Mapped[int] = mapped_column(ForeignKey("circles.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    circle: Mapped["Circle"] = relationship("Circle", back_populates="entries")
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="entry_tags", back_populates="entries", order_by="Tag.id"
    )

    __mapper_args__ = {"polymorphic_on": "kind"}
    __table_args__ = (
        Index("ix_entries_circle_occurred", "circle_id", "occurred_at", "id"),
        Index("ix_entries_circle_kind_occurred", "circle_id", "kind", "occurred_at"),
        CheckConstraint(
            "kind = 'checkpoint' OR amount > 0", name="ck_entries_flow_amount_positive"
        ),
    )


class CheckpointEntry(LedgerEntry):
    diff_from_previous: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __mapper_args__ = {
        "polymorphic_identity": EventKind.checkpoint.value,
        "polymorphic_load": "inline",
    }


class DebitEntry(LedgerEntry):
    expense_category: Mapped[Optional[ExpenseCategory]] = mapped_column(
        SAEnum(ExpenseCategory), nullable=True
    )
    place: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    __mapper_args__ = {
        "polymorphic_identity": EventKind.debit.value,
        "polymorphic_load": "inline",
    }


class CreditEntry(LedgerEntry):
    income_category: Mapped[Optional[IncomeCategory]] = mapped_column(
        SAEnum(IncomeCategory), nullable=True
    )
    source: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    __mapper_args__ = {
        "polymorphic_identity": EventKind.credit.value,
        "polymorphic_load": "inline",
    }


class MonthlyAggregate(Base, TimestampMixin):
    __tablename__ = "monthly_aggregates"
    __table_args__ = (
        UniqueConstraint("circle_id", "year", "month", name="uq_aggregate_circle_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    circle_id: Mapped[int] = mapped_column(ForeignKey("circles.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    expense_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expense_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class BalanceChange(Base):
    __tablename__ = "balance_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    circle_id: Mapped[int] = mapped_column(ForeignKey("circles.id"), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    kind: Mapped[BalanceChangeKind] = mapped_column(
        SAEnum(BalanceChangeKind), nullable=False
    )
    is_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_id: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_balance_changes_circle", "circle_id", "id"),)
