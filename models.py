import json
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    investment = "investment"
    credit_card = "credit_card"
    other = "other"


class ConnectionStatus(str, Enum):
    pending = "pending"
    active = "active"
    error = "error"
    inactive = "inactive"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class TagsMixin:
    tags_json: Mapped[Optional[str]] = mapped_column(Text)

    @property
    def tags(self) -> list[str]:
        if not self.tags_json:
            return []
        try:
            return [str(t) for t in json.loads(self.tags_json) or []]
        except ValueError:
            return []

    @tags.setter
    def tags(self, values: Optional[list[str]]) -> None:
        self.tags_json = json.dumps(list(values)) if values else None


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    color: Mapped[Optional[str]] = mapped_column(String(7))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Connection(Base, TimestampMixin):
    __tablename__ = "connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    institution_id: Mapped[Optional[str]] = mapped_column(String(120))
    institution_name: Mapped[str] = mapped_column(String(120), nullable=False)
    item_id: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    status: Mapped[ConnectionStatus] = mapped_column(
        SAEnum(ConnectionStatus), nullable=False, default=ConnectionStatus.pending
    )
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_connections_status_last_sync", "status", "last_sync_at"),
        Index("ix_connections_user", "user_id"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    bank_name: Mapped[Optional[str]] = mapped_column(String(120))
    external_id: Mapped[Optional[str]] = mapped_column(String(120))
    provider: Mapped[Optional[str]] = mapped_column(String(40))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uq_account_user_external"),
    )


class Transaction(Base, TimestampMixin, TagsMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(120), unique=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    auto_categorized: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    confidence_score: Mapped[Optional[float]] = mapped_column(Float)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    parent_template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_templates.id")
    )

    status: Mapped[Optional[str]] = mapped_column(String(40))
    payment_method: Mapped[Optional[str]] = mapped_column(String(40))
    reference_number: Mapped[Optional[str]] = mapped_column(String(120))
    mcc: Mapped[Optional[str]] = mapped_column(String(10))
    bank_category: Mapped[Optional[str]] = mapped_column(String(120))
    provider_code: Mapped[Optional[str]] = mapped_column(String(120))

    account: Mapped[Optional["Account"]] = relationship(
        "Account", back_populates="transactions"
    )
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    parent_template: Mapped[Optional["RecurringTemplate"]] = relationship(
        "RecurringTemplate", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "parent_template_id",
            "date",
            name="uq_txn_template_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class RecurringTemplate(Base, TimestampMixin, TagsMixin):
    __tablename__ = "recurring_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    next_run_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")
    account: Mapped[Optional["Account"]] = relationship("Account")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="parent_template"
    )

    __table_args__ = (
        CheckConstraint("interval > 0", name="ck_template_interval_positive"),
        CheckConstraint("amount_cents >= 0", name="ck_template_amount_positive"),
        Index("ix_templates_active_next_run", "is_active", "next_run_date"),
    )
