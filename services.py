from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from categorization import CategorizationEngine
from models import Account, Category, RecurringTemplate, Transaction, TransactionType
from reconciliation import clean_tags, clean_text
from schemas import CategoryIn, RecurringTemplateIn, TransactionIn


def get_current_user_id() -> int:
    return 1


def _check_category(
    session: Session, user_id: int, category_id: Optional[int], type: TransactionType
) -> None:
    if category_id is None:
        return
    category = session.get(Category, category_id)
    if not category or category.user_id != user_id:
        raise ValueError("Category not found")
    if category.type != type:
        raise ValueError("Category type mismatch")


def _check_account(session: Session, user_id: int, account_id: Optional[int]) -> None:
    if account_id is None:
        return
    account = session.get(Account, account_id)
    if not account or account.user_id != user_id:
        raise ValueError("Account not found")


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def create(self, data: TransactionIn) -> Transaction:
        """Record a manual transaction.

        Without a category the auto-categorizer gets a chance to pick one.
        """
        _check_category(self.session, self.user_id, data.category_id, data.type)
        _check_account(self.session, self.user_id, data.account_id)
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            type=data.type,
            description=clean_text(data.description, 500),
            date=data.date,
            notes=clean_text(data.notes, 1000) if data.notes else None,
        )
        txn.tags = clean_tags(data.tags)
        self.session.add(txn)
        self.session.flush()
        if txn.category_id is None:
            CategorizationEngine(self.session).categorize_transaction(
                txn.id, self.user_id
            )
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def categorize(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id)
        applied = CategorizationEngine(self.session).categorize_transaction(
            txn.id, self.user_id
        )
        if applied:
            self.session.commit()
        return txn


class RecurringTemplateService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, template_id: int) -> RecurringTemplate:
        template = self.session.get(RecurringTemplate, template_id)
        if not template or template.user_id != self.user_id:
            raise ValueError("Template not found")
        return template

    def list(self) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .options(joinedload(RecurringTemplate.category))
            .where(RecurringTemplate.user_id == self.user_id)
            .order_by(RecurringTemplate.next_run_date, RecurringTemplate.id)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: RecurringTemplateIn) -> RecurringTemplate:
        self._validate(data)
        template = RecurringTemplate(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            type=data.type,
            description=clean_text(data.description, 500),
            frequency=data.frequency,
            interval=data.interval,
            start_date=data.start_date,
            end_date=data.end_date,
            next_run_date=data.start_date,
            notes=clean_text(data.notes, 1000) if data.notes else None,
            is_active=True,
        )
        template.tags = clean_tags(data.tags)
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def update(self, template_id: int, data: RecurringTemplateIn) -> RecurringTemplate:
        template = self.get(template_id)
        self._validate(data)
        schedule_changed = (
            template.start_date != data.start_date
            or template.frequency != data.frequency
            or template.interval != data.interval
        )
        template.account_id = data.account_id
        template.category_id = data.category_id
        template.amount_cents = data.amount_cents
        template.type = data.type
        template.description = clean_text(data.description, 500)
        template.frequency = data.frequency
        template.interval = data.interval
        template.start_date = data.start_date
        template.end_date = data.end_date
        template.notes = clean_text(data.notes, 1000) if data.notes else None
        template.tags = clean_tags(data.tags)
        if schedule_changed:
            template.next_run_date = data.start_date
        self.session.commit()
        return template

    def toggle(self, template_id: int) -> RecurringTemplate:
        template = self.get(template_id)
        template.is_active = not template.is_active
        self.session.commit()
        return template

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        # Posted occurrences stay in the ledger.
        self.session.execute(
            update(Transaction)
            .where(Transaction.parent_template_id == template.id)
            .values(parent_template_id=None)
        )
        self.session.delete(template)
        self.session.commit()

    def _validate(self, data: RecurringTemplateIn) -> None:
        if data.end_date and data.end_date < data.start_date:
            raise ValueError("End date must be on or after start date")
        _check_category(self.session, self.user_id, data.category_id, data.type)
        _check_account(self.session, self.user_id, data.account_id)
