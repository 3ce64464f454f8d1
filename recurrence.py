import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config import get_settings
from models import Frequency, RecurringTemplate, Transaction


logger = logging.getLogger(__name__)


def local_today(timezone: Optional[str] = None) -> date:
    tz = ZoneInfo(timezone or get_settings().timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day or base.day
    return date(year, month, min(day, days_in_month(year, month)))


def calculate_next_date(template: RecurringTemplate, from_date: date) -> date:
    step = template.interval or 1
    if template.frequency == Frequency.daily:
        return from_date + timedelta(days=step)
    if template.frequency == Frequency.weekly:
        return from_date + timedelta(weeks=step)
    # Month arithmetic is anchored on the start day so a 31st template
    # clamps in short months and returns to the 31st afterwards.
    anchor_day = template.start_date.day if template.start_date else from_date.day
    if template.frequency == Frequency.monthly:
        return add_months(from_date, step, desired_day=anchor_day)
    return add_months(from_date, 12 * step, desired_day=anchor_day)


@dataclass(frozen=True)
class RecurringRunResult:
    processed: int
    total: int


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def due_templates(self, today: date) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .where(
                RecurringTemplate.is_active.is_(True),
                RecurringTemplate.next_run_date <= today,
                or_(
                    RecurringTemplate.end_date.is_(None),
                    RecurringTemplate.end_date >= today,
                ),
            )
            .order_by(RecurringTemplate.next_run_date, RecurringTemplate.id)
        )
        return list(self.session.scalars(stmt).all())

    def process_due(self, today: Optional[date] = None) -> RecurringRunResult:
        """Materialize one occurrence per due template and reschedule it."""
        today = today or local_today()
        templates = self.due_templates(today)
        logger.info(f"recurring_run: due_templates={len(templates)} today={today}")

        processed = 0
        for template in templates:
            template_id = template.id
            try:
                with self.session.begin_nested():
                    occurrence_date = template.next_run_date
                    posted = self._post_occurrence(template, occurrence_date)
                    template.next_run_date = calculate_next_date(
                        template, occurrence_date
                    )
                    self.session.flush()
            except Exception:
                logger.exception(f"recurring_template_failed: template_id={template_id}")
                continue
            if posted:
                processed += 1
            else:
                logger.info(
                    f"recurring_occurrence_exists: template_id={template_id} "
                    f"date={occurrence_date}"
                )

        logger.info(f"recurring_run: processed={processed} total={len(templates)}")
        return RecurringRunResult(processed=processed, total=len(templates))

    def _post_occurrence(self, template: RecurringTemplate, occurrence_date: date) -> bool:
        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.parent_template_id == template.id,
                Transaction.date == occurrence_date,
            )
            .limit(1)
        )
        if self.session.execute(exists_stmt).scalar_one_or_none():
            return False

        txn = Transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            category_id=template.category_id,
            amount_cents=template.amount_cents,
            type=template.type,
            description=template.description,
            date=occurrence_date,
            tags_json=template.tags_json,
            notes=template.notes,
            is_recurring=True,
            parent_template_id=template.id,
        )
        self.session.add(txn)
        self.session.flush()
        return True
