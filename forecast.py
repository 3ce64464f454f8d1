from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from errors import InsufficientHistory
from models import Frequency, RecurringTemplate, Transaction, TransactionType
from recurrence import add_months, days_in_month, local_today


logger = logging.getLogger(__name__)

HISTORY_MONTHS = 6
MIN_HISTORY_MONTHS = 2
MAX_MONTHS_AHEAD = 12
CONFIDENCE_DECAY = 0.08
CONFIDENCE_FLOOR = 0.5


@dataclass(frozen=True)
class Projection:
    month: str
    projected_income: int
    projected_expense: int
    projected_balance: int
    cumulative_balance: int
    confidence: float


@dataclass
class CashFlowForecast:
    projections: list[Projection]
    current_balance: int
    average_monthly_income: float
    average_monthly_expense: float
    income_growth_rate: float
    expense_growth_rate: float
    recurring_templates: int
    insights: list[str] = field(default_factory=list)

    @property
    def average_monthly_balance(self) -> float:
        return self.average_monthly_income - self.average_monthly_expense


def _month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def occurrences_in_month(template: RecurringTemplate, month_start: date) -> int:
    """How many times a template lands in the month starting at month_start."""
    dim = days_in_month(month_start.year, month_start.month)
    month_end = month_start.replace(day=dim)
    if template.end_date and template.end_date < month_start:
        return 0
    if template.next_run_date > month_end:
        return 0

    if template.frequency == Frequency.daily:
        return dim
    if template.frequency == Frequency.weekly:
        return math.ceil(dim / 7)
    if template.frequency == Frequency.yearly:
        return 1 if template.next_run_date.month == month_start.month else 0

    step = template.interval or 1
    anchor_day = template.start_date.day if template.start_date else None
    occurrence = template.next_run_date
    while occurrence < month_start:
        occurrence = add_months(occurrence, step, desired_day=anchor_day)
    return 1 if occurrence <= month_end else 0


class ForecastEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def monthly_history(self, user_id: int, today: date) -> list[tuple[str, int, int]]:
        """(month, income, expense) for the trailing window, newest first."""
        since = add_months(today.replace(day=1), -(HISTORY_MONTHS - 1))
        month_key = func.strftime("%Y-%m", Transaction.date).label("month")
        income = func.sum(
            case((Transaction.type == TransactionType.income, Transaction.amount_cents), else_=0)
        )
        expense = func.sum(
            case((Transaction.type == TransactionType.expense, Transaction.amount_cents), else_=0)
        )
        stmt = (
            select(month_key, income, expense)
            .where(
                Transaction.user_id == user_id,
                Transaction.date >= since,
                Transaction.date <= today,
            )
            .group_by(month_key)
            .order_by(month_key.desc())
        )
        return [(m, int(i or 0), int(e or 0)) for m, i, e in self.session.execute(stmt)]

    def current_balance(self, user_id: int) -> int:
        signed = case(
            (Transaction.type == TransactionType.income, Transaction.amount_cents),
            (Transaction.type == TransactionType.expense, -Transaction.amount_cents),
            else_=0,
        )
        total = self.session.execute(
            select(func.coalesce(func.sum(signed), 0)).where(
                Transaction.user_id == user_id
            )
        ).scalar_one()
        return int(total or 0)

    def active_templates(self, user_id: int, today: date) -> list[RecurringTemplate]:
        stmt = select(RecurringTemplate).where(
            RecurringTemplate.user_id == user_id,
            RecurringTemplate.is_active.is_(True),
            or_(
                RecurringTemplate.end_date.is_(None),
                RecurringTemplate.end_date >= today,
            ),
        )
        return list(self.session.scalars(stmt).all())

    def project(
        self, user_id: int, months_ahead: int, today: Optional[date] = None
    ) -> CashFlowForecast:
        if not 1 <= months_ahead <= MAX_MONTHS_AHEAD:
            raise ValueError(f"Months must be between 1 and {MAX_MONTHS_AHEAD}")
        today = today or local_today()

        history = self.monthly_history(user_id, today)
        if len(history) < MIN_HISTORY_MONTHS:
            raise InsufficientHistory(
                "Not enough historical data for projections "
                f"(minimum {MIN_HISTORY_MONTHS} months)"
            )

        n = len(history)
        avg_income = sum(h[1] for h in history) / n
        avg_expense = sum(h[2] for h in history) / n
        income_growth = (history[0][1] - history[-1][1]) / n
        expense_growth = (history[0][2] - history[-1][2]) / n

        templates = self.active_templates(user_id, today)
        starting_balance = self.current_balance(user_id)
        cumulative = starting_balance
        first_month = today.replace(day=1)

        projections: list[Projection] = []
        for offset in range(1, months_ahead + 1):
            month_start = add_months(first_month, offset, desired_day=1)
            income_cents = max(0, round(avg_income + income_growth * offset))
            expense_cents = max(0, round(avg_expense + expense_growth * offset))

            for template in templates:
                count = occurrences_in_month(template, month_start)
                if not count:
                    continue
                amount = template.amount_cents * count
                if template.type == TransactionType.income:
                    income_cents += amount
                elif template.type == TransactionType.expense:
                    expense_cents += amount

            balance = income_cents - expense_cents
            cumulative += balance
            projections.append(
                Projection(
                    month=_month_key(month_start),
                    projected_income=income_cents,
                    projected_expense=expense_cents,
                    projected_balance=balance,
                    cumulative_balance=cumulative,
                    confidence=round(
                        max(CONFIDENCE_FLOOR, 1 - offset * CONFIDENCE_DECAY), 2
                    ),
                )
            )

        forecast = CashFlowForecast(
            projections=projections,
            current_balance=starting_balance,
            average_monthly_income=avg_income,
            average_monthly_expense=avg_expense,
            income_growth_rate=income_growth,
            expense_growth_rate=expense_growth,
            recurring_templates=len(templates),
        )
        forecast.insights = derive_insights(forecast)
        logger.info(
            f"forecast: user_id={user_id} months={months_ahead} history_months={n} "
            f"templates={len(templates)}"
        )
        return forecast


def derive_insights(forecast: CashFlowForecast) -> list[str]:
    insights: list[str] = []
    projections = forecast.projections

    negative_months = sum(1 for p in projections if p.projected_balance < 0)
    if negative_months:
        insights.append(
            f"{negative_months} month(s) with a projected negative balance"
        )

    final_balance = projections[-1].cumulative_balance if projections else 0
    if final_balance < 0:
        insights.append("Cumulative balance is negative at the end of the period")
    elif forecast.current_balance > 0 and final_balance > forecast.current_balance * 2:
        insights.append("Accelerated balance growth projected")

    if forecast.income_growth_rate > 0:
        insights.append("Income is trending up")
    elif forecast.income_growth_rate < 0:
        insights.append("Income is trending down")

    if forecast.expense_growth_rate > forecast.average_monthly_income * 0.01:
        insights.append("Expenses are growing faster than income")
    return insights
