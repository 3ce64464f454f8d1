from datetime import date

import pytest

from categorization import CategorizationEngine, normalize
from models import Category, Transaction, TransactionType
from schemas import TransactionIn
from services import TransactionService


@pytest.fixture
def categories(session):
    rows = {
        "Alimentação": Category(user_id=1, name="Alimentação", type=TransactionType.expense),
        "Saúde": Category(user_id=1, name="Saúde", type=TransactionType.expense),
        "Lazer": Category(user_id=1, name="Lazer", type=TransactionType.expense),
        "Academia": Category(user_id=1, name="Academia", type=TransactionType.expense),
        "Salário": Category(user_id=1, name="Salário", type=TransactionType.income),
    }
    session.add_all(rows.values())
    session.commit()
    return rows


def _txn(session, description: str, type=TransactionType.expense, **fields) -> Transaction:
    txn = Transaction(
        user_id=1,
        amount_cents=fields.pop("amount_cents", 4590),
        type=type,
        description=description,
        date=fields.pop("date", date(2024, 3, 1)),
        **fields,
    )
    session.add(txn)
    session.flush()
    return txn


def test_normalize_strips_accents_and_case():
    assert normalize("Farmácia São João") == "farmacia sao joao"
    assert normalize(None) == ""


def test_keyword_rule_applies_above_threshold(session, categories):
    txn = _txn(session, "Pedido iFood")

    applied = CategorizationEngine(session).categorize_transaction(txn.id, 1)

    assert applied is True
    assert txn.category_id == categories["Alimentação"].id
    assert txn.auto_categorized is True
    assert txn.confidence_score == pytest.approx(0.9)


def test_accented_keywords_match_plain_descriptions(session, categories):
    result = CategorizationEngine(session).categorize(
        1, "FARMACIA PAGUE MENOS", 2000, TransactionType.expense
    )
    assert result.category_id == categories["Saúde"].id
    assert result.confidence == pytest.approx(0.9)


def test_income_rule_only_matches_income(session, categories):
    engine = CategorizationEngine(session)
    income = engine.categorize(1, "Salário março", 500000, TransactionType.income)
    expense = engine.categorize(1, "Salário março", 500000, TransactionType.expense)
    assert income.category_id == categories["Salário"].id
    assert expense.category_id is None


def test_rule_without_matching_category_is_skipped(session):
    result = CategorizationEngine(session).categorize(
        1, "Pedido iFood", 4590, TransactionType.expense
    )
    assert result.category_id is None
    assert result.confidence == 0.0


def test_no_match_leaves_transaction_uncategorized(session, categories):
    txn = _txn(session, "XPTO 000123")
    assert CategorizationEngine(session).categorize_transaction(txn.id, 1) is False
    assert txn.category_id is None
    assert txn.auto_categorized is False


def test_manual_category_is_never_overwritten(session, categories):
    txn = _txn(session, "Pedido iFood", category_id=categories["Lazer"].id)
    assert CategorizationEngine(session).categorize_transaction(txn.id, 1) is False
    assert txn.category_id == categories["Lazer"].id


def test_history_match_suggests_but_is_not_applied(session, categories):
    academia = categories["Academia"].id
    for day in (1, 2, 3):
        _txn(session, "Smart Fit Mensal", category_id=academia, date=date(2024, 1, day))
    txn = _txn(session, "SMART FIT MENSALIDADE")
    engine = CategorizationEngine(session)

    suggestion = engine.categorize(
        1, txn.description, txn.amount_cents, txn.type, exclude_transaction_id=txn.id
    )
    applied = engine.categorize_transaction(txn.id, 1)

    assert suggestion.category_id == academia
    assert suggestion.confidence == pytest.approx(0.7)
    assert applied is False
    assert txn.category_id is None


def test_other_users_transactions_are_ignored(session, categories):
    txn = _txn(session, "Pedido iFood")
    assert CategorizationEngine(session).categorize_transaction(txn.id, 2) is False


def test_service_auto_categorizes_new_transactions(session, categories):
    txn = TransactionService(session).create(
        TransactionIn(
            amount_cents=3200,
            type=TransactionType.expense,
            description="Drogaria Raia",
            date=date(2024, 3, 4),
        )
    )
    assert txn.category_id == categories["Saúde"].id
    assert txn.auto_categorized is True


def test_service_keeps_explicit_category(session, categories):
    txn = TransactionService(session).create(
        TransactionIn(
            amount_cents=3200,
            type=TransactionType.expense,
            description="Drogaria Raia",
            date=date(2024, 3, 4),
            category_id=categories["Lazer"].id,
        )
    )
    assert txn.category_id == categories["Lazer"].id
    assert txn.auto_categorized is False


def test_service_rejects_category_type_mismatch(session, categories):
    with pytest.raises(ValueError):
        TransactionService(session).create(
            TransactionIn(
                amount_cents=100,
                type=TransactionType.expense,
                description="Bonus",
                date=date(2024, 3, 4),
                category_id=categories["Salário"].id,
            )
        )
