from __future__ import annotations

import logging
import unicodedata
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from rapidfuzz import fuzz
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Category, Transaction, TransactionType


logger = logging.getLogger(__name__)

ACCEPTANCE_THRESHOLD = 0.7
HISTORY_SIMILARITY_THRESHOLD = 0.6
HISTORY_CONFIDENCE = 0.7
HISTORY_SCAN_LIMIT = 1000


def normalize(text: Optional[str]) -> str:
    decomposed = unicodedata.normalize("NFD", (text or "").lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


@dataclass(frozen=True)
class CategorizationRule:
    keywords: tuple[str, ...]
    category_name: str
    type: TransactionType
    confidence: float


@dataclass(frozen=True)
class CategorizationResult:
    category_id: Optional[int]
    confidence: float


NO_MATCH = CategorizationResult(category_id=None, confidence=0.0)

DEFAULT_RULES: tuple[CategorizationRule, ...] = (
    CategorizationRule(
        (
            "restaurante", "ifood", "uber eats", "rappi", "lanchonete", "padaria",
            "mercado", "supermercado", "pão de açúcar", "carrefour",
        ),
        "Alimentação",
        TransactionType.expense,
        0.9,
    ),
    CategorizationRule(
        (
            "uber", "99", "taxi", "combustível", "gasolina", "posto", "ipiranga",
            "shell", "estacionamento",
        ),
        "Transporte",
        TransactionType.expense,
        0.9,
    ),
    CategorizationRule(
        (
            "aluguel", "condomínio", "luz", "água", "gás", "internet", "copel",
            "sanepar", "telefone", "vivo", "claro", "tim",
        ),
        "Moradia",
        TransactionType.expense,
        0.85,
    ),
    CategorizationRule(
        (
            "cinema", "netflix", "spotify", "amazon prime", "disney", "hbo",
            "ingresso", "teatro",
        ),
        "Lazer",
        TransactionType.expense,
        0.85,
    ),
    CategorizationRule(
        (
            "farmácia", "drogaria", "hospital", "clínica", "médico", "dentista",
            "laboratório",
        ),
        "Saúde",
        TransactionType.expense,
        0.9,
    ),
    CategorizationRule(
        ("escola", "faculdade", "curso", "livro", "livraria", "udemy", "coursera"),
        "Educação",
        TransactionType.expense,
        0.85,
    ),
    CategorizationRule(
        (
            "mercado livre", "amazon", "shopee", "magazine luiza", "casas bahia",
            "americanas", "loja",
        ),
        "Compras",
        TransactionType.expense,
        0.8,
    ),
    CategorizationRule(
        (
            "salário", "pagamento", "freelance", "pix recebido",
            "transferência recebida",
        ),
        "Salário",
        TransactionType.income,
        0.9,
    ),
)


class CategorizationEngine:
    def __init__(
        self,
        session: Session,
        rules: tuple[CategorizationRule, ...] = DEFAULT_RULES,
    ) -> None:
        self.session = session
        self.rules = rules

    def categorize(
        self,
        user_id: int,
        description: str,
        amount_cents: int,
        type: TransactionType,
        *,
        exclude_transaction_id: Optional[int] = None,
    ) -> CategorizationResult:
        normalized = normalize(description)
        if not normalized.strip():
            return NO_MATCH

        result = self._match_rules(user_id, normalized, type)
        if result is None:
            result = self._match_history(
                user_id, normalized, type, exclude_transaction_id
            )
        logger.debug(
            f"categorize: user_id={user_id} type={type.value} "
            f"amount_cents={amount_cents} category_id={result.category_id} "
            f"confidence={result.confidence}"
        )
        return result

    def categorize_transaction(self, transaction_id: int, user_id: int) -> bool:
        """Auto-categorize a stored transaction in place.

        Returns True when a category was applied. A category chosen by the
        user is never overwritten.
        """
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != user_id:
            return False
        if txn.category_id is not None and not txn.auto_categorized:
            return False

        result = self.categorize(
            user_id,
            txn.description,
            txn.amount_cents,
            txn.type,
            exclude_transaction_id=txn.id,
        )
        if result.category_id is None or result.confidence <= ACCEPTANCE_THRESHOLD:
            return False

        txn.category_id = result.category_id
        txn.auto_categorized = True
        txn.confidence_score = result.confidence
        self.session.flush()
        logger.info(
            f"transaction_categorized: transaction_id={txn.id} "
            f"category_id={result.category_id} confidence={result.confidence}"
        )
        return True

    def _match_rules(
        self, user_id: int, normalized: str, type: TransactionType
    ) -> Optional[CategorizationResult]:
        categories = self.session.scalars(
            select(Category).where(Category.user_id == user_id, Category.type == type)
        ).all()
        by_name = {normalize(c.name).strip(): c.id for c in categories}

        best: Optional[CategorizationResult] = None
        for rule in self.rules:
            if not any(normalize(k) in normalized for k in rule.keywords):
                continue
            if rule.type != type:
                continue
            category_id = by_name.get(normalize(rule.category_name))
            if category_id is None:
                continue
            if best is None or rule.confidence > best.confidence:
                best = CategorizationResult(category_id, rule.confidence)
        return best

    def _match_history(
        self,
        user_id: int,
        normalized: str,
        type: TransactionType,
        exclude_transaction_id: Optional[int],
    ) -> CategorizationResult:
        stmt = (
            select(Transaction.description, Transaction.category_id)
            .where(
                Transaction.user_id == user_id,
                Transaction.type == type,
                Transaction.category_id.is_not(None),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(HISTORY_SCAN_LIMIT)
        )
        if exclude_transaction_id is not None:
            stmt = stmt.where(Transaction.id != exclude_transaction_id)

        counts: Counter[int] = Counter()
        for description, category_id in self.session.execute(stmt):
            score = fuzz.ratio(normalized, normalize(description)) / 100.0
            if score > HISTORY_SIMILARITY_THRESHOLD:
                counts[category_id] += 1
        if not counts:
            return NO_MATCH
        category_id, _ = counts.most_common(1)[0]
        return CategorizationResult(category_id, HISTORY_CONFIDENCE)
