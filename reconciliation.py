from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Account, AccountType, Connection, Transaction, TransactionType
from provider_client import ProviderClient
from schemas import ProviderAccount, ProviderTransaction


logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LENGTH = 500
NOTES_MAX_LENGTH = 1000
TAG_MAX_LENGTH = 50
MAX_TAGS = 20

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.I)
_JS_SCHEME_RE = re.compile(r"javascript:", re.I)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.I)
_TAG_CHARS_RE = re.compile(r"[^\w\s-]")


def clean_text(value: Optional[str], limit: int = DESCRIPTION_MAX_LENGTH) -> str:
    if not value:
        return ""
    text = _SCRIPT_RE.sub("", value)
    text = _JS_SCHEME_RE.sub("", text)
    text = _EVENT_HANDLER_RE.sub("", text)
    return text.strip()[:limit]


def clean_tags(tags) -> list[str]:
    cleaned: set[str] = set()
    for tag in tags:
        value = _TAG_CHARS_RE.sub("", str(tag)).strip()
        if value and len(value) <= TAG_MAX_LENGTH:
            cleaned.add(value)
    return sorted(cleaned)[:MAX_TAGS]


def to_cents(amount: float) -> int:
    return int(
        (Decimal(str(amount)) * Decimal("100")).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )


def parse_provider_date(value: str) -> date:
    return date.fromisoformat(value.strip()[:10])


def map_account_type(account: ProviderAccount) -> AccountType:
    kind = (account.type or "").upper()
    subtype = (account.subtype or "").upper()
    if kind in {"CREDIT", "CREDIT_CARD"} or subtype == "CREDIT_CARD":
        return AccountType.credit_card
    if kind == "BANK":
        if subtype == "SAVINGS_ACCOUNT":
            return AccountType.savings
        return AccountType.checking
    if kind == "INVESTMENT":
        return AccountType.investment
    return AccountType.other


def account_balance_cents(account: ProviderAccount, account_type: AccountType) -> int:
    """Local balance for a provider account.

    Credit cards carrying credit data store the available limit, or the
    negated raw balance when no limit is reported. Credit cards without
    credit data keep the raw balance as-is.
    """
    if account_type == AccountType.credit_card and account.credit_data is not None:
        if account.credit_data.available_credit_limit is not None:
            return to_cents(account.credit_data.available_credit_limit)
        if account.balance is not None:
            return -abs(to_cents(account.balance))
        return 0
    return to_cents(account.balance or 0)


def build_transaction(
    provider_txn: ProviderTransaction, account: Account
) -> Transaction:
    amount = Decimal(str(provider_txn.amount))
    txn_type = TransactionType.income if amount > 0 else TransactionType.expense

    description = clean_text(
        provider_txn.description or provider_txn.description_raw
    ) or "Transaction"
    tags: set[str] = set()
    notes: list[str] = []

    payment = provider_txn.payment_data
    payment_method: Optional[str] = None
    if payment is not None:
        method = (payment.payment_method or "").strip().upper()
        if method:
            payment_method = method
            tags.add(method.lower())
            notes.append(f"Method: {method}")
        if "PIX" in method:
            description = f"PIX: {description}"
            payer = clean_text(payment.payer)
            receiver = clean_text(payment.receiver)
            if payer and txn_type == TransactionType.income:
                description = f"{description} (From: {payer})"
                tags.add("pix-in")
            if receiver and txn_type == TransactionType.expense:
                description = f"{description} (To: {receiver})"
                tags.add("pix-out")
        if payment.reference_number:
            notes.append(f"Ref: {payment.reference_number}")
            tags.add("ref")

    card = provider_txn.credit_card_metadata
    if card is not None:
        if card.total_installments and card.total_installments > 1:
            installment = f"{card.installment_number}/{card.total_installments}"
            description = f"{description} ({installment})"
            notes.append(f"Installments: {installment}")
            tags.add("installments")
        payee = clean_text(card.payee_name)
        if payee:
            description = f"{payee} - {description}"
            notes.append(f"Merchant: {payee}")
            tags.add("card")
        if card.mcc:
            notes.append(f"MCC: {card.mcc}")
            tags.add("mcc")

    if provider_txn.category:
        notes.append(f"Bank category: {provider_txn.category}")
        tags.add("bank-category")
    if provider_txn.status:
        notes.append(f"Status: {provider_txn.status}")
        tags.add(f"status-{provider_txn.status.lower()}")
    if provider_txn.provider_code:
        notes.append(f"Provider: {provider_txn.provider_code}")

    txn = Transaction(
        user_id=account.user_id,
        account_id=account.id,
        amount_cents=abs(to_cents(provider_txn.amount)),
        type=txn_type,
        description=description[:DESCRIPTION_MAX_LENGTH],
        date=parse_provider_date(provider_txn.date),
        external_id=provider_txn.id,
        notes=clean_text(" | ".join(notes), NOTES_MAX_LENGTH) if notes else None,
        auto_categorized=False,
        status=provider_txn.status,
        payment_method=payment_method,
        reference_number=payment.reference_number if payment else None,
        mcc=card.mcc if card else None,
        bank_category=provider_txn.category,
        provider_code=provider_txn.provider_code,
    )
    txn.tags = clean_tags(tags)
    return txn


class TransactionRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def exists(self, external_id: str) -> bool:
        stmt = select(Transaction.id).where(Transaction.external_id == external_id)
        return self.session.execute(stmt.limit(1)).scalar_one_or_none() is not None

    def insert_if_absent(self, txn: Transaction) -> bool:
        """Insert unless a transaction with the same external id exists.

        Returns False for an already-seen external id, including one that a
        concurrent sync inserted between the lookup and the flush.
        """
        if txn.external_id and self.exists(txn.external_id):
            return False
        try:
            with self.session.begin_nested():
                self.session.add(txn)
        except IntegrityError:
            logger.info(f"transaction_insert_conflict: external_id={txn.external_id}")
            return False
        return True


class AccountRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_external_id(self, user_id: int, external_id: str) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.user_id == user_id, Account.external_id == external_id
            )
        )

    def upsert(
        self,
        user_id: int,
        external_id: str,
        *,
        name: str,
        type: AccountType,
        balance_cents: int,
        currency: str,
        bank_name: Optional[str],
        provider: Optional[str],
    ) -> tuple[Account, bool]:
        now = datetime.utcnow()
        account = self.get_by_external_id(user_id, external_id)
        if account is None:
            account = Account(
                user_id=user_id,
                external_id=external_id,
                name=name,
                type=type,
                balance_cents=balance_cents,
                currency=currency,
                bank_name=bank_name,
                provider=provider,
                is_active=True,
                last_sync_at=now,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(account)
                return account, True
            except IntegrityError:
                account = self.get_by_external_id(user_id, external_id)
                if account is None:
                    raise

        account.name = name
        account.type = type
        account.balance_cents = balance_cents
        account.is_active = True
        account.last_sync_at = now
        self.session.flush()
        return account, False


class MergeEngine:
    def __init__(self, session: Session, provider: ProviderClient) -> None:
        self.session = session
        self.provider = provider
        self.accounts = AccountRepository(session)
        self.transactions = TransactionRepository(session)

    def merge_account(
        self, provider_account: ProviderAccount, connection: Connection
    ) -> Account:
        account_type = map_account_type(provider_account)
        account, created = self.accounts.upsert(
            connection.user_id,
            provider_account.id,
            name=clean_text(provider_account.name or provider_account.marketing_name, 200)
            or "Account",
            type=account_type,
            balance_cents=account_balance_cents(provider_account, account_type),
            currency=(provider_account.currency_code or "BRL").upper()[:3],
            bank_name=connection.institution_name,
            provider=connection.provider,
        )
        logger.debug(
            f"merge_account: connection_id={connection.id} account_id={account.id} "
            f"created={created} type={account_type.value}"
        )
        return account

    def merge_transactions(
        self,
        provider_account_id: str,
        account: Account,
        from_date: date,
        to_date: Optional[date] = None,
    ) -> int:
        to_date = to_date or date.today()
        try:
            provider_txns = self.provider.list_transactions(
                provider_account_id, from_date, to_date
            )
        except Exception:
            logger.exception(
                f"merge_transactions_fetch_failed: account_id={account.id} "
                f"provider_account_id={provider_account_id}"
            )
            return 0

        inserted = 0
        for provider_txn in provider_txns:
            if self.transactions.exists(provider_txn.id):
                continue
            txn = build_transaction(provider_txn, account)
            if self.transactions.insert_if_absent(txn):
                inserted += 1
        logger.info(
            f"merge_transactions: account_id={account.id} fetched={len(provider_txns)} "
            f"inserted={inserted}"
        )
        return inserted
