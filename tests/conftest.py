from datetime import date
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from config import Settings
from database import Base, configure_sqlite_engine
from errors import ProviderUnavailable
from schemas import ProviderAccount, ProviderInstitution, ProviderTransaction


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite_engine(engine)
    Base.metadata.create_all(engine)
    return engine


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        timezone="America/Sao_Paulo",
        provider_name="pluggy",
        provider_api_url="https://provider.test",
        provider_client_id="client-id",
        provider_client_secret="client-secret",
        provider_timeout_secs=5,
        webhook_secret="whsec",
        cron_secret="cron-token",
    )
    values.update(overrides)
    return Settings(**values)


class FakeProvider:
    """In-memory stand-in for ProviderClient keyed by item and account ids."""

    def __init__(self) -> None:
        self.accounts: dict[str, list[ProviderAccount]] = {}
        self.transactions: dict[str, list[ProviderTransaction]] = {}
        self.failing_items: set[str] = set()
        self.failing_accounts: set[str] = set()
        self.refreshed: list[str] = []
        self.transaction_calls: list[tuple[str, Optional[date], Optional[date]]] = []

    def add_account(self, item_id: str, **fields) -> ProviderAccount:
        account = ProviderAccount.model_validate(fields)
        self.accounts.setdefault(item_id, []).append(account)
        return account

    def add_transaction(self, account_id: str, **fields) -> ProviderTransaction:
        txn = ProviderTransaction.model_validate(fields)
        self.transactions.setdefault(account_id, []).append(txn)
        return txn

    def list_accounts(self, item_id: str) -> list[ProviderAccount]:
        if item_id in self.failing_items:
            raise ProviderUnavailable("Provider is unreachable")
        return list(self.accounts.get(item_id, []))

    def list_transactions(self, account_id, from_date=None, to_date=None):
        self.transaction_calls.append((account_id, from_date, to_date))
        if account_id in self.failing_accounts:
            raise ProviderUnavailable("Provider is unreachable")
        return list(self.transactions.get(account_id, []))

    def list_institutions(self, search=None) -> list[ProviderInstitution]:
        return [ProviderInstitution(id=201, name="Nubank", type="PERSONAL_BANK")]

    def refresh_item(self, item_id: str) -> None:
        self.refreshed.append(item_id)

    def create_connect_token(self, client_user_id: str) -> str:
        return f"connect-token-{client_user_id}"


@pytest.fixture
def engine():
    eng = make_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
