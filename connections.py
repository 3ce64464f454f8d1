from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import ConnectionInactive, ConnectionNotFound, ProviderUnavailable
from models import Account, Connection, ConnectionStatus
from provider_client import ProviderClient
from reconciliation import MergeEngine
from recurrence import local_today


logger = logging.getLogger(__name__)

INITIAL_SYNC_DAYS = 90
MAX_SYNC_DAYS = 90
GENERIC_SYNC_ERROR = "Failed to sync with the bank. Try again later."


@dataclass(frozen=True)
class SyncResult:
    accounts_synced: int
    transactions_synced: int


@dataclass(frozen=True)
class SyncOutcome:
    connection_id: int
    status: str
    accounts_synced: int = 0
    transactions_synced: int = 0
    error: Optional[str] = None


class ConnectionManager:
    """Owns the connection lifecycle: pending -> active <-> error -> inactive."""

    def __init__(
        self,
        session: Session,
        provider: ProviderClient,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.settings = settings or get_settings()
        self.merge = MergeEngine(session, provider)

    def get(self, connection_id: int, user_id: Optional[int] = None) -> Connection:
        connection = self.session.get(Connection, connection_id)
        if not connection or (user_id is not None and connection.user_id != user_id):
            raise ConnectionNotFound("Connection not found")
        return connection

    def get_by_item_id(self, item_id: str) -> Optional[Connection]:
        return self.session.scalar(
            select(Connection).where(Connection.item_id == item_id)
        )

    def list_connections(self, user_id: int) -> list[Connection]:
        stmt = (
            select(Connection)
            .where(Connection.user_id == user_id)
            .order_by(Connection.created_at.desc(), Connection.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def connect(
        self,
        user_id: int,
        institution_id: str,
        institution_name: str,
        item_id: str,
    ) -> Connection:
        connection = self.get_by_item_id(item_id)
        if connection is None:
            connection = Connection(
                user_id=user_id,
                provider=self.settings.provider_name,
                institution_id=institution_id,
                institution_name=institution_name,
                item_id=item_id,
                status=ConnectionStatus.pending,
            )
            self.session.add(connection)
        else:
            if connection.user_id != user_id:
                raise ConnectionNotFound("Connection not found")
            connection.institution_id = institution_id
            connection.institution_name = institution_name
            connection.status = ConnectionStatus.pending
        # Persisted before the provider is called so a failed first sync
        # still leaves a visible, retryable connection.
        self.session.commit()
        logger.info(
            f"connection_created: connection_id={connection.id} user_id={user_id} "
            f"institution_id={institution_id}"
        )

        try:
            self.sync(connection.id, window_days=INITIAL_SYNC_DAYS)
        except ProviderUnavailable:
            logger.warning(
                f"connection_initial_sync_failed: connection_id={connection.id}"
            )
        return connection

    def sync(
        self,
        connection_id: int,
        window_days: Optional[int] = None,
        force: bool = False,
        *,
        today: Optional[date] = None,
    ) -> SyncResult:
        if window_days is None:
            window_days = self.settings.sync_window_days
        if not 1 <= window_days <= MAX_SYNC_DAYS:
            raise ValueError(f"window_days must be between 1 and {MAX_SYNC_DAYS}")

        connection = self.get(connection_id)
        if connection.status == ConnectionStatus.inactive:
            raise ConnectionInactive("Connection is disconnected")

        today = today or local_today()
        from_date = today - timedelta(days=window_days)

        try:
            if force:
                self.provider.refresh_item(connection.item_id)
            provider_accounts = self.provider.list_accounts(connection.item_id)
        except Exception as exc:
            self._record_error(connection, exc)
            if isinstance(exc, ProviderUnavailable):
                raise
            raise ProviderUnavailable(str(exc)) from exc

        accounts_synced = 0
        transactions_synced = 0
        for provider_account in provider_accounts:
            try:
                with self.session.begin_nested():
                    account = self.merge.merge_account(provider_account, connection)
                    inserted = self.merge.merge_transactions(
                        provider_account.id, account, from_date, today
                    )
            except Exception:
                logger.exception(
                    f"sync_account_failed: connection_id={connection.id} "
                    f"item_id={connection.item_id} "
                    f"provider_account_id={provider_account.id}"
                )
                continue
            accounts_synced += 1
            transactions_synced += inserted

        connection.last_sync_at = datetime.utcnow()
        connection.status = ConnectionStatus.active
        connection.error_message = None
        self.session.commit()
        logger.info(
            f"sync_completed: connection_id={connection.id} "
            f"accounts_synced={accounts_synced} "
            f"transactions_synced={transactions_synced} force={force}"
        )
        return SyncResult(accounts_synced, transactions_synced)

    def sync_all(
        self,
        limit: Optional[int] = None,
        window_days: Optional[int] = None,
    ) -> list[SyncOutcome]:
        limit = limit or self.settings.sync_batch_size
        stmt = (
            select(Connection.id)
            .where(
                Connection.status.in_(
                    [ConnectionStatus.active, ConnectionStatus.pending]
                )
            )
            .order_by(Connection.last_sync_at.asc().nulls_first(), Connection.id)
            .limit(limit)
        )
        connection_ids = list(self.session.scalars(stmt).all())
        logger.info(f"sync_all_started: connections={len(connection_ids)}")

        outcomes: list[SyncOutcome] = []
        for connection_id in connection_ids:
            try:
                result = self.sync(connection_id, window_days=window_days)
            except Exception as exc:
                self.session.rollback()
                if not isinstance(exc, ProviderUnavailable):
                    logger.exception(f"sync_all_failed: connection_id={connection_id}")
                outcomes.append(
                    SyncOutcome(
                        connection_id=connection_id,
                        status="error",
                        error=GENERIC_SYNC_ERROR,
                    )
                )
                continue
            outcomes.append(
                SyncOutcome(
                    connection_id=connection_id,
                    status="success",
                    accounts_synced=result.accounts_synced,
                    transactions_synced=result.transactions_synced,
                )
            )

        failed = sum(1 for o in outcomes if o.status == "error")
        logger.info(
            f"sync_all_completed: synced={len(outcomes) - failed} failed={failed}"
        )
        return outcomes

    def disconnect(self, connection_id: int, user_id: Optional[int] = None) -> Connection:
        connection = self.get(connection_id, user_id)
        if connection.status != ConnectionStatus.inactive:
            connection.status = ConnectionStatus.inactive
            logger.info(
                f"connection_disconnected: connection_id={connection.id} "
                f"institution={connection.institution_name}"
            )
        self.session.execute(
            update(Account)
            .where(
                Account.user_id == connection.user_id,
                Account.provider == connection.provider,
                Account.bank_name == connection.institution_name,
                Account.is_active.is_(True),
            )
            .values(is_active=False, updated_at=datetime.utcnow())
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        return connection

    def mark_error(self, connection: Connection, message: str) -> None:
        connection.status = ConnectionStatus.error
        connection.error_message = message
        self.session.commit()

    def mark_active(self, connection: Connection) -> None:
        connection.status = ConnectionStatus.active
        connection.error_message = None
        self.session.commit()

    def _record_error(self, connection: Connection, exc: Exception) -> None:
        logger.warning(
            f"sync_failed: connection_id={connection.id} item_id={connection.item_id} "
            f"error={exc}"
        )
        self.session.rollback()
        connection = self.get(connection.id)
        self.mark_error(connection, str(exc) or exc.__class__.__name__)
