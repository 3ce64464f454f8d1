import base64
import hashlib
import hmac
import json
from typing import Optional

import pytest
from sqlalchemy import func, select

from connections import ConnectionManager
from errors import AuthenticationFailure, ValidationFailure
from models import Connection, ConnectionStatus, Transaction
from webhooks import WebhookEventType, WebhookProcessor, verify_signature


SECRET = "whsec"


def _sign(payload: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def _event(event_type: str, item_id: str = "item-1", error: Optional[str] = None) -> bytes:
    data = {"id": item_id}
    if error is not None:
        data["error"] = {"message": error, "code": "LOGIN_ERROR"}
    return json.dumps({"type": event_type, "data": data}).encode()


@pytest.fixture
def processor(session, provider, settings):
    manager = ConnectionManager(session, provider, settings)
    return WebhookProcessor(session, manager, SECRET)


@pytest.fixture
def connection(session, provider):
    provider.add_account("item-1", id="acc-1", type="BANK", name="Conta")
    provider.add_transaction("acc-1", id="t1", amount=-9.9, date="2024-03-05")
    conn = Connection(
        user_id=1,
        provider="pluggy",
        institution_name="Nubank",
        item_id="item-1",
        status=ConnectionStatus.active,
    )
    session.add(conn)
    session.commit()
    return conn


def test_verify_signature_accepts_hex_base64_and_prefix():
    payload = b'{"type":"item/updated"}'
    digest = hmac.new(SECRET.encode(), payload, hashlib.sha256).digest()
    assert verify_signature(payload, digest.hex(), SECRET)
    assert verify_signature(payload, f"sha256={digest.hex()}", SECRET)
    assert verify_signature(payload, f"SHA256={digest.hex()}", SECRET)
    assert verify_signature(payload, base64.b64encode(digest).decode(), SECRET)
    assert not verify_signature(payload, digest.hex(), "other-secret")
    assert not verify_signature(payload + b" ", digest.hex(), SECRET)
    assert not verify_signature(payload, "not-a-signature", SECRET)


@pytest.mark.parametrize("event_type", [e.value for e in WebhookEventType])
def test_bad_signature_is_rejected_for_every_event(
    processor, connection, provider, session, event_type
):
    payload = _event(event_type, error="boom")
    with pytest.raises(AuthenticationFailure):
        processor.process(payload, _sign(payload, "wrong"))
    stored = session.get(Connection, connection.id)
    assert stored is not None
    assert stored.status == ConnectionStatus.active
    assert provider.transaction_calls == []


def test_missing_signature_or_secret_is_rejected(session, provider, settings, connection):
    payload = _event("item/updated")
    manager = ConnectionManager(session, provider, settings)
    with pytest.raises(AuthenticationFailure):
        WebhookProcessor(session, manager, SECRET).process(payload, None)
    with pytest.raises(AuthenticationFailure):
        WebhookProcessor(session, manager, None).process(payload, _sign(payload))


@pytest.mark.parametrize(
    "payload",
    [b"{not json", b'{"type": "item/updated"}', b'{"data": {"id": "x"}}', b"[]"],
)
def test_malformed_payload_is_validation_failure(processor, payload):
    with pytest.raises(ValidationFailure):
        processor.process(payload, _sign(payload))


def test_item_updated_triggers_sync(processor, connection, session):
    payload = _event("item/updated")
    processor.process(payload, _sign(payload))
    assert session.scalar(select(func.count(Transaction.id))) == 1
    assert session.get(Connection, connection.id).last_sync_at is not None


def test_item_error_records_message(processor, connection, session):
    payload = _event("item/error", error="Invalid credentials")
    processor.process(payload, _sign(payload))
    stored = session.get(Connection, connection.id)
    assert stored.status == ConnectionStatus.error
    assert stored.error_message == "Invalid credentials"


def test_item_error_without_message_uses_default(processor, connection, session):
    payload = _event("item/error")
    processor.process(payload, _sign(payload))
    assert session.get(Connection, connection.id).error_message == "Unknown error"


def test_login_failed_uses_default_message(processor, connection, session):
    payload = _event("item/login_failed")
    processor.process(payload, _sign(payload))
    stored = session.get(Connection, connection.id)
    assert stored.status == ConnectionStatus.error
    assert stored.error_message == "Login failed"


def test_login_succeeded_reactivates_and_syncs(processor, connection, session):
    processor.manager.mark_error(connection, "Login failed")
    payload = _event("item/login_succeeded")
    processor.process(payload, _sign(payload))
    stored = session.get(Connection, connection.id)
    assert stored.status == ConnectionStatus.active
    assert stored.error_message is None
    assert session.scalar(select(func.count(Transaction.id))) == 1


def test_item_deleted_removes_connection(processor, connection, session):
    connection_id = connection.id
    payload = _event("item/deleted")
    processor.process(payload, _sign(payload))
    session.expire_all()
    assert session.get(Connection, connection_id) is None


def test_unknown_item_is_noop(processor, connection, session, provider):
    payload = _event("item/error", item_id="item-unknown", error="x")
    processor.process(payload, _sign(payload))
    assert session.get(Connection, connection.id).status == ConnectionStatus.active
    assert provider.transaction_calls == []


def test_unknown_event_type_is_ignored(processor, connection, provider):
    payload = _event("connector/status_updated")
    event = processor.process(payload, _sign(payload))
    assert event.type == "connector/status_updated"
    assert provider.transaction_calls == []


def test_unknown_event_type_with_foreign_data_is_ignored(processor, connection, provider):
    payload = json.dumps(
        {"type": "connector/status_updated", "data": {"connectorId": 201}}
    ).encode()
    event = processor.process(payload, _sign(payload))
    assert event.type == "connector/status_updated"
    assert provider.transaction_calls == []


def test_known_event_without_item_id_is_rejected(processor, connection):
    payload = json.dumps({"type": "item/updated", "data": {"connectorId": 201}}).encode()
    with pytest.raises(ValidationFailure):
        processor.process(payload, _sign(payload))


def test_inactive_connection_is_not_synced(processor, connection, session, provider):
    processor.manager.disconnect(connection.id)
    payload = _event("item/updated")
    processor.process(payload, _sign(payload))
    assert provider.transaction_calls == []
    assert session.get(Connection, connection.id).status == ConnectionStatus.inactive


def test_sync_failure_still_acknowledges(processor, connection, session, provider):
    provider.failing_items.add("item-1")
    payload = _event("item/created")
    processor.process(payload, _sign(payload))
    assert session.get(Connection, connection.id).status == ConnectionStatus.error
