from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import re
from enum import Enum
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from connections import ConnectionManager
from errors import AuthenticationFailure, ProviderUnavailable, ValidationFailure
from models import Connection, ConnectionStatus
from schemas import WebhookEnvelope, WebhookEvent


logger = logging.getLogger(__name__)

_PREFIX_RE = re.compile(r"^sha256=", re.I)


class WebhookEventType(str, Enum):
    item_created = "item/created"
    item_updated = "item/updated"
    item_error = "item/error"
    item_deleted = "item/deleted"
    item_login_succeeded = "item/login_succeeded"
    item_login_failed = "item/login_failed"


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Check an HMAC-SHA256 signature given as hex or base64.

    Both encodings are compared in constant time.
    """
    provided = _PREFIX_RE.sub("", signature.strip()).strip().encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    expected_hex = digest.hex().encode("ascii")
    expected_b64 = base64.b64encode(digest)
    hex_ok = hmac.compare_digest(provided, expected_hex)
    b64_ok = hmac.compare_digest(provided, expected_b64)
    return hex_ok or b64_ok


def _load(payload: bytes) -> dict:
    try:
        body = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationFailure("Invalid payload") from exc
    if not isinstance(body, dict):
        raise ValidationFailure("Invalid payload")
    return body


class WebhookProcessor:
    def __init__(
        self,
        session: Session,
        manager: ConnectionManager,
        secret: Optional[str],
    ) -> None:
        self.session = session
        self.manager = manager
        self.secret = secret

    def process(self, payload: bytes, signature: Optional[str]) -> WebhookEnvelope:
        """Authenticate and dispatch one delivery.

        Unknown event types are acknowledged without inspecting their data.
        """
        if not signature or not self.secret:
            logger.warning(
                f"webhook_rejected: has_signature={bool(signature)} "
                f"has_secret={bool(self.secret)}"
            )
            raise AuthenticationFailure("Missing webhook signature")
        if not verify_signature(payload, signature, self.secret):
            logger.warning(f"webhook_rejected: signature={signature[:12]}...")
            raise AuthenticationFailure("Invalid webhook signature")

        body = _load(payload)
        try:
            envelope = WebhookEnvelope.model_validate(body)
        except ValidationError as exc:
            raise ValidationFailure("Invalid payload") from exc
        try:
            event_type = WebhookEventType(envelope.type)
        except ValueError:
            logger.warning(f"webhook_unknown_event: type={envelope.type}")
            return envelope
        try:
            event = WebhookEvent.model_validate(body)
        except ValidationError as exc:
            raise ValidationFailure("Invalid payload") from exc

        logger.info(f"webhook_received: type={event_type.value} item_id={event.data.id}")
        self.dispatch(event_type, event)
        return event

    def dispatch(self, event_type: WebhookEventType, event: WebhookEvent) -> None:
        item_id = event.data.id
        connection = self.manager.get_by_item_id(item_id)
        if connection is None:
            logger.info(
                f"webhook_unknown_item: type={event_type.value} item_id={item_id}"
            )
            return

        error_message = event.data.error.message if event.data.error else None

        if event_type == WebhookEventType.item_created:
            self._sync(connection)
        elif event_type == WebhookEventType.item_updated:
            self._sync(connection)
        elif event_type == WebhookEventType.item_login_succeeded:
            if connection.status != ConnectionStatus.inactive:
                self.manager.mark_active(connection)
            self._sync(connection)
        elif event_type == WebhookEventType.item_error:
            self.manager.mark_error(connection, error_message or "Unknown error")
        elif event_type == WebhookEventType.item_login_failed:
            self.manager.mark_error(connection, error_message or "Login failed")
        elif event_type == WebhookEventType.item_deleted:
            self.session.delete(connection)
            self.session.commit()
            logger.info(
                f"webhook_connection_deleted: connection_id={connection.id} "
                f"item_id={item_id}"
            )
        else:
            raise ValueError(f"Unhandled webhook event type: {event_type}")

    def _sync(self, connection: Connection) -> None:
        if connection.status == ConnectionStatus.inactive:
            logger.info(f"webhook_sync_skipped: connection_id={connection.id} inactive")
            return
        try:
            self.manager.sync(connection.id)
        except ProviderUnavailable:
            logger.warning(
                f"webhook_sync_failed: connection_id={connection.id} "
                f"item_id={connection.item_id}"
            )
