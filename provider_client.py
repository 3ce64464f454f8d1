from __future__ import annotations

import json
import logging
import time
from datetime import date
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from pydantic import ValidationError

from config import Settings, get_settings
from errors import ProviderUnavailable
from schemas import ProviderAccount, ProviderInstitution, ProviderTransaction


logger = logging.getLogger(__name__)

API_KEY_TTL_SECS = 3600
TRANSACTIONS_PAGE_SIZE = 500
TRANSACTIONS_MAX_PAGES = 5


class ProviderClient:
    """HTTP client for the Open Finance aggregator. No business logic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.base_url = self.settings.provider_api_url.rstrip("/")
        self.timeout = self.settings.provider_timeout_secs
        self._api_key: Optional[str] = None
        self._api_key_expires_at = 0.0

    def authenticate(self) -> str:
        if self._api_key and time.monotonic() < self._api_key_expires_at:
            return self._api_key

        client_id = self.settings.provider_client_id
        client_secret = self.settings.provider_client_secret
        if not client_id or not client_secret:
            raise ProviderUnavailable("Provider credentials are not configured")

        payload = self._send(
            "POST",
            "/auth",
            body={"clientId": client_id, "clientSecret": client_secret},
        )
        api_key = payload.get("apiKey") if isinstance(payload, dict) else None
        if not api_key:
            raise ProviderUnavailable("Unexpected provider auth response")

        self._api_key = str(api_key)
        self._api_key_expires_at = time.monotonic() + API_KEY_TTL_SECS
        logger.info("provider_auth: api key refreshed")
        return self._api_key

    def list_accounts(self, item_id: str) -> list[ProviderAccount]:
        data = self._request("GET", "/accounts", params={"itemId": item_id})
        return _parse_results(data, ProviderAccount)

    def list_transactions(
        self,
        account_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[ProviderTransaction]:
        results: list[ProviderTransaction] = []
        for page in range(1, TRANSACTIONS_MAX_PAGES + 1):
            params: dict[str, object] = {
                "accountId": account_id,
                "page": page,
                "pageSize": TRANSACTIONS_PAGE_SIZE,
            }
            if from_date:
                params["from"] = from_date.isoformat()
            if to_date:
                params["to"] = to_date.isoformat()
            data = self._request("GET", "/transactions", params=params)
            batch = _parse_results(data, ProviderTransaction)
            results.extend(batch)
            if len(batch) < TRANSACTIONS_PAGE_SIZE:
                break
        return results

    def list_institutions(
        self, search: Optional[str] = None
    ) -> list[ProviderInstitution]:
        params: dict[str, object] = {"countries": "BR"}
        if search:
            params["name"] = search
        data = self._request("GET", "/connectors", params=params)
        return _parse_results(data, ProviderInstitution)

    def refresh_item(self, item_id: str) -> None:
        self._request("POST", f"/items/{quote(item_id, safe='')}/sync")

    def create_connect_token(self, client_user_id: str) -> str:
        data = self._request(
            "POST",
            "/connect_token",
            body={"clientUserId": client_user_id, "products": ["open_finance"]},
        )
        token = data.get("accessToken") if isinstance(data, dict) else None
        if not token:
            raise ProviderUnavailable("Unexpected provider connect token response")
        return str(token)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, object]] = None,
        body: Optional[dict[str, object]] = None,
    ) -> Any:
        api_key = self.authenticate()
        return self._send(
            method, path, params=params, body=body, headers={"X-API-KEY": api_key}
        )

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, object]] = None,
        body: Optional[dict[str, object]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = Request(
            url,
            data=data,
            method=method,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                **(headers or {}),
            },
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except HTTPError as exc:
            logger.warning(f"provider_request_failed: path={path} status={exc.code}")
            raise ProviderUnavailable(
                f"Provider request failed with status {exc.code}"
            ) from exc
        except (URLError, TimeoutError, OSError) as exc:
            logger.warning(f"provider_request_failed: path={path} error={exc}")
            raise ProviderUnavailable("Provider is unreachable") from exc

        if not raw:
            return {}
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProviderUnavailable("Unexpected provider response") from exc


def _parse_results(data: Any, model):
    if not isinstance(data, dict):
        raise ProviderUnavailable("Unexpected provider response")
    try:
        return [model.model_validate(item) for item in data.get("results") or []]
    except ValidationError as exc:
        raise ProviderUnavailable("Unexpected provider response") from exc
