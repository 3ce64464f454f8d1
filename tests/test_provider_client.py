import json
from datetime import date
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlparse

import pytest

import provider_client
from errors import ProviderUnavailable
from provider_client import ProviderClient

from conftest import make_settings


class _Response:
    def __init__(self, payload) -> None:
        self._raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()

    def read(self) -> bytes:
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


class FakeTransport:
    def __init__(self, routes) -> None:
        self.routes = routes
        self.requests = []

    def __call__(self, req, timeout=None):
        parsed = urlparse(req.full_url)
        self.requests.append(
            {
                "method": req.get_method(),
                "path": parsed.path,
                "query": parse_qs(parsed.query),
                "headers": {k.lower(): v for k, v in req.header_items()},
                "body": json.loads(req.data) if req.data else None,
                "timeout": timeout,
            }
        )
        handler = self.routes[(req.get_method(), parsed.path)]
        result = handler(parsed) if callable(handler) else handler
        if isinstance(result, Exception):
            raise result
        return _Response(result)


@pytest.fixture
def transport(monkeypatch):
    def install(routes):
        fake = FakeTransport({("POST", "/auth"): {"apiKey": "key-1"}, **routes})
        monkeypatch.setattr(provider_client, "urlopen", fake)
        return fake

    return install


def test_authenticate_caches_api_key(transport):
    fake = transport({("GET", "/accounts"): {"results": []}})
    client = ProviderClient(make_settings())

    client.list_accounts("item-1")
    client.list_accounts("item-1")

    auth_calls = [r for r in fake.requests if r["path"] == "/auth"]
    assert len(auth_calls) == 1
    assert auth_calls[0]["body"] == {"clientId": "client-id", "clientSecret": "client-secret"}
    account_call = fake.requests[-1]
    assert account_call["headers"]["x-api-key"] == "key-1"
    assert account_call["query"] == {"itemId": ["item-1"]}
    assert account_call["timeout"] == 5


def test_missing_credentials_is_provider_unavailable():
    client = ProviderClient(make_settings(provider_client_id=None))
    with pytest.raises(ProviderUnavailable):
        client.authenticate()


def test_list_accounts_parses_camel_case(transport):
    transport(
        {
            ("GET", "/accounts"): {
                "results": [
                    {
                        "id": "acc-1",
                        "type": "CREDIT",
                        "subtype": "CREDIT_CARD",
                        "name": "Ultravioleta",
                        "balance": 1200.5,
                        "currencyCode": "BRL",
                        "creditData": {"availableCreditLimit": 800.0},
                    }
                ]
            }
        }
    )
    (account,) = ProviderClient(make_settings()).list_accounts("item-1")
    assert account.id == "acc-1"
    assert account.currency_code == "BRL"
    assert account.credit_data.available_credit_limit == 800.0


def test_list_transactions_pages_until_short_page(transport, monkeypatch):
    monkeypatch.setattr(provider_client, "TRANSACTIONS_PAGE_SIZE", 2)

    def page(parsed):
        number = int(parse_qs(parsed.query)["page"][0])
        size = 2 if number < 3 else 1
        return {
            "results": [
                {"id": f"p{number}-{i}", "amount": -1.0, "date": "2024-03-01"}
                for i in range(size)
            ]
        }

    fake = transport({("GET", "/transactions"): page})
    txns = ProviderClient(make_settings()).list_transactions(
        "acc-1", date(2024, 2, 1), date(2024, 3, 1)
    )

    assert [t.id for t in txns] == ["p1-0", "p1-1", "p2-0", "p2-1", "p3-0"]
    first = [r for r in fake.requests if r["path"] == "/transactions"][0]
    assert first["query"]["from"] == ["2024-02-01"]
    assert first["query"]["to"] == ["2024-03-01"]
    assert first["query"]["pageSize"] == ["2"]


def test_list_transactions_stops_at_page_cap(transport, monkeypatch):
    monkeypatch.setattr(provider_client, "TRANSACTIONS_PAGE_SIZE", 1)

    def page(parsed):
        number = parse_qs(parsed.query)["page"][0]
        return {"results": [{"id": f"p{number}", "amount": 1.0, "date": "2024-03-01"}]}

    transport({("GET", "/transactions"): page})
    txns = ProviderClient(make_settings()).list_transactions("acc-1")
    assert len(txns) == provider_client.TRANSACTIONS_MAX_PAGES


@pytest.mark.parametrize(
    "failure",
    [
        HTTPError("https://provider.test/accounts", 500, "boom", {}, None),
        URLError("unreachable"),
        TimeoutError(),
        b"<html>not json</html>",
        {"results": [{"name": "missing id"}]},
        ["not", "an", "object"],
    ],
)
def test_transport_failures_become_provider_unavailable(transport, failure):
    transport({("GET", "/accounts"): failure})
    with pytest.raises(ProviderUnavailable):
        ProviderClient(make_settings()).list_accounts("item-1")


def test_connect_token_and_refresh(transport):
    fake = transport(
        {
            ("POST", "/connect_token"): {"accessToken": "tok-1"},
            ("POST", "/items/item%2F1/sync"): {},
        }
    )
    client = ProviderClient(make_settings())
    assert client.create_connect_token("1") == "tok-1"
    client.refresh_item("item/1")
    assert fake.requests[-1]["method"] == "POST"
