import json
from datetime import date
from decimal import Decimal

import plaid
import pytest
import urllib3

from config import Settings
from errors import ProviderTransient, ReauthRequired
from provider import PlaidProvider, error_from_code


def _settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite:///:memory:",
        timezone="UTC",
        auth_secret="test-secret",
        access_token_max_age_secs=900,
        plaid_client_id="",
        plaid_secret="",
        plaid_env="sandbox",
        sync_enabled=False,
        sync_hour=3,
        sync_minute=15,
        sync_interval_hours=1,
    )
    values.update(overrides)
    return Settings(**values)


class Response:
    def __init__(self, payload: dict) -> None:
        self.payload = payload

    def to_dict(self) -> dict:
        return self.payload


class StubClient:
    def __init__(self, payload=None, error=None) -> None:
        self.payload = payload or {}
        self.error = error
        self.requests = []

    def _respond(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return Response(self.payload)

    accounts_balance_get = _respond
    transactions_get = _respond
    link_token_create = _respond
    item_public_token_exchange = _respond


def _provider(client: StubClient) -> PlaidProvider:
    provider = PlaidProvider(_settings())
    provider.client = client
    return provider


def _api_error(body: dict) -> plaid.ApiException:
    exc = plaid.ApiException(status=400, reason="Bad Request")
    exc.body = json.dumps(body)
    return exc


def test_unknown_environment_is_rejected() -> None:
    with pytest.raises(ValueError):
        PlaidProvider(_settings(plaid_env="staging"))


def test_missing_credentials_fail_as_transient() -> None:
    provider = PlaidProvider(_settings())
    assert provider.client is None
    with pytest.raises(ProviderTransient):
        provider.fetch_balances("access-1")


def test_fetch_balances_maps_current_balance() -> None:
    client = StubClient(
        {
            "accounts": [
                {
                    "account_id": "chk",
                    "name": "Plaid Checking",
                    "type": "depository",
                    "balances": {"current": 110.15, "available": 100},
                },
                {"account_id": "cc", "name": "Card", "balances": {"current": None}},
            ]
        }
    )

    accounts = _provider(client).fetch_balances("access-1")

    assert [a.account_id for a in accounts] == ["chk", "cc"]
    assert accounts[0].current_balance == Decimal("110.15")
    assert accounts[0].type == "depository"
    assert accounts[1].current_balance is None
    assert client.requests[0].access_token == "access-1"


def test_transaction_amounts_use_positive_for_money_in() -> None:
    client = StubClient(
        {
            "transactions": [
                {"account_id": "chk", "amount": 25.5, "date": date(2025, 3, 2)},
                {"account_id": "chk", "amount": -3000, "date": "2025-03-01"},
            ],
            "total_transactions": 740,
        }
    )

    page = _provider(client).fetch_transactions_page(
        "access-1", date(2025, 3, 1), date(2025, 3, 15), offset=500, count=500
    )

    assert [t.amount for t in page.transactions] == [Decimal("-25.5"), Decimal("3000")]
    assert page.transactions[1].date == date(2025, 3, 1)
    assert page.total == 740
    options = client.requests[0].options
    assert (options.offset, options.count) == (500, 500)


def test_item_login_required_becomes_reauth() -> None:
    client = StubClient(
        error=_api_error(
            {"error_code": "ITEM_LOGIN_REQUIRED", "error_message": "login required"}
        )
    )

    with pytest.raises(ReauthRequired) as excinfo:
        _provider(client).fetch_balances("access-1")

    assert excinfo.value.provider_code == "ITEM_LOGIN_REQUIRED"


def test_other_api_errors_are_transient() -> None:
    client = StubClient(error=_api_error({"error_code": "RATE_LIMIT_EXCEEDED"}))

    with pytest.raises(ProviderTransient) as excinfo:
        _provider(client).fetch_balances("access-1")

    assert excinfo.value.provider_code == "RATE_LIMIT_EXCEEDED"


def test_transport_errors_are_transient() -> None:
    client = StubClient(error=urllib3.exceptions.ProtocolError("connection reset"))

    with pytest.raises(ProviderTransient):
        _provider(client).fetch_balances("access-1")


def test_error_from_code() -> None:
    assert isinstance(error_from_code("ITEM_LOGIN_REQUIRED", "x"), ReauthRequired)
    assert isinstance(error_from_code(None, "x"), ProviderTransient)


def test_link_and_exchange() -> None:
    client = StubClient(
        {
            "link_token": "link-sandbox-abc",
            "access_token": "access-sandbox-1",
            "item_id": "item-1",
        }
    )
    provider = _provider(client)

    assert provider.create_link_token(42) == "link-sandbox-abc"
    credential = provider.exchange_public_token("public-sandbox-1")
    assert credential.access_token == "access-sandbox-1"
    assert credential.item_id == "item-1"


def test_update_mode_link_token_sends_access_token_without_products() -> None:
    client = StubClient({"link_token": "link-sandbox-update"})
    provider = _provider(client)

    assert provider.create_link_token(42, access_token="access-1") == "link-sandbox-update"
    provider.create_link_token(42)

    update, new_item = (request.to_dict() for request in client.requests)
    assert update["access_token"] == "access-1"
    assert "products" not in update
    assert "access_token" not in new_item
    assert new_item["products"]
