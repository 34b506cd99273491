from __future__ import annotations

import json
import logging
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

import plaid
import urllib3
from plaid.api import plaid_api
from plaid.model.accounts_balance_get_request import AccountsBalanceGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.item_public_token_exchange_request import (
    ItemPublicTokenExchangeRequest,
)
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_get_request import TransactionsGetRequest
from plaid.model.transactions_get_request_options import (
    TransactionsGetRequestOptions,
)

from config import Settings
from errors import ProviderError, ProviderTransient, ReauthRequired
from schemas import (
    ItemCredential,
    ProviderAccount,
    ProviderTransaction,
    TransactionPage,
)

logger = logging.getLogger(__name__)

REAUTH_ERROR_CODE = "ITEM_LOGIN_REQUIRED"
MAX_TRANSACTIONS_PAGE_SIZE = 500

_PLAID_HOSTS = {
    "sandbox": plaid.Environment.Sandbox,
    "production": plaid.Environment.Production,
}


class AggregationProvider(Protocol):
    def fetch_balances(self, access_token: str) -> list[ProviderAccount]: ...

    def fetch_transactions_page(
        self,
        access_token: str,
        start: date,
        end: date,
        *,
        offset: int,
        count: int,
    ) -> TransactionPage: ...

    def create_link_token(
        self, user_id: int, access_token: Optional[str] = None
    ) -> str: ...

    def exchange_public_token(self, public_token: str) -> ItemCredential: ...


def error_from_code(
    provider_code: Optional[str], message: str
) -> ProviderError:
    if provider_code == REAUTH_ERROR_CODE:
        return ReauthRequired(message, provider_code)
    return ProviderTransient(message, provider_code)


def _translate_api_exception(exc: plaid.ApiException) -> ProviderError:
    try:
        body = json.loads(exc.body or "{}")
    except (TypeError, ValueError):
        body = {}
    provider_code = body.get("error_code")
    message = body.get("error_message") or str(exc.reason or "Plaid API error")
    return error_from_code(provider_code, message)


class PlaidProvider:
    """Plaid-backed implementation of :class:`AggregationProvider`."""

    client_name = "Balance Tracker"

    def __init__(self, settings: Settings) -> None:
        env = (settings.plaid_env or "sandbox").lower()
        if env not in _PLAID_HOSTS:
            raise ValueError(f"Unsupported Plaid environment: {env}")
        self.env = env
        self.client: Optional[plaid_api.PlaidApi] = None
        if settings.plaid_client_id and settings.plaid_secret:
            configuration = plaid.Configuration(
                host=_PLAID_HOSTS[env],
                api_key={
                    "clientId": settings.plaid_client_id,
                    "secret": settings.plaid_secret,
                },
            )
            self.client = plaid_api.PlaidApi(plaid.ApiClient(configuration))

    def _require_client(self) -> plaid_api.PlaidApi:
        if self.client is None:
            raise ProviderTransient("Plaid credentials not set")
        return self.client

    def _call(self, endpoint: str, fn, request) -> dict:
        client = self._require_client()
        logger.info(f"plaid_call: endpoint={endpoint} env={self.env}")
        try:
            response = fn(client, request)
        except plaid.ApiException as exc:
            error = _translate_api_exception(exc)
            logger.warning(
                f"plaid_call_failed: endpoint={endpoint} code={error.provider_code}"
            )
            raise error from exc
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            logger.warning(f"plaid_call_failed: endpoint={endpoint} transport_error")
            raise ProviderTransient(f"Plaid {endpoint} unreachable") from exc
        return response.to_dict()

    def fetch_balances(self, access_token: str) -> list[ProviderAccount]:
        payload = self._call(
            "accounts_balance_get",
            lambda c, r: c.accounts_balance_get(r),
            AccountsBalanceGetRequest(access_token=access_token),
        )
        accounts = []
        for raw in payload.get("accounts", []):
            balances = raw.get("balances") or {}
            accounts.append(
                ProviderAccount(
                    account_id=raw["account_id"],
                    name=raw.get("name"),
                    type=str(raw["type"]) if raw.get("type") is not None else None,
                    current_balance=balances.get("current"),
                )
            )
        return accounts

    def fetch_transactions_page(
        self,
        access_token: str,
        start: date,
        end: date,
        *,
        offset: int,
        count: int = MAX_TRANSACTIONS_PAGE_SIZE,
    ) -> TransactionPage:
        payload = self._call(
            "transactions_get",
            lambda c, r: c.transactions_get(r),
            TransactionsGetRequest(
                access_token=access_token,
                start_date=start,
                end_date=end,
                options=TransactionsGetRequestOptions(offset=offset, count=count),
            ),
        )
        # Plaid reports money leaving an account as a positive amount.
        transactions = [
            ProviderTransaction(
                account_id=raw["account_id"],
                amount=-_plaid_amount(raw["amount"]),
                date=raw["date"],
            )
            for raw in payload.get("transactions", [])
        ]
        return TransactionPage(
            transactions=transactions,
            total=int(payload.get("total_transactions", len(transactions))),
        )

    def create_link_token(
        self, user_id: int, access_token: Optional[str] = None
    ) -> str:
        options = dict(
            client_name=self.client_name,
            country_codes=[CountryCode("US")],
            language="en",
            user=LinkTokenCreateRequestUser(client_user_id=str(user_id)),
        )
        # Update mode: Plaid rejects products alongside an existing access token.
        if access_token:
            options["access_token"] = access_token
        else:
            options["products"] = [Products("transactions")]
        payload = self._call(
            "link_token_create",
            lambda c, r: c.link_token_create(r),
            LinkTokenCreateRequest(**options),
        )
        return payload["link_token"]

    def exchange_public_token(self, public_token: str) -> ItemCredential:
        payload = self._call(
            "item_public_token_exchange",
            lambda c, r: c.item_public_token_exchange(r),
            ItemPublicTokenExchangeRequest(public_token=public_token),
        )
        return ItemCredential(
            access_token=payload["access_token"], item_id=payload["item_id"]
        )


def _plaid_amount(value: object) -> Decimal:
    return Decimal(str(value))


def build_provider(settings: Settings) -> AggregationProvider:
    return PlaidProvider(settings)
