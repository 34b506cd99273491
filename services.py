from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterator, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from cashflow import ZERO, AccountFlags, calculate_cash_flow, to_cents
from errors import (
    AccountAccessDenied,
    AccountNotFound,
    DuplicateSnapshot,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from models import Account, BalanceSnapshot
from periods import (
    HISTORY_DEFAULT_DAYS,
    YearMonth,
    format_timestamp,
    local_now,
    local_today,
    month_start,
    month_to_date,
    next_month_start,
)
from provider import MAX_TRANSACTIONS_PAGE_SIZE, AggregationProvider
from schemas import ProviderTransaction

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@contextmanager
def _storage(session: Session, action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"storage_error: action={action} error={type(exc).__name__}")
        raise PersistenceError(f"Could not {action}") from exc


def as_money(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return to_cents(value)
    return to_cents(Decimal(str(value)))


class AccountStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(
        self,
        *,
        user_id: int,
        provider_item_id: str,
        provider_access_token: str,
        provider_account_id: str,
        account_name: Optional[str] = None,
        account_type: Optional[str] = None,
        institution_name: Optional[str] = None,
    ) -> Account:
        account = Account(
            user_id=user_id,
            provider_item_id=provider_item_id,
            provider_access_token=provider_access_token,
            provider_account_id=provider_account_id,
            account_name=account_name,
            account_type=account_type,
            institution_name=institution_name,
        )
        with _storage(self.session, "save account"):
            self.session.add(account)
            self.session.commit()
            self.session.refresh(account)
        return account

    def get(self, account_id: int) -> Account:
        with _storage(self.session, "find account"):
            account = self.session.get(Account, account_id)
        if account is None:
            raise AccountNotFound("Account not found")
        return account

    def list_for_user(self, user_id: int) -> list[Account]:
        stmt = select(Account).where(Account.user_id == user_id).order_by(Account.id)
        with _storage(self.session, "find accounts by user"):
            return list(self.session.scalars(stmt).all())

    def list_for_item(self, provider_item_id: str) -> list[Account]:
        """Active accounts of one item, including the ones flagged for reauth."""
        stmt = (
            select(Account)
            .where(
                Account.provider_item_id == provider_item_id,
                Account.is_active.is_(True),
            )
            .order_by(Account.id)
        )
        with _storage(self.session, "find accounts by item"):
            return list(self.session.scalars(stmt).all())

    def find_by_provider_ids(
        self, provider_item_id: str, provider_account_id: str
    ) -> Optional[Account]:
        stmt = select(Account).where(
            Account.provider_item_id == provider_item_id,
            Account.provider_account_id == provider_account_id,
        )
        with _storage(self.session, "find account by provider ids"):
            return self.session.scalar(stmt)

    def list_active(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(
                Account.needs_reauthentication.is_(False),
                Account.is_active.is_(True),
            )
            .order_by(Account.id)
        )
        with _storage(self.session, "find active accounts"):
            return list(self.session.scalars(stmt).all())

    def update_categories(
        self, account_id: int, is_inflow: bool, is_outflow: bool
    ) -> Account:
        account = self.get(account_id)
        with _storage(self.session, "update account categories"):
            account.is_inflow = is_inflow
            account.is_outflow = is_outflow
            self.session.commit()
            self.session.refresh(account)
        return account

    def update(self, account_id: int, **changes: object) -> Account:
        account = self.get(account_id)
        with _storage(self.session, "update account"):
            for key, value in changes.items():
                setattr(account, key, value)
            self.session.commit()
            self.session.refresh(account)
        return account

    def set_needs_reauthentication(
        self, provider_item_id: str, value: bool
    ) -> list[Account]:
        """Flag every account of the item; the credential is shared per item."""
        stmt = select(Account).where(Account.provider_item_id == provider_item_id)
        with _storage(self.session, "set needs_reauthentication flag"):
            accounts = list(self.session.scalars(stmt).all())
            for account in accounts:
                account.needs_reauthentication = value
            self.session.commit()
        return accounts

    def deactivate(self, account_id: int) -> Account:
        account = self.get(account_id)
        with _storage(self.session, "deactivate account"):
            account.is_active = False
            self.session.commit()
            self.session.refresh(account)
        return account


class BalanceSnapshotStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def save(
        self, account_id: int, balance: object, snapshot_date: date
    ) -> BalanceSnapshot:
        """Insert the snapshot, never overwriting an existing (account, date) row."""
        if self.on_date(account_id, snapshot_date) is not None:
            raise DuplicateSnapshot(account_id, snapshot_date)

        snapshot = BalanceSnapshot(
            account_id=account_id,
            balance=as_money(balance),
            snapshot_date=snapshot_date,
        )
        self.session.add(snapshot)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            # A concurrent run may have inserted the row since the check above.
            if self.on_date(account_id, snapshot_date) is not None:
                raise DuplicateSnapshot(account_id, snapshot_date) from exc
            raise PersistenceError("Could not save balance snapshot") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError("Could not save balance snapshot") from exc
        self.session.refresh(snapshot)
        return snapshot

    def latest(self, account_id: int) -> Optional[BalanceSnapshot]:
        stmt = (
            select(BalanceSnapshot)
            .where(BalanceSnapshot.account_id == account_id)
            .order_by(BalanceSnapshot.snapshot_date.desc())
            .limit(1)
        )
        with _storage(self.session, "get latest snapshot"):
            return self.session.scalar(stmt)

    def on_date(self, account_id: int, on: date) -> Optional[BalanceSnapshot]:
        stmt = select(BalanceSnapshot).where(
            BalanceSnapshot.account_id == account_id,
            BalanceSnapshot.snapshot_date == on,
        )
        with _storage(self.session, "get snapshot for account on date"):
            return self.session.scalar(stmt)

    def first_in_month(
        self, account_id: int, year: int, month: int
    ) -> Optional[BalanceSnapshot]:
        """Earliest snapshot recorded in the month.

        This is not necessarily the balance on the 1st: an account linked
        mid-month, or days the sync missed, push it later.
        """
        stmt = (
            select(BalanceSnapshot)
            .where(
                BalanceSnapshot.account_id == account_id,
                BalanceSnapshot.snapshot_date >= month_start(year, month),
                BalanceSnapshot.snapshot_date < next_month_start(year, month),
            )
            .order_by(BalanceSnapshot.snapshot_date.asc())
            .limit(1)
        )
        with _storage(self.session, "get first snapshot for account in month"):
            return self.session.scalar(stmt)

    def range_for_accounts(
        self, account_ids: Sequence[int], start: date, end_inclusive: date
    ) -> list[BalanceSnapshot]:
        if not account_ids:
            return []
        stmt = (
            select(BalanceSnapshot)
            .where(
                BalanceSnapshot.account_id.in_(list(account_ids)),
                BalanceSnapshot.snapshot_date >= start,
                BalanceSnapshot.snapshot_date <= end_inclusive,
            )
            .order_by(BalanceSnapshot.snapshot_date, BalanceSnapshot.account_id)
        )
        with _storage(self.session, "get snapshots in date range"):
            return list(self.session.scalars(stmt).all())


class TransactionFetcher:
    page_size = MAX_TRANSACTIONS_PAGE_SIZE

    def __init__(self, provider: AggregationProvider) -> None:
        self.provider = provider

    def fetch_month_to_date(
        self, access_token: str, today: Optional[date] = None
    ) -> list[ProviderTransaction]:
        # Always from the 1st so accounts linked mid-month get the full month.
        period = month_to_date(today or local_today())
        fetched: list[ProviderTransaction] = []
        while True:
            page = self.provider.fetch_transactions_page(
                access_token,
                period.start,
                period.end,
                offset=len(fetched),
                count=self.page_size,
            )
            fetched.extend(page.transactions)
            if len(fetched) >= page.total or not page.transactions:
                break
        return fetched


def _account_summary(
    account: Account, latest: Optional[BalanceSnapshot]
) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.account_name,
        "nickname": account.nickname,
        "type": account.account_type,
        "institution": account.institution_name,
        "isInflow": account.is_inflow,
        "isOutflow": account.is_outflow,
        "isActive": account.is_active,
        "needsReauthentication": account.needs_reauthentication,
        "currentBalance": latest.balance if latest else ZERO,
        "lastUpdated": latest.snapshot_date.isoformat() if latest else None,
    }


class BalanceService:
    def __init__(self, session: Session) -> None:
        self.accounts = AccountStore(session)
        self.snapshots = BalanceSnapshotStore(session)

    def current_for_user(self, user_id: int) -> dict[str, object]:
        summaries = []
        total = ZERO
        for account in self.accounts.list_for_user(user_id):
            latest = self.snapshots.latest(account.id)
            summary = _account_summary(account, latest)
            total += summary["currentBalance"]
            summaries.append(summary)
        return {"accounts": summaries, "totalBalance": to_cents(total)}


class BalanceHistoryService:
    def __init__(self, session: Session) -> None:
        self.accounts = AccountStore(session)
        self.snapshots = BalanceSnapshotStore(session)

    def history_for_user(
        self,
        user_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
        *,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        end = end or today or local_today()
        start = start or (end - timedelta(days=HISTORY_DEFAULT_DAYS))
        if start > end:
            raise ValidationError("startDate cannot be after endDate.")

        date_range = {"startDate": start.isoformat(), "endDate": end.isoformat()}
        accounts = self.accounts.list_for_user(user_id)
        if not accounts:
            return {"dateRange": date_range, "accounts": [], "totalHistory": []}

        snapshots = self.snapshots.range_for_accounts(
            [a.id for a in accounts], start, end
        )
        by_account: dict[int, list[BalanceSnapshot]] = defaultdict(list)
        by_date: dict[date, Decimal] = defaultdict(lambda: ZERO)
        for snapshot in snapshots:
            by_account[snapshot.account_id].append(snapshot)
            # Only accounts that reported on a date count towards it.
            by_date[snapshot.snapshot_date] += snapshot.balance

        return {
            "dateRange": date_range,
            "accounts": [
                {
                    "id": account.id,
                    "name": account.account_name,
                    "type": account.account_type,
                    "institution": account.institution_name,
                    "history": [
                        {"date": s.snapshot_date.isoformat(), "balance": s.balance}
                        for s in by_account.get(account.id, [])
                    ],
                }
                for account in accounts
            ],
            "totalHistory": [
                {"date": day.isoformat(), "totalBalance": to_cents(total)}
                for day, total in sorted(by_date.items())
            ],
        }


def percentage_change(current: Decimal, previous: Decimal) -> Decimal:
    if previous == 0:
        return to_cents(HUNDRED if current > 0 else ZERO)
    return to_cents((current - previous) / previous * HUNDRED)


def trend_of(change: Decimal) -> str:
    if change > 0:
        return "increase"
    if change < 0:
        return "decrease"
    return "no_change"


class MonthlyComparisonService:
    """Month-over-month balance comparison anchored on first-in-month snapshots.

    Only categorized accounts (inflow and/or outflow) take part; a missing
    snapshot counts as a zero balance for that month.
    """

    def __init__(self, session: Session) -> None:
        self.accounts = AccountStore(session)
        self.snapshots = BalanceSnapshotStore(session)

    def _month_block(
        self, accounts: Sequence[Account], month: YearMonth
    ) -> dict[str, object]:
        balances = []
        total = ZERO
        for account in accounts:
            snapshot = self.snapshots.first_in_month(
                account.id, month.year, month.month
            )
            balance = snapshot.balance if snapshot else ZERO
            total += balance
            balances.append(
                {
                    "id": account.id,
                    "name": account.account_name,
                    "balance": to_cents(balance),
                }
            )
        return {
            "year": month.year,
            "month": month.month,
            "monthName": month.name,
            "totalBalance": to_cents(total),
            "accounts": balances,
        }

    def compare(
        self, user_id: int, reference: Optional[date] = None
    ) -> dict[str, object]:
        current_month = YearMonth.of(reference or local_today())
        previous_month = current_month.previous()

        accounts = [
            a
            for a in self.accounts.list_for_user(user_id)
            if a.is_inflow or a.is_outflow
        ]
        current = self._month_block(accounts, current_month)
        previous = self._month_block(accounts, previous_month)

        previous_by_id = {row["id"]: row["balance"] for row in previous["accounts"]}
        account_changes = []
        for row in current["accounts"]:
            before = previous_by_id.get(row["id"], ZERO)
            change = row["balance"] - before
            account_changes.append(
                {
                    "id": row["id"],
                    "name": row["name"],
                    "change": to_cents(change),
                    "percentageChange": percentage_change(row["balance"], before),
                }
            )

        total_change = current["totalBalance"] - previous["totalBalance"]
        return {
            "currentMonth": current,
            "previousMonth": previous,
            "comparison": {
                "totalChange": to_cents(total_change),
                "percentageChange": percentage_change(
                    current["totalBalance"], previous["totalBalance"]
                ),
                "trend": trend_of(total_change),
                "accountChanges": account_changes,
            },
        }


class CashFlowService:
    def __init__(self, session: Session, provider: AggregationProvider) -> None:
        self.accounts = AccountStore(session)
        self.fetcher = TransactionFetcher(provider)

    def monthly_for_user(
        self, user_id: int, now: Optional[datetime] = None
    ) -> dict[str, object]:
        now = now or local_now()
        period = month_to_date(now.date())
        accounts = [
            a
            for a in self.accounts.list_for_user(user_id)
            if a.is_active and not a.needs_reauthentication
        ]

        transactions: list[ProviderTransaction] = []
        seen_tokens: set[str] = set()
        for account in accounts:
            token = account.provider_access_token
            if not token or token in seen_tokens:
                continue
            seen_tokens.add(token)
            try:
                transactions.extend(self.fetcher.fetch_month_to_date(token, period.end))
            except ProviderError as exc:
                logger.warning(
                    f"cash_flow_fetch_failed: item={account.provider_item_id} "
                    f"code={exc.provider_code} kind={type(exc).__name__}"
                )

        flags = {
            a.provider_account_id: AccountFlags(a.is_inflow, a.is_outflow)
            for a in accounts
        }
        totals = calculate_cash_flow(transactions, flags)
        return {
            "monthlyInflow": totals.total_inflow,
            "monthlyOutflow": totals.total_outflow,
            "periodStart": period.start.isoformat(),
            "periodEnd": period.end.isoformat(),
            "lastUpdated": format_timestamp(now),
        }


class AccountService:
    def __init__(
        self, session: Session, provider: Optional[AggregationProvider] = None
    ) -> None:
        self.accounts = AccountStore(session)
        self.snapshots = BalanceSnapshotStore(session)
        self.provider = provider

    def _owned(self, account_id: int, user_id: int) -> Account:
        account = self.accounts.get(account_id)
        if account.user_id != user_id:
            raise AccountAccessDenied("Unauthorized to access this account")
        return account

    def list_for_user(self, user_id: int) -> list[dict[str, object]]:
        return [
            _account_summary(account, self.snapshots.latest(account.id))
            for account in self.accounts.list_for_user(user_id)
        ]

    def get_for_user(self, account_id: int, user_id: int) -> dict[str, object]:
        account = self._owned(account_id, user_id)
        return _account_summary(account, self.snapshots.latest(account.id))

    def update_categories(
        self, account_id: int, user_id: int, is_inflow: bool, is_outflow: bool
    ) -> dict[str, object]:
        self._owned(account_id, user_id)
        account = self.accounts.update_categories(account_id, is_inflow, is_outflow)
        logger.info(
            f"account_categories_updated: account={account.id} "
            f"inflow={account.is_inflow} outflow={account.is_outflow}"
        )
        return {
            "accountId": account.id,
            "categories": {
                "isInflow": account.is_inflow,
                "isOutflow": account.is_outflow,
            },
        }

    def deactivate(self, account_id: int, user_id: int) -> dict[str, object]:
        account = self._owned(account_id, user_id)
        if not account.is_active:
            raise ValidationError("Account is already deactivated")
        self.accounts.deactivate(account_id)
        logger.info(f"account_deactivated: account={account_id}")
        return {"accountId": account_id}

    def update_account(
        self, account_id: int, user_id: int, changes: dict[str, object]
    ) -> dict[str, object]:
        """Apply a partial update; ``is_active=True`` undoes a deactivation."""
        self._owned(account_id, user_id)
        if not changes:
            raise ValidationError("No valid updates provided")
        for key in ("is_active", "is_inflow", "is_outflow"):
            if key in changes and not isinstance(changes[key], bool):
                raise ValidationError(f"{key} must be a boolean value")
        if isinstance(changes.get("nickname"), str):
            changes = {**changes, "nickname": changes["nickname"].strip() or None}
        account = self.accounts.update(account_id, **changes)
        logger.info(
            f"account_updated: account={account.id} fields={','.join(sorted(changes))}"
        )
        return _account_summary(account, self.snapshots.latest(account.id))

    def statistics(self, user_id: int) -> dict[str, object]:
        summaries = self.list_for_user(user_id)
        by_type: dict[str, dict[str, object]] = {}
        by_institution: dict[str, dict[str, object]] = {}
        for summary in summaries:
            for groups, key in (
                (by_type, summary["type"]),
                (by_institution, summary["institution"]),
            ):
                group = groups.setdefault(
                    key or "unknown", {"count": 0, "totalBalance": ZERO}
                )
                group["count"] += 1
                group["totalBalance"] += summary["currentBalance"]
        return {
            "totalAccounts": len(summaries),
            "activeAccounts": sum(1 for s in summaries if s["isActive"]),
            "inactiveAccounts": sum(1 for s in summaries if not s["isActive"]),
            "accountsNeedingReauth": sum(
                1 for s in summaries if s["needsReauthentication"]
            ),
            "totalBalance": to_cents(
                sum((s["currentBalance"] for s in summaries), ZERO)
            ),
            "accountsByType": by_type,
            "accountsByInstitution": by_institution,
        }

    def owned_item(self, provider_item_id: str, user_id: int) -> list[Account]:
        accounts = self.accounts.list_for_item(provider_item_id)
        if not accounts:
            raise AccountNotFound("Item not found")
        if any(a.user_id != user_id for a in accounts):
            raise AccountAccessDenied("Unauthorized to access this item")
        return accounts

    def create_link_token(
        self, user_id: int, provider_item_id: Optional[str] = None
    ) -> str:
        """Link token for a new item, or update mode for an existing one."""
        access_token = None
        if provider_item_id is not None:
            item = self.owned_item(provider_item_id, user_id)
            access_token = item[0].provider_access_token
        return self._require_provider().create_link_token(
            user_id, access_token=access_token
        )

    def link_item(
        self, user_id: int, public_token: str, institution_name: Optional[str]
    ) -> list[Account]:
        """Exchange a public token and store one row per returned account.

        Re-linking an item that is already stored refreshes the credential on
        its existing rows instead of inserting duplicates.
        """
        provider = self._require_provider()
        credential = provider.exchange_public_token(public_token)
        linked = []
        for remote in provider.fetch_balances(credential.access_token):
            existing = self.accounts.find_by_provider_ids(
                credential.item_id, remote.account_id
            )
            if existing is None:
                account = self.accounts.create(
                    user_id=user_id,
                    provider_item_id=credential.item_id,
                    provider_access_token=credential.access_token,
                    provider_account_id=remote.account_id,
                    account_name=remote.name,
                    account_type=remote.type,
                    institution_name=institution_name,
                )
            elif existing.user_id != user_id:
                raise AccountAccessDenied("Unauthorized to access this item")
            else:
                account = self.accounts.update(
                    existing.id, provider_access_token=credential.access_token
                )
            linked.append(account)
        logger.info(f"item_linked: item={credential.item_id} accounts={len(linked)}")
        return linked

    def _require_provider(self) -> AggregationProvider:
        if self.provider is None:
            raise RuntimeError("AccountService needs a provider for this operation")
        return self.provider
