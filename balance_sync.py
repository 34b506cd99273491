import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from errors import DuplicateSnapshot, PersistenceError, ProviderError, ReauthRequired
from models import Account
from periods import format_timestamp, local_now
from provider import AggregationProvider
from services import AccountStore, BalanceSnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    started_at: datetime
    groups_total: int = 0
    groups_succeeded: int = 0
    snapshots_written: int = 0
    duplicates_skipped: int = 0
    reauth_item_ids: list[str] = field(default_factory=list)
    failed_item_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "startedAt": format_timestamp(self.started_at),
            "groupsTotal": self.groups_total,
            "groupsSucceeded": self.groups_succeeded,
            "snapshotsWritten": self.snapshots_written,
            "duplicatesSkipped": self.duplicates_skipped,
            "reauthItemIds": list(self.reauth_item_ids),
            "failedItemIds": list(self.failed_item_ids),
        }


class BalanceSyncJob:
    """One pass of the balance sync: fetch, snapshot and flag item health.

    Scheduling is external; every invocation is independent and the next
    one is the retry for anything skipped here.
    """

    def __init__(self, session: Session, provider: AggregationProvider) -> None:
        self.accounts = AccountStore(session)
        self.snapshots = BalanceSnapshotStore(session)
        self.provider = provider

    @staticmethod
    def group_by_credential(accounts: list[Account]) -> "OrderedDict[str, list[Account]]":
        groups: "OrderedDict[str, list[Account]]" = OrderedDict()
        for account in accounts:
            groups.setdefault(account.provider_access_token, []).append(account)
        return groups

    def run_once(self, now: Optional[datetime] = None) -> SyncReport:
        now = now or local_now()
        report = SyncReport(started_at=now)
        try:
            accounts = self.accounts.list_active()
        except PersistenceError:
            logger.exception("balance_sync: could not load active accounts")
            return report

        self._run_groups(accounts, now, report)
        logger.info(
            f"balance_sync: groups={report.groups_total} "
            f"succeeded={report.groups_succeeded} "
            f"snapshots={report.snapshots_written} "
            f"duplicates={report.duplicates_skipped} "
            f"reauth={len(report.reauth_item_ids)} "
            f"failed={len(report.failed_item_ids)}"
        )
        return report

    def sync_item(
        self, provider_item_id: str, now: Optional[datetime] = None
    ) -> SyncReport:
        """Sync one item right away, accounts flagged for reauth included.

        Used after the user re-established access (re-link or update mode);
        success clears the flag, another ReauthRequired keeps it set.
        """
        now = now or local_now()
        report = SyncReport(started_at=now)
        self._run_groups(self.accounts.list_for_item(provider_item_id), now, report)
        logger.info(
            f"balance_sync: item={provider_item_id} "
            f"succeeded={report.groups_succeeded} "
            f"snapshots={report.snapshots_written}"
        )
        return report

    def _run_groups(
        self, accounts: list[Account], now: datetime, report: SyncReport
    ) -> None:
        groups = self.group_by_credential(accounts)
        report.groups_total += len(groups)
        for access_token, group in groups.items():
            item_id = group[0].provider_item_id
            try:
                self._sync_group(access_token, group, now, report)
            except ReauthRequired:
                logger.warning(f"balance_sync: item={item_id} reauth_required")
                report.reauth_item_ids.append(item_id)
                try:
                    self.accounts.set_needs_reauthentication(item_id, True)
                except PersistenceError:
                    logger.exception(
                        f"balance_sync: item={item_id} could not flag reauthentication"
                    )
                    report.failed_item_ids.append(item_id)
            except ProviderError as exc:
                logger.warning(
                    f"balance_sync: item={item_id} provider_error "
                    f"code={exc.provider_code} skipped"
                )
                report.failed_item_ids.append(item_id)
            except Exception:
                logger.exception(f"balance_sync: item={item_id} failed")
                report.failed_item_ids.append(item_id)
            else:
                report.groups_succeeded += 1

    def _sync_group(
        self,
        access_token: str,
        group: list[Account],
        now: datetime,
        report: SyncReport,
    ) -> None:
        remote = {a.account_id: a for a in self.provider.fetch_balances(access_token)}
        today = now.date()
        for account in group:
            remote_account = remote.get(account.provider_account_id)
            if remote_account is None or remote_account.current_balance is None:
                continue
            try:
                self.snapshots.save(account.id, remote_account.current_balance, today)
            except DuplicateSnapshot:
                report.duplicates_skipped += 1
            else:
                report.snapshots_written += 1

        # Only after every snapshot write of the group was attempted.
        self.accounts.set_needs_reauthentication(group[0].provider_item_id, False)
