from datetime import date
from decimal import Decimal

import pytest

from errors import ValidationError
from fakes import add_account
from services import (
    BalanceHistoryService,
    BalanceService,
    BalanceSnapshotStore,
    MonthlyComparisonService,
    percentage_change,
    trend_of,
)


def test_history_sums_only_accounts_reporting_on_each_date(session) -> None:
    a = add_account(session, provider_account_id="a", name="Checking")
    b = add_account(session, provider_account_id="b", name="Savings")
    store = BalanceSnapshotStore(session)
    store.save(a.id, "100", date(2025, 3, 1))
    store.save(b.id, "50", date(2025, 3, 1))
    store.save(a.id, "120", date(2025, 3, 2))

    data = BalanceHistoryService(session).history_for_user(
        1, date(2025, 3, 1), date(2025, 3, 2)
    )

    assert data["dateRange"] == {"startDate": "2025-03-01", "endDate": "2025-03-02"}
    assert data["totalHistory"] == [
        {"date": "2025-03-01", "totalBalance": Decimal("150.00")},
        {"date": "2025-03-02", "totalBalance": Decimal("120.00")},
    ]
    checking, savings = data["accounts"]
    assert [h["date"] for h in checking["history"]] == ["2025-03-01", "2025-03-02"]
    assert [h["balance"] for h in savings["history"]] == [Decimal("50.00")]


def test_history_defaults_to_last_thirty_days(session) -> None:
    account = add_account(session)
    store = BalanceSnapshotStore(session)
    store.save(account.id, "1", date(2025, 2, 13))
    store.save(account.id, "2", date(2025, 2, 12))

    data = BalanceHistoryService(session).history_for_user(1, today=date(2025, 3, 15))

    assert data["dateRange"] == {"startDate": "2025-02-13", "endDate": "2025-03-15"}
    assert [row["date"] for row in data["totalHistory"]] == ["2025-02-13"]


def test_history_without_accounts_is_empty(session) -> None:
    data = BalanceHistoryService(session).history_for_user(
        7, date(2025, 1, 1), date(2025, 1, 31)
    )
    assert data["accounts"] == []
    assert data["totalHistory"] == []


def test_history_rejects_inverted_range(session) -> None:
    with pytest.raises(ValidationError):
        BalanceHistoryService(session).history_for_user(
            1, date(2025, 3, 2), date(2025, 3, 1)
        )


def test_current_balances_use_latest_snapshot(session) -> None:
    a = add_account(session, provider_account_id="a")
    add_account(session, provider_account_id="b")
    store = BalanceSnapshotStore(session)
    store.save(a.id, "10", date(2025, 3, 1))
    store.save(a.id, "25.5", date(2025, 3, 2))

    data = BalanceService(session).current_for_user(1)

    first, second = data["accounts"]
    assert first["currentBalance"] == Decimal("25.50")
    assert first["lastUpdated"] == "2025-03-02"
    assert second["currentBalance"] == Decimal("0")
    assert second["lastUpdated"] is None
    assert data["totalBalance"] == Decimal("25.50")


def test_percentage_change_rules() -> None:
    assert percentage_change(Decimal("3000"), Decimal("2700")) == Decimal("11.11")
    assert percentage_change(Decimal("2700"), Decimal("3000")) == Decimal("-10.00")
    assert str(percentage_change(Decimal("50"), Decimal("0"))) == "100.00"
    assert str(percentage_change(Decimal("0"), Decimal("0"))) == "0.00"
    assert str(percentage_change(Decimal("-5"), Decimal("0"))) == "0.00"
    assert str(percentage_change(Decimal("3000"), Decimal("2700"))) == "11.11"


def test_trend_labels() -> None:
    assert trend_of(Decimal("0.01")) == "increase"
    assert trend_of(Decimal("-0.01")) == "decrease"
    assert trend_of(Decimal("0")) == "no_change"


def test_comparison_uses_first_snapshot_of_each_month(session) -> None:
    account = add_account(session, is_inflow=True)
    store = BalanceSnapshotStore(session)
    store.save(account.id, "2700", date(2025, 2, 3))
    store.save(account.id, "2800", date(2025, 2, 20))
    store.save(account.id, "3000", date(2025, 3, 1))
    store.save(account.id, "3500", date(2025, 3, 14))

    data = MonthlyComparisonService(session).compare(1, date(2025, 3, 15))

    assert data["currentMonth"]["totalBalance"] == Decimal("3000.00")
    assert data["currentMonth"]["monthName"] == "March"
    assert data["previousMonth"]["totalBalance"] == Decimal("2700.00")
    assert data["previousMonth"]["month"] == 2
    comparison = data["comparison"]
    assert comparison["totalChange"] == Decimal("300.00")
    assert comparison["percentageChange"] == Decimal("11.11")
    assert comparison["trend"] == "increase"
    assert comparison["accountChanges"] == [
        {
            "id": account.id,
            "name": "Checking",
            "change": Decimal("300.00"),
            "percentageChange": Decimal("11.11"),
        }
    ]


def test_comparison_wraps_to_december_of_previous_year(session) -> None:
    account = add_account(session, is_outflow=True)
    store = BalanceSnapshotStore(session)
    store.save(account.id, "400", date(2024, 12, 31))
    store.save(account.id, "300", date(2025, 1, 2))

    data = MonthlyComparisonService(session).compare(1, date(2025, 1, 20))

    previous = data["previousMonth"]
    assert (previous["year"], previous["month"]) == (2024, 12)
    assert previous["monthName"] == "December"
    assert previous["totalBalance"] == Decimal("400.00")
    assert data["comparison"]["trend"] == "decrease"
    assert data["comparison"]["percentageChange"] == Decimal("-25.00")


def test_comparison_missing_previous_month_counts_as_zero(session) -> None:
    account = add_account(session, is_inflow=True)
    BalanceSnapshotStore(session).save(account.id, "500", date(2025, 3, 10))

    data = MonthlyComparisonService(session).compare(1, date(2025, 3, 15))

    assert data["previousMonth"]["totalBalance"] == Decimal("0.00")
    assert data["comparison"]["percentageChange"] == Decimal("100")
    assert data["comparison"]["trend"] == "increase"


def test_comparison_ignores_uncategorized_accounts(session) -> None:
    plain = add_account(session, provider_account_id="plain")
    BalanceSnapshotStore(session).save(plain.id, "999", date(2025, 3, 1))

    data = MonthlyComparisonService(session).compare(1, date(2025, 3, 15))

    assert data["currentMonth"]["accounts"] == []
    assert data["currentMonth"]["totalBalance"] == Decimal("0.00")
    assert data["comparison"]["percentageChange"] == Decimal("0")
    assert data["comparison"]["trend"] == "no_change"
