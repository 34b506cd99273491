from datetime import date
from typing import Optional


class BalanceTrackerError(Exception):
    code = "INTERNAL_SERVER_ERROR"


class PersistenceError(BalanceTrackerError):
    code = "PERSISTENCE_ERROR"


class DuplicateSnapshot(BalanceTrackerError):
    code = "DUPLICATE_SNAPSHOT"

    def __init__(self, account_id: int, snapshot_date: date) -> None:
        super().__init__(
            f"Snapshot for account {account_id} on "
            f"{snapshot_date.isoformat()} already exists"
        )
        self.account_id = account_id
        self.snapshot_date = snapshot_date


class ValidationError(BalanceTrackerError, ValueError):
    code = "VALIDATION_ERROR"


class AccountNotFound(BalanceTrackerError, LookupError):
    code = "ACCOUNT_NOT_FOUND"


class AccountAccessDenied(BalanceTrackerError):
    code = "FORBIDDEN"


class Unauthorized(BalanceTrackerError):
    code = "UNAUTHORIZED"


class ProviderError(BalanceTrackerError):
    """Failure reported by (or while talking to) the aggregation provider."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider_code = provider_code


class ReauthRequired(ProviderError):
    """The stored item credential no longer authorizes data access."""

    code = "REAUTH_REQUIRED"


class ProviderTransient(ProviderError):
    code = "PROVIDER_ERROR"
