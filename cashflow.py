import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from schemas import ProviderTransaction

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


@dataclass(frozen=True)
class AccountFlags:
    is_inflow: bool = False
    is_outflow: bool = False


@dataclass(frozen=True)
class Categorization:
    is_inflow: bool
    is_outflow: bool
    amount: Decimal


@dataclass(frozen=True)
class CashFlowTotals:
    total_inflow: Decimal
    total_outflow: Decimal


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def categorize_transaction(
    txn: ProviderTransaction, flags: AccountFlags
) -> Categorization:
    is_inflow = flags.is_inflow and txn.amount > 0
    # Money leaving an inflow account (rent paid from the salary account)
    # is still an outflow.
    is_outflow = (flags.is_outflow and txn.amount < 0) or (
        flags.is_inflow and txn.amount < 0
    )
    amount = abs(txn.amount) if (is_inflow or is_outflow) else ZERO
    return Categorization(is_inflow=is_inflow, is_outflow=is_outflow, amount=amount)


def calculate_cash_flow(
    transactions: Iterable[ProviderTransaction],
    account_flags: Mapping[str, AccountFlags],
) -> CashFlowTotals:
    """Sum inflow and outflow for transactions of the mapped accounts.

    ``account_flags`` is keyed by provider account id. Transactions of
    accounts missing from the mapping are ignored. Rounding to cents is
    applied once, on the accumulated totals.
    """
    total_inflow = ZERO
    total_outflow = ZERO
    skipped = 0
    for txn in transactions:
        flags = account_flags.get(txn.account_id)
        if flags is None:
            skipped += 1
            continue
        result = categorize_transaction(txn, flags)
        if result.is_inflow:
            total_inflow += result.amount
        elif result.is_outflow:
            total_outflow += result.amount
    if skipped:
        logger.debug(f"cash_flow: skipped_unmapped={skipped}")
    return CashFlowTotals(
        total_inflow=to_cents(total_inflow), total_outflow=to_cents(total_outflow)
    )
