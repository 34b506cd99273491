import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator


def _to_decimal(value: object) -> object:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        return value.strip()
    return value


class AccountCategoriesIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    is_inflow: StrictBool = Field(..., alias="isInflow")
    is_outflow: StrictBool = Field(..., alias="isOutflow")


class AccountUpdateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    nickname: Optional[str] = Field(default=None, max_length=50)
    is_active: Optional[StrictBool] = Field(default=None, alias="isActive")
    is_inflow: Optional[StrictBool] = Field(default=None, alias="isInflow")
    is_outflow: Optional[StrictBool] = Field(default=None, alias="isOutflow")

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True)


class ExchangeTokenIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    public_token: str = Field(..., min_length=1, alias="publicToken")
    institution_name: Optional[str] = Field(
        default=None, max_length=200, alias="institutionName"
    )


class ProviderAccount(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    name: Optional[str] = None
    type: Optional[str] = None
    current_balance: Optional[Decimal] = None

    @field_validator("current_balance", mode="before")
    @classmethod
    def normalize_balance(cls, value: object) -> object:
        return _to_decimal(value)


class ProviderTransaction(BaseModel):
    """Signed amount: positive is money in, negative is money out."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    amount: Decimal
    date: dt.date

    @field_validator("amount", mode="before")
    @classmethod
    def normalize_amount(cls, value: object) -> object:
        return _to_decimal(value)


class TransactionPage(BaseModel):
    transactions: list[ProviderTransaction] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ItemCredential(BaseModel):
    access_token: str
    item_id: str
