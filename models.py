from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    provider_item_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    provider_account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    account_name: Mapped[Optional[str]] = mapped_column(String(200))
    account_type: Mapped[Optional[str]] = mapped_column(String(50))
    institution_name: Mapped[Optional[str]] = mapped_column(String(200))
    nickname: Mapped[Optional[str]] = mapped_column(String(50))
    is_inflow: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_outflow: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    needs_reauthentication: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    snapshots: Mapped[list["BalanceSnapshot"]] = relationship(
        "BalanceSnapshot", back_populates="account"
    )

    __table_args__ = (
        UniqueConstraint(
            "provider_item_id",
            "provider_account_id",
            name="uq_account_item_provider_account",
        ),
        Index("ix_accounts_user", "user_id"),
        Index("ix_accounts_item", "provider_item_id"),
    )


class BalanceSnapshot(Base):
    __tablename__ = "balance_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    account: Mapped["Account"] = relationship("Account", back_populates="snapshots")

    __table_args__ = (
        UniqueConstraint(
            "account_id", "snapshot_date", name="uq_snapshot_account_date"
        ),
        Index("ix_snapshots_date", "snapshot_date"),
    )
