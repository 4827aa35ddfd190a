"""Escrow deposit model."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from disbursement_engine.models.base import Base, TimestampMixin


class EscrowDeposit(Base, TimestampMixin):
    """Funds paid into the bank-controlled escrow pool.

    Only ``authorized_amount`` of a completed deposit is ever spendable.
    """

    __tablename__ = "escrow_deposit"

    deposit_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    business_id: Mapped[UUID] = mapped_column(
        ForeignKey("business.business_id", ondelete="CASCADE"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(nullable=False)
    authorized_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    bank_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="escrow_deposit_amount_check"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'rejected')",
            name="escrow_deposit_status_check",
        ),
        Index("ix_escrow_deposit_business_status", "business_id", "status"),
    )
