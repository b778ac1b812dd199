from datetime import datetime
from sqlalchemy import Boolean, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column
from ..session import Base
from ..types import UTCDateTime


class CoachPaymentAccount(Base):
    __tablename__ = "coach_payment_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    coach_id: Mapped[int] = mapped_column(Integer, unique=True)
    gateway_account_id: Mapped[str] = mapped_column(String(128))
    charges_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
