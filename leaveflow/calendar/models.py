"""Holiday calendar ORM model: PublicHoliday."""

from __future__ import annotations

import uuid
import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from leaveflow.database import Base


class PublicHoliday(Base):
    __tablename__ = "public_holidays"
    __table_args__ = (
        sa.UniqueConstraint("country_code", "date", name="uq_holiday_country_date"),
        sa.Index("ix_public_holidays_country", "country_code"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(150), nullable=False)
    date: Mapped[datetime.date] = mapped_column(sa.Date, nullable=False)
    country_code: Mapped[str] = mapped_column(sa.String(2), nullable=False)
    # Recurring holidays repeat on the same month/day every year
    is_recurring: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        sa.DateTime(timezone=True),
        default=lambda: datetime.datetime.now(datetime.timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<PublicHoliday {self.country_code} {self.date} {self.name!r}>"
