"""Calendar service — working-day counting and the holiday calendar provider.

``WorkingDayCalculator.count`` is a pure function of its inputs and is
memoized; ``HolidayCalendar`` reads the ``public_holidays`` table and expands
recurring entries into concrete dates for the requested range.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from functools import lru_cache
from typing import Iterable, Optional

from sqlalchemy import extract, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.calendar.models import PublicHoliday
from leaveflow.calendar.schemas import HolidayCreate, HolidayOut
from leaveflow.common.exceptions import ConflictError

logger = logging.getLogger(__name__)

# Saturday (5) and Sunday (6)
WEEKEND_DAYS = frozenset({5, 6})


# ═════════════════════════════════════════════════════════════════════
# WorkingDayCalculator
# ═════════════════════════════════════════════════════════════════════


class WorkingDayCalculator:
    """Business-day arithmetic against a holiday set."""

    @staticmethod
    def count(
        start_date: date,
        end_date: date,
        holidays: Iterable[date] = (),
    ) -> int:
        """Count working days in the inclusive range [start_date, end_date].

        Weekends and dates in *holidays* are excluded. A reversed range
        yields 0; callers validate ordering themselves.
        """
        return _count_cached(start_date, end_date, frozenset(holidays))

    @staticmethod
    def is_working_day(day: date, holidays: Iterable[date] = ()) -> bool:
        return day.weekday() not in WEEKEND_DAYS and day not in set(holidays)

    @staticmethod
    def cache_clear() -> None:
        _count_cached.cache_clear()


@lru_cache(maxsize=4096)
def _count_cached(start_date: date, end_date: date, holidays: frozenset[date]) -> int:
    if start_date > end_date:
        return 0
    days = 0
    current = start_date
    while current <= end_date:
        if current.weekday() not in WEEKEND_DAYS and current not in holidays:
            days += 1
        current += timedelta(days=1)
    return days


# ═════════════════════════════════════════════════════════════════════
# HolidayCalendar
# ═════════════════════════════════════════════════════════════════════


def _recurring_on(holiday_date: date, year: int) -> Optional[date]:
    try:
        return holiday_date.replace(year=year)
    except ValueError:
        # Feb 29 in a non-leap year
        return None


class HolidayCalendar:
    """Holiday set provider backed by the ``public_holidays`` table."""

    @staticmethod
    async def holidays_between(
        db: AsyncSession,
        country_code: str,
        start_date: date,
        end_date: date,
    ) -> frozenset[date]:
        """Return every holiday date for *country_code* inside the range,
        with recurring holidays projected onto each year of the range."""

        if start_date > end_date:
            return frozenset()

        result = await db.execute(
            select(PublicHoliday.date, PublicHoliday.is_recurring).where(
                PublicHoliday.country_code == country_code.upper(),
                or_(
                    PublicHoliday.is_recurring.is_(True),
                    PublicHoliday.date.between(start_date, end_date),
                ),
            )
        )

        dates: set[date] = set()
        for holiday_date, is_recurring in result.all():
            if not is_recurring:
                dates.add(holiday_date)
                continue
            for year in range(start_date.year, end_date.year + 1):
                projected = _recurring_on(holiday_date, year)
                if projected and start_date <= projected <= end_date:
                    dates.add(projected)
        return frozenset(dates)

    @staticmethod
    async def list_holidays(
        db: AsyncSession,
        *,
        country_code: Optional[str] = None,
        year: Optional[int] = None,
    ) -> list[HolidayOut]:
        query = select(PublicHoliday).order_by(PublicHoliday.date)
        if country_code:
            query = query.where(PublicHoliday.country_code == country_code.upper())
        if year is not None:
            query = query.where(
                or_(
                    extract("year", PublicHoliday.date) == year,
                    PublicHoliday.is_recurring.is_(True),
                )
            )
        result = await db.execute(query)
        return [HolidayOut.model_validate(h) for h in result.scalars().all()]

    @staticmethod
    async def add_holiday(db: AsyncSession, data: HolidayCreate) -> HolidayOut:
        existing = await db.execute(
            select(PublicHoliday.id).where(
                PublicHoliday.country_code == data.country_code,
                PublicHoliday.date == data.date,
            )
        )
        if existing.scalar() is not None:
            raise ConflictError("date", f"{data.country_code}:{data.date.isoformat()}")

        holiday = PublicHoliday(
            name=data.name,
            date=data.date,
            country_code=data.country_code,
            is_recurring=data.is_recurring,
        )
        db.add(holiday)
        await db.flush()
        logger.info(
            "Added holiday %s (%s) for %s", data.name, data.date, data.country_code,
        )
        return HolidayOut.model_validate(holiday)
