"""Holiday Pydantic v2 schemas."""

from __future__ import annotations

import uuid
import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HolidayCreate(BaseModel):
    """Payload for adding a public holiday to a country calendar."""

    name: str = Field(..., min_length=2, max_length=150)
    date: datetime.date
    country_code: str = Field(..., min_length=2, max_length=2)
    is_recurring: bool = False

    @field_validator("country_code")
    @classmethod
    def upper_country(cls, v: str) -> str:
        return v.upper()


class HolidayOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    date: datetime.date
    country_code: str
    is_recurring: bool = False
