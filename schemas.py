from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CategoryCpiOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category_id: int
    category_name: Optional[str] = None
    spending: Decimal
    weight_percent: Optional[Decimal] = None
    mom_change_percent: Optional[Decimal] = None
    yoy_change_percent: Optional[Decimal] = None


class PersonalCpiOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: int
    month: int
    total_spending: Decimal
    mom_change_percent: Optional[Decimal] = None
    yoy_change_percent: Optional[Decimal] = None
    calculated_at: datetime
    categories: list[CategoryCpiOut] = Field(default_factory=list)


class OfficialCpiOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: int
    month: int
    category_id: Optional[int] = None
    index_value: Decimal
    mom_change_percent: Optional[Decimal] = None
    yoy_change_percent: Optional[Decimal] = None


class OfficialCpiIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    year: int = Field(..., ge=1900, le=9999)
    month: int = Field(..., ge=1, le=12)
    category_id: Optional[int] = None
    index_value: Decimal = Field(..., gt=0, max_digits=10, decimal_places=3)
    mom_change_percent: Optional[Decimal] = Field(default=None, decimal_places=2)
    yoy_change_percent: Optional[Decimal] = Field(default=None, decimal_places=2)


class ComparisonOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    year: int
    month: int
    personal_total_spending: Decimal
    personal_mom_change_percent: Optional[Decimal] = None
    personal_yoy_change_percent: Optional[Decimal] = None
    official_index_value: Decimal
    official_mom_change_percent: Optional[Decimal] = None
    official_yoy_change_percent: Optional[Decimal] = None
    delta_mom: Optional[Decimal] = None
    delta_yoy: Optional[Decimal] = None
    message: str


class RecomputeTaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    user_id: int
    state: str
    months_processed: Optional[int] = None
    error: Optional[str] = None
    submitted_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class IngestionSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    start_year: int
    end_year: int
    series_requested: int
    series_stored: int
    points_upserted: int
    points_skipped: int
    unmapped_series: list[str] = Field(default_factory=list)


class MessageOut(BaseModel):
    message: str
