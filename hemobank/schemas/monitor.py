from pydantic import BaseModel
from typing import Optional, Any
from datetime import datetime
from uuid import UUID
from hemobank.models.enums import BloodGroup


class DonorMatchResponse(BaseModel):
    donor_id: UUID
    first_name: str
    last_name: str
    phone: str
    email: Optional[str] = None
    blood_group: BloodGroup
    distance_km: float


class JobStatus(BaseModel):
    name: str
    running: bool
    interval: float
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None
    run_count: int
    next_run: Optional[datetime] = None


class JobRunResult(BaseModel):
    job: str
    result: Any = None
    error: Optional[str] = None


class StockForecast(BaseModel):
    hospital_id: UUID
    blood_group: BloodGroup
    current_stock: int
    avg_daily_collection: float
    avg_daily_usage: float
    net_daily_change: float
    days_until_low: Optional[int] = None
    low_threshold: int
    risk_level: str
    days_of_history: int
