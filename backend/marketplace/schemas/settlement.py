"""Scheduler trigger schemas."""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .base import StrictRequestModel


class CronRequest(StrictRequestModel):
    job: Literal["hourly", "daily", "weekly"]
    now: Optional[datetime] = Field(None, description="Replay the jobs as of this instant")


class JobReportResponse(BaseModel):
    job: str
    processed: int
    succeeded: int
    failed: int
    skipped: int
    failures: Dict[str, str]


class CronResponse(BaseModel):
    job: str
    reports: List[JobReportResponse]
