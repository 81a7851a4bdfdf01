from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any


class PlanRequest(BaseModel):
    """Body for creating or refreshing a user's plan."""
    force_refresh: bool = False
    # Diet only: {"cuisine_preferences": {"Indian": ["Vegetarian"]}}; defaults to stored preferences
    preferences: Optional[Dict[str, Any]] = None


class DayMealsResponse(BaseModel):
    day: int = Field(ge=1, le=7)
    day_name: Optional[str]
    meals: List[Dict[str, Any]]
    total_calories: float


class RefreshJobStatsResponse(BaseModel):
    plans_checked: int
    plans_refreshed: int
    plans_skipped: int
    errors: int
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    last_error: Optional[str] = None


class RefreshJobStatusResponse(BaseModel):
    plan_type: str
    is_running: bool
    schedule: str
    next_run: datetime
    last_run: RefreshJobStatsResponse


class GoalChangeResponse(BaseModel):
    user_id: str
    task_id: Optional[str] = None
    status: str = "queued"
