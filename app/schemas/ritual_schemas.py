from typing import List, Optional
from datetime import date, datetime
from pydantic import BaseModel, Field

from app.db.models import RitualStatus


class SubtaskInput(BaseModel):
    """One step of the morning plan"""

    content: str = Field(..., min_length=1, max_length=500, description="Subtask text")
    order: Optional[int] = Field(
        None, ge=0, description="Position in the plan; defaults to list index"
    )
    done: bool = Field(default=False, description="Whether the subtask is done")


class SubtaskResponse(BaseModel):
    id: str
    content: str
    order: int
    done: bool


class RitualDayResponse(BaseModel):
    """Response schema for a ritual day"""

    id: str = Field(..., description="Ritual day ID")
    user_id: str = Field(..., description="Owner ID")
    local_date: date = Field(..., description="Calendar day in the user's timezone")
    title: str
    note: Optional[str] = None
    status: RitualStatus
    achieved: Optional[bool] = None
    check_in_at: Optional[datetime] = None
    past_due: bool
    subtasks: List[SubtaskResponse] = Field(default_factory=list)
