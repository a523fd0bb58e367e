from datetime import datetime
from typing import Optional, Dict, Any, Literal, Union
from pydantic import BaseModel, Field, ConfigDict

class TriggerResponse(BaseModel):
    """Response schema for backfill / recalculation triggers."""
    success: bool = Field(..., description="Whether a task was scheduled")
    status: Literal["scheduled", "already_running", "unavailable"] = Field(..., description="Trigger outcome")
    task_id: Optional[str] = Field(None, description="Handle for polling the task")
    message: str = Field(..., description="Human-readable outcome")

class TaskResponse(BaseModel):
    """Response schema for a background task handle."""
    model_config = ConfigDict(from_attributes=True)

    id: Union[int, str]
    kind: str
    server_id: int
    status: str
    params: Optional[Dict[str, Any]] = None
    activities_processed: Optional[int] = 0
    anomalies_detected: Optional[int] = 0
    fingerprints_updated: Optional[int] = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    error_message: Optional[str] = None

class ActiveTaskResponse(BaseModel):
    kind: str
    server_id: int
    active: bool
