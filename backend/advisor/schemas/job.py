"""Job request/response schemas."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from advisor.schemas.base import CamelModel, CamelResponseModel


class QueryJobCreate(CamelModel):
    """Body of POST /api/jobs/query, also the stored input of query-models jobs."""
    question: str = Field(min_length=1)
    system_prompt: Optional[str] = None
    model_system_prompts: Optional[Dict[str, str]] = None
    models: Optional[List[str]] = None
    session_id: Optional[str] = None

    @field_validator("question")
    @classmethod
    def question_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("question must not be blank")
        return v

    @field_validator("models")
    @classmethod
    def models_not_empty(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        cleaned = [m.strip() for m in v if m and m.strip()]
        return cleaned or None


class QuerySubmitRequest(QueryJobCreate):
    estimated_total_ms: Optional[float] = Field(default=None, gt=0)
    wait_for_completion: bool = False


class JobSubmitted(CamelModel):
    id: str
    status: str
    model_count: int
    estimated_total_ms: float
    progress: int = 0
    result: Optional[Any] = None
    error: Optional[str] = None


class ProgressEntryResponse(CamelResponseModel):
    timestamp: datetime
    percentage: int
    message: str


class JobSummary(CamelResponseModel):
    id: str
    kind: str
    status: str
    progress: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress_updates: int = 0
    target_count: int
    error: Optional[str] = None


class JobResponse(CamelResponseModel):
    id: str
    kind: str
    status: str
    progress: int
    input: dict
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_total_ms: float
    estimated_remaining_ms: float
    target_count: int
    progress_log: List[ProgressEntryResponse] = []

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return getattr(v, "value", v)


class QueueStatisticsResponse(CamelModel):
    total: int
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    max_concurrent: int


class CancelResponse(CamelModel):
    id: str
    status: str
