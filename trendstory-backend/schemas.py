"""
Pydantic models for request and response validation in the TrendStory backend.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional


class StartJobRequest(BaseModel):
    """Request model for starting (or restarting) a generation job."""
    topic: str = Field(..., min_length=1, max_length=500)
    language: str = Field("ja", min_length=1, max_length=32)
    audience: str = Field("general", min_length=1, max_length=120)
    hint: Optional[str] = Field(None, max_length=2000)
    reuse_job_id: Optional[str] = None

    @field_validator("topic", "language", "audience", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("hint", "reuse_job_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class StartJobResponse(BaseModel):
    """Response when a job has been queued."""
    job_id: str
    trace_id: str


class JobSummary(BaseModel):
    id: str
    status: str
    created_at: Optional[str] = None
    topic: Optional[str] = None
    error: Optional[str] = None
    trace_id: Optional[str] = None


class JobListResponse(BaseModel):
    jobs: List[JobSummary]


class StatusResponse(BaseModel):
    """Aggregated job state for polling clients."""
    trace_id: str
    status: str  # "QUEUED" | "RUNNING" | "SUCCEEDED" | "FAILED"
    job: Dict[str, Any]
    scenes: List[Dict[str, Any]]
    assets: List[Dict[str, Any]]
    logs: List[Dict[str, Any]]


class SceneImageRequest(BaseModel):
    force: bool = False
    background: bool = False


class SceneImageResponse(BaseModel):
    job_id: str
    scene_index: int
    accepted: bool
    status: str  # "QUEUED" | "ALREADY_EXISTS" | "IN_PROGRESS" | "SUCCEEDED" | "FAILED"
    image_url: Optional[str] = None
    message: Optional[str] = None


class RetryImagesRequest(BaseModel):
    scene_ids: Optional[List[int]] = None
    missing_only: bool = True


class RetryImagesResponse(BaseModel):
    accepted: bool
    attempted: int
    succeeded: int
    failed: int
    skipped: int
    message: str


class RetryAudioRequest(BaseModel):
    scene_ids: Optional[List[int]] = None
    force: bool = False


class AcceptedResponse(BaseModel):
    accepted: bool
    message: str


class ErrorResponse(BaseModel):
    """Uniform error envelope."""
    error: str
    hint: Optional[str] = None
