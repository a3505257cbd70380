# models.py

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from database import Base


# Job lifecycle
QUEUED = "QUEUED"
RUNNING = "RUNNING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
TERMINAL_STATUSES = (SUCCEEDED, FAILED)

# Allowed job status transitions; terminal -> QUEUED only happens on explicit restart
# QUEUED -> FAILED only when the job could not be handed to the worker
JOB_TRANSITIONS = {
    QUEUED: {RUNNING, FAILED},
    RUNNING: {SUCCEEDED, FAILED},
    SUCCEEDED: {QUEUED},
    FAILED: {QUEUED},
}

# Scene image claim states
IMAGE_GENERATING = "GENERATING"
IMAGE_SUCCEEDED = "SUCCEEDED"
IMAGE_FAILED = "FAILED"

# Asset kinds
ASSET_IMAGE = "image"
ASSET_AUDIO = "audio"
ASSET_JSON = "json"


def utcnow():
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class InvalidTransition(Exception):
    """Raised when a job status change would break the monotonic lifecycle."""


class JobNotFound(Exception):
    """Raised when a job id does not exist."""


class SceneNotFound(Exception):
    """Raised when a scene index does not exist for a job."""


def check_transition(current: str, target: str) -> None:
    if target not in JOB_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Job cannot move from {current} to {target}.")


class Job(Base):
    """One end-to-end content generation request and its accumulated state."""

    __tablename__ = "jobs"

    id = Column(String, primary_key=True, index=True, default=new_id)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    status = Column(String, default=QUEUED, index=True)  # QUEUED, RUNNING, SUCCEEDED, FAILED
    input = Column(JSON, nullable=False)
    autoconfig = Column(JSON, nullable=True)
    script_package = Column(JSON, nullable=True)
    final_package = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    trace_id = Column(String, nullable=False, default=new_id)
    runtime = Column(JSON, nullable=True)
    runtime_version = Column(Integer, nullable=False, default=0)

    scenes = relationship(
        "Scene", back_populates="job", cascade="all, delete-orphan",
        order_by="Scene.scene_index", passive_deletes=True,
    )
    assets = relationship("Asset", back_populates="job", cascade="all, delete-orphan", passive_deletes=True)
    logs = relationship(
        "JobLog", back_populates="job", cascade="all, delete-orphan",
        order_by="JobLog.id", passive_deletes=True,
    )


class Scene(Base):
    """One unit of the generated script, plus its image-generation claim."""

    __tablename__ = "scenes"
    __table_args__ = (UniqueConstraint("job_id", "scene_index", name="scenes_job_scene_unique"),)

    id = Column(String, primary_key=True, default=new_id)
    job_id = Column(String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    scene_index = Column(Integer, nullable=False)
    narration = Column(Text, nullable=True)
    on_screen_text = Column(Text, nullable=True)
    visual_brief = Column(Text, nullable=True)
    mood = Column(String, nullable=True)
    duration_sec = Column(Integer, nullable=True)
    image_prompt = Column(Text, nullable=True)
    image_path = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    audio_path = Column(String, nullable=True)
    audio_url = Column(String, nullable=True)

    image_gen_status = Column(String, nullable=True, index=True)  # None, GENERATING, SUCCEEDED, FAILED
    image_gen_request_id = Column(String, nullable=True)
    image_gen_started_at = Column(DateTime(timezone=True), nullable=True)
    image_gen_error = Column(Text, nullable=True)

    job = relationship("Job", back_populates="scenes")


class Asset(Base):
    """Append-only record of a stored artifact (audit and listing only)."""

    __tablename__ = "assets"

    id = Column(String, primary_key=True, default=new_id)
    job_id = Column(String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String, nullable=False, index=True)  # image, audio, json
    path = Column(String, nullable=True)
    url = Column(String, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    job = relationship("Job", back_populates="assets")


class JobLog(Base):
    """Append-only runtime log line for one job."""

    __tablename__ = "job_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    ts = Column(DateTime(timezone=True), default=utcnow)
    level = Column(String, nullable=False)  # info, warn, error
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)

    job = relationship("Job", back_populates="logs")
