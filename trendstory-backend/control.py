"""
Job control: starting and restarting jobs, status aggregation, listing and
deletion. Request handlers call these with the client session; deletion runs
in the worker with the service session.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

import config
import database
from models import (
    FAILED,
    QUEUED,
    TERMINAL_STATUSES,
    Asset,
    Job,
    JobLog,
    JobNotFound,
    Scene,
    SceneNotFound,
    check_transition,
    new_id,
    utcnow,
)
from storage import StorageError, job_prefix

__all__ = [
    "JobConflict",
    "JobNotFound",
    "SceneNotFound",
    "start_job",
    "fail_queued_job",
    "get_status",
    "list_jobs",
    "delete_job",
    "ensure_job_exists",
    "clamp_limit",
]


class JobConflict(Exception):
    """Raised when a job cannot be restarted because it is still active."""


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def ensure_job_exists(db: Session, job_id: str) -> Job:
    job = db.get(Job, job_id)
    if job is None:
        raise JobNotFound(f"Job {job_id} not found.")
    return job


# --------------------------------------------------------------------------
# --- Start / restart ---
# --------------------------------------------------------------------------

def start_job(
    db: Session,
    topic: str,
    language: str,
    audience: str,
    hint: Optional[str] = None,
    reuse_job_id: Optional[str] = None,
) -> Tuple[str, str]:
    """Create a QUEUED job, or reset a terminal one; returns (job_id, trace_id)."""
    job_input = {"topic": topic, "language": language, "audience": audience}
    if hint:
        job_input["hint"] = hint

    if reuse_job_id:
        job_input["reuse_job_id"] = reuse_job_id
        job = ensure_job_exists(db, reuse_job_id)
        if job.status not in TERMINAL_STATUSES:
            raise JobConflict(f"Job {reuse_job_id} is {job.status}; only finished jobs can be restarted.")
        check_transition(job.status, QUEUED)

        db.query(Scene).filter(Scene.job_id == job.id).delete(synchronize_session=False)
        db.query(Asset).filter(Asset.job_id == job.id).delete(synchronize_session=False)
        db.query(JobLog).filter(JobLog.job_id == job.id).delete(synchronize_session=False)
        job.status = QUEUED
        job.input = job_input
        job.autoconfig = None
        job.script_package = None
        job.final_package = None
        job.error = None
        job.runtime = None
        job.runtime_version = (job.runtime_version or 0) + 1
        job.updated_at = utcnow()
        db.commit()
        logging.info(f"♻️ Job {job.id} reset for restart (trace {job.trace_id}).")
        return job.id, job.trace_id

    job = Job(id=new_id(), status=QUEUED, input=job_input, trace_id=new_id(), runtime_version=0)
    db.add(job)
    db.commit()
    logging.info(f"✨ Job {job.id} created for topic '{topic}' (trace {job.trace_id}).")
    return job.id, job.trace_id


def fail_queued_job(db: Session, job_id: str, message: str) -> bool:
    """Mark a job that never reached the worker as FAILED so it can be restarted."""
    result = db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == QUEUED)
        .values(status=FAILED, error=message, updated_at=utcnow())
    )
    updated = result.rowcount
    db.commit()
    return updated == 1


# --------------------------------------------------------------------------
# --- Status ---
# --------------------------------------------------------------------------

def _job_dict(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
        "input": job.input,
        "autoconfig": job.autoconfig,
        "script_package": job.script_package,
        "final_package": job.final_package,
        "error": job.error,
        "trace_id": job.trace_id,
        "runtime": job.runtime or {},
    }


def _scene_dict(scene: Scene) -> Dict[str, Any]:
    return {
        "scene_index": scene.scene_index,
        "narration": scene.narration,
        "on_screen_text": scene.on_screen_text,
        "visual_brief": scene.visual_brief,
        "mood": scene.mood,
        "duration_sec": scene.duration_sec,
        "image_prompt": scene.image_prompt,
        "image_url": scene.image_url,
        "audio_url": scene.audio_url,
        "image_gen_status": scene.image_gen_status,
        "image_gen_started_at": _iso(scene.image_gen_started_at),
        "image_gen_error": scene.image_gen_error,
    }


def get_status(db: Session, job_id: str) -> Dict[str, Any]:
    job = ensure_job_exists(db, job_id)
    assets = db.execute(
        select(Asset).where(Asset.job_id == job_id).order_by(Asset.created_at.desc())
    ).scalars().all()
    return {
        "trace_id": job.trace_id,
        "status": job.status,
        "job": _job_dict(job),
        "scenes": [_scene_dict(scene) for scene in job.scenes],
        "assets": [
            {"id": a.id, "kind": a.kind, "path": a.path, "url": a.url, "meta": a.meta, "created_at": _iso(a.created_at)}
            for a in assets
        ],
        "logs": [
            {"ts": _iso(log.ts), "level": log.level, "message": log.message, "data": log.data}
            for log in job.logs
        ],
    }


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return config.JOB_LIST_DEFAULT_LIMIT
    return max(1, min(int(limit), config.JOB_LIST_MAX_LIMIT))


def list_jobs(db: Session, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    jobs = db.execute(
        select(Job).order_by(Job.created_at.desc()).limit(clamp_limit(limit))
    ).scalars().all()
    return [
        {
            "id": job.id,
            "status": job.status,
            "created_at": _iso(job.created_at),
            "topic": (job.input or {}).get("topic"),
            "error": job.error,
            "trace_id": job.trace_id,
        }
        for job in jobs
    ]


# --------------------------------------------------------------------------
# --- Delete ---
# --------------------------------------------------------------------------

def delete_job(job_id: str, storage, session_factory=None) -> bool:
    """Remove the job's stored objects (best-effort), then the job and its child rows."""
    session_factory = session_factory or database.ServiceSessionLocal
    with session_factory() as db:
        if db.get(Job, job_id) is None:
            logging.info(f"Delete requested for missing job {job_id}, nothing to do.")
            return False

    try:
        removed = storage.remove_prefix(job_prefix(job_id))
        logging.info(f"🗑️ Removed {removed} stored objects for job {job_id}.")
    except StorageError as e:
        logging.warning(f"Could not clean storage for job {job_id} (continuing): {e}")

    with session_factory() as db:
        job = db.get(Job, job_id)
        if job is not None:
            db.delete(job)
            db.commit()
    logging.info(f"Job {job_id} deleted.")
    return True
