"""
Router for job endpoints.
Handles starting and restarting jobs, status polling, per-scene images,
bulk image/audio retries and deletion.
"""

import logging
from typing import Optional

from celery.result import EagerResult
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

import config
import database
import services
import storage
from control import (
    JobConflict,
    JobNotFound,
    SceneNotFound,
    ensure_job_exists,
    fail_queued_job,
    get_status,
    list_jobs,
    start_job,
)
from database import get_db
from scene_media import IMAGE_IN_PROGRESS, SceneMedia, build_audio_retry_items, build_image_retry_items
from schemas import (
    AcceptedResponse,
    JobListResponse,
    RetryAudioRequest,
    RetryImagesRequest,
    RetryImagesResponse,
    SceneImageRequest,
    SceneImageResponse,
    StartJobRequest,
    StartJobResponse,
    StatusResponse,
)
from tasks import (
    delete_job_task,
    dispatch,
    render_scene_image_task,
    retry_audio_task,
    retry_images_task,
    run_pipeline_task,
)

# Create the router
router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=404, detail={"error": str(e), "hint": "Check the job id (and scene index)."})


def _require_provider_key():
    if not config.OPENAI_API_KEY:
        raise HTTPException(
            status_code=500,
            detail={"error": "Missing required env: OPENAI_API_KEY", "hint": "Set OPENAI_API_KEY for the API and the worker."},
        )


@router.post("", response_model=StartJobResponse)
def create_job(request: StartJobRequest, db: Session = Depends(get_db)):
    """
    Creates (or resets, with reuse_job_id) a job record, sends the pipeline
    to Celery and immediately returns the job and trace ids.
    """
    _require_provider_key()
    try:
        job_id, trace_id = start_job(
            db, request.topic, request.language, request.audience,
            hint=request.hint, reuse_job_id=request.reuse_job_id,
        )
    except JobNotFound as e:
        raise _not_found(e)
    except JobConflict as e:
        raise HTTPException(status_code=409, detail={"error": str(e), "hint": "Wait until the job finishes."})

    try:
        dispatch(run_pipeline_task, job_id)
    except Exception as e:
        logging.error(f"Failed to submit job {job_id} to Celery: {e}")
        # Leave the job restartable instead of stuck in QUEUED
        fail_queued_job(db, job_id, f"Failed to start the generation job: {e}")
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to start the generation job.", "hint": "Check the worker and broker, then restart the job."},
        )
    return {"job_id": job_id, "trace_id": trace_id}


@router.get("", response_model=JobListResponse)
async def get_jobs(limit: Optional[int] = Query(None), db: Session = Depends(get_db)):
    return {"jobs": list_jobs(db, limit)}


@router.get("/{job_id}", response_model=StatusResponse)
async def get_job_status(job_id: str, db: Session = Depends(get_db)):
    """Aggregated job, scene, asset and log state for polling clients."""
    try:
        return get_status(db, job_id)
    except JobNotFound as e:
        raise _not_found(e)


@router.post("/{job_id}/scenes/{scene_index}/image", response_model=SceneImageResponse)
def generate_scene_image(
    job_id: str,
    scene_index: int,
    response: Response,
    request: Optional[SceneImageRequest] = None,
):
    """
    Generates the image for one scene. Concurrent calls for the same scene
    get IN_PROGRESS (202) while another request holds the claim.
    """
    request = request or SceneImageRequest()
    media = SceneMedia(services.get_generation_client(), storage.get_storage(), database.SessionLocal)

    dispatch_background = None
    if request.background:
        def dispatch_background(claimed_job_id, claimed_scene_index, request_id):
            dispatch(render_scene_image_task, claimed_job_id, claimed_scene_index, request_id, request.force)

    try:
        result = media.generate_scene_image(job_id, scene_index, force=request.force, dispatch_background=dispatch_background)
    except (JobNotFound, SceneNotFound) as e:
        raise _not_found(e)

    if result["status"] == IMAGE_IN_PROGRESS:
        response.status_code = 202
    return result


@router.post("/{job_id}/images/retry", response_model=RetryImagesResponse, status_code=202)
def retry_images(job_id: str, request: Optional[RetryImagesRequest] = None):
    """Regenerates missing (or all selected) scene images in continuation batches."""
    request = request or RetryImagesRequest()
    try:
        items, skipped = build_image_retry_items(
            job_id, request.scene_ids, request.missing_only, session_factory=database.SessionLocal,
        )
    except JobNotFound as e:
        raise _not_found(e)

    if not items:
        return {"accepted": True, "attempted": 0, "succeeded": 0, "failed": 0, "skipped": skipped,
                "message": "No scene images need regeneration."}

    result = dispatch(retry_images_task, job_id, items, 0)
    if isinstance(result, EagerResult) and isinstance(result.result, dict):
        report = result.result
        return {
            "accepted": True,
            "attempted": report["attempted"],
            "succeeded": report["succeeded"],
            "failed": report["failed"],
            "skipped": skipped + report["skipped"],
            "message": f"Image retry finished ({report['stop_reason']}).",
        }
    return {"accepted": True, "attempted": len(items), "succeeded": 0, "failed": 0, "skipped": skipped,
            "message": "Image retry queued."}


@router.post("/{job_id}/audio/retry", response_model=AcceptedResponse, status_code=202)
def retry_audio(job_id: str, request: Optional[RetryAudioRequest] = None):
    """Regenerates scene narration audio in continuation batches."""
    request = request or RetryAudioRequest()
    try:
        items, skipped = build_audio_retry_items(
            job_id, request.scene_ids, request.force, session_factory=database.SessionLocal,
        )
    except JobNotFound as e:
        raise _not_found(e)

    if not items:
        return {"accepted": True, "message": f"No scene audio needs regeneration ({skipped} skipped)."}
    dispatch(retry_audio_task, job_id, items, 0)
    return {"accepted": True, "message": f"Audio retry started for {len(items)} scenes ({skipped} skipped)."}


@router.delete("/{job_id}", response_model=AcceptedResponse, status_code=202)
def remove_job(job_id: str, db: Session = Depends(get_db)):
    """Deletes the job, its stored media and all of its child rows."""
    try:
        ensure_job_exists(db, job_id)
    except JobNotFound as e:
        raise _not_found(e)

    dispatch(delete_job_task, job_id)
    logging.info(f"🗑️ Delete accepted for job {job_id}")
    return {"accepted": True, "message": "Job deletion started."}
