# tasks.py

import logging
import traceback

from celery import Celery
from kombu.exceptions import OperationalError

import config
import services
import storage
from control import delete_job
from pipeline import PipelineOrchestrator
from scene_media import SceneMedia, load_scene_context, run_audio_retry, run_image_retry

celery = Celery("tasks", broker=config.CELERY_BROKER_URL, backend=config.CELERY_RESULT_BACKEND)
celery.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_always_eager=config.CELERY_TASK_ALWAYS_EAGER,
)
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


def dispatch(task, *args, **kwargs):
    """Queue `task`; when the broker is unreachable, run it inline instead."""
    try:
        return task.apply_async(args=args, kwargs=kwargs)
    except OperationalError as e:
        logging.warning(f"Broker unavailable ({e}), running {task.name} inline.")
        return task.apply(args=args, kwargs=kwargs)


def _media() -> SceneMedia:
    return SceneMedia(services.get_generation_client(), storage.get_storage())


@celery.task
def run_pipeline_task(job_id: str):
    """
    Background task that runs the whole generation pipeline for one job.
    Failures are persisted on the job by the orchestrator itself.
    """
    logging.info(f"📝 Worker received job {job_id}")
    try:
        orchestrator = PipelineOrchestrator(services.get_generation_client(), storage.get_storage())
        return orchestrator.run(job_id)
    except Exception as e:
        logging.error(f"❌ Worker could not run job {job_id}. Error: {e}")
        traceback.print_exc()
        return None


@celery.task
def render_scene_image_task(job_id: str, scene_index: int, request_id: str, force: bool = False):
    """Finishes a scene image whose claim was taken by the request handler."""
    media = _media()
    context = load_scene_context(job_id, scene_index, media.session_factory)
    return media.render_claimed_image(context, request_id, force=force)


@celery.task(bind=True)
def retry_images_task(self, job_id: str, items, depth: int = 0):
    def requeue(remaining, next_depth):
        dispatch(self, job_id, remaining, next_depth)

    report = run_image_retry(_media(), job_id, items, depth, requeue)
    return report.as_dict()


@celery.task(bind=True)
def retry_audio_task(self, job_id: str, items, depth: int = 0):
    def requeue(remaining, next_depth):
        dispatch(self, job_id, remaining, next_depth)

    report = run_audio_retry(_media(), job_id, items, depth, requeue)
    return report.as_dict()


@celery.task
def delete_job_task(job_id: str):
    return delete_job(job_id, storage.get_storage())
