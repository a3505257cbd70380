"""
Per-scene media: image prompts, claim-guarded image generation, speech
synthesis, and the bulk retry operations built on the continuation scheduler.
"""

import uuid
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

import config
import database
from claims import SceneClaimManager
from continuation import FAILED, SKIPPED, SUCCEEDED, BatchContinuationScheduler, BatchReport
from journal import JobJournal
from models import ASSET_AUDIO, ASSET_IMAGE, Asset, Job, JobNotFound, Scene, SceneNotFound, utcnow
from services import GenerationError
from storage import scene_audio_key, scene_image_key

# GenerateSceneImage outcomes
IMAGE_QUEUED = "QUEUED"
IMAGE_ALREADY_EXISTS = "ALREADY_EXISTS"
IMAGE_IN_PROGRESS = "IN_PROGRESS"
IMAGE_SUCCEEDED = "SUCCEEDED"
IMAGE_FAILED = "FAILED"


# --------------------------------------------------------------------------
# --- Image prompts ---
# --------------------------------------------------------------------------

def platform_image_size(platform_target: Optional[str]) -> str:
    return config.PLATFORM_IMAGE_SIZES.get(platform_target or "", config.DEFAULT_IMAGE_REQUEST_SIZE)


def _text(value) -> str:
    return "" if value is None else str(value).strip()


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_scene_prompt(scene: Dict[str, Any], style_guide: Optional[Dict[str, Any]], topic: str) -> str:
    """Synthesize an image prompt from a scene's visual brief, mood and the style guide."""
    style = style_guide if isinstance(style_guide, dict) else {}
    subject = (
        _text(scene.get("visual_brief"))
        or _text(scene.get("on_screen_text"))
        or f"educational illustration about {topic or 'the topic'}"
    )
    parts = [
        subject,
        _text(scene.get("mood")),
        _text(style.get("visual_style")),
        _text(style.get("tone")),
        config.IMAGE_PROMPT_SUFFIX,
    ]
    return ", ".join(p for p in parts if p)


def normalize_image_requests(
    package: Dict[str, Any],
    scenes: List[Dict[str, Any]],
    platform_target: Optional[str],
    topic: str,
) -> Tuple[List[Dict[str, Any]], bool]:
    """
    Resolve one image request per scene. Explicit render requests win, then
    image_prompts, then a prompt synthesized from the scene itself.
    Returns (requests, generated) where generated is True when the packaged
    render requests did not cover every scene.
    """
    valid = [s["scene_id"] for s in scenes]
    default_size = platform_image_size(platform_target)

    explicit: Dict[int, Dict[str, Any]] = {}
    for raw in package.get("image_render_requests") or []:
        if not isinstance(raw, dict):
            continue
        scene_id = _as_int(raw.get("scene_id"))
        prompt = _text(raw.get("prompt"))
        if scene_id in valid and prompt and scene_id not in explicit:
            explicit[scene_id] = {"scene_id": scene_id, "prompt": prompt, "size": _text(raw.get("size")) or default_size, "n": 1}

    prompts: Dict[int, str] = {}
    for raw in package.get("image_prompts") or []:
        if not isinstance(raw, dict):
            continue
        scene_id = _as_int(raw.get("scene_id"))
        prompt = _text(raw.get("prompt"))
        if scene_id in valid and prompt:
            prompts.setdefault(scene_id, prompt)

    requests_out = []
    for scene in scenes:
        scene_id = scene["scene_id"]
        if scene_id in explicit:
            requests_out.append(explicit[scene_id])
            continue
        prompt = prompts.get(scene_id) or build_scene_prompt(scene, package.get("style_guide"), topic)
        requests_out.append({"scene_id": scene_id, "prompt": prompt, "size": default_size, "n": 1})

    return requests_out, len(explicit) < len(valid)


def _size_hint(package: Optional[Dict[str, Any]], scene_index: int) -> Optional[str]:
    for raw in (package or {}).get("image_render_requests") or []:
        if isinstance(raw, dict) and _as_int(raw.get("scene_id")) == scene_index:
            return _text(raw.get("size")) or None
    return None


def load_scene_context(job_id: str, scene_index: int, session_factory=None) -> Dict[str, Any]:
    """Read what image generation needs for one scene, resolving its prompt."""
    session_factory = session_factory or database.ServiceSessionLocal
    with session_factory() as db:
        job = db.get(Job, job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found.")
        scene = db.execute(
            select(Scene).where(Scene.job_id == job_id, Scene.scene_index == scene_index)
        ).scalar_one_or_none()
        if scene is None:
            raise SceneNotFound(f"Scene {scene_index} of job {job_id} not found.")
        package = job.script_package or {}
        topic = _text((job.input or {}).get("topic")) or "topic"
        prompt = _text(scene.image_prompt) or build_scene_prompt(
            {
                "visual_brief": scene.visual_brief,
                "on_screen_text": scene.on_screen_text,
                "mood": scene.mood,
            },
            package.get("style_guide"),
            topic,
        )
        return {
            "job_id": job_id,
            "scene_index": scene_index,
            "trace_id": job.trace_id,
            "topic": topic,
            "prompt": prompt,
            "size_hint": _size_hint(package, scene_index),
            "image_url": scene.image_url,
        }


def add_asset_best_effort(session_factory, journal: JobJournal, **fields) -> None:
    try:
        with session_factory() as db:
            db.add(Asset(**fields))
            db.commit()
    except SQLAlchemyError as e:
        journal.warn("Asset record failed (ignored).", kind=fields.get("kind"), error=str(e))


# --------------------------------------------------------------------------
# --- Scene images ---
# --------------------------------------------------------------------------

class SceneMedia:
    """Generates and stores per-scene images and speech for one job."""

    def __init__(self, client, storage, session_factory=None, claims: Optional[SceneClaimManager] = None):
        self.client = client
        self.storage = storage
        self.session_factory = session_factory or database.ServiceSessionLocal
        self.claims = claims or SceneClaimManager(self.session_factory)

    def _result(self, context, status: str, accepted: bool = True, image_url=None, message=None) -> Dict[str, Any]:
        return {
            "job_id": context["job_id"],
            "scene_index": context["scene_index"],
            "accepted": accepted,
            "status": status,
            "image_url": image_url,
            "message": message,
        }

    def generate_scene_image(
        self,
        job_id: str,
        scene_index: int,
        force: bool = False,
        dispatch_background: Optional[Callable[[str, int, str], Any]] = None,
    ) -> Dict[str, Any]:
        """
        Generate one scene's image under a claim. With `dispatch_background`
        the claim is taken here and generation continues in the worker.
        """
        context = load_scene_context(job_id, scene_index, self.session_factory)
        if not force and context["image_url"]:
            return self._result(context, IMAGE_ALREADY_EXISTS, image_url=context["image_url"],
                                message="An image already exists for this scene.")

        request_id = str(uuid.uuid4())
        if not self.claims.try_claim(job_id, scene_index, request_id):
            return self._result(context, IMAGE_IN_PROGRESS, accepted=False,
                                message="Image generation is in progress. Try again shortly.")

        if dispatch_background is not None:
            dispatch_background(job_id, scene_index, request_id)
            return self._result(context, IMAGE_QUEUED, message="Image generation queued.")

        return self.render_claimed_image(context, request_id, force=force)

    def render_claimed_image(self, context: Dict[str, Any], request_id: str, force: bool = False) -> Dict[str, Any]:
        """Generate, store and record the image for a scene this request has claimed."""
        job_id, scene_index = context["job_id"], context["scene_index"]
        journal = JobJournal(job_id, context.get("trace_id"), self.session_factory)
        prompt = context["prompt"]

        journal.info("Scene image generation started.", scene_index=scene_index, request_id=request_id)
        try:
            if not prompt:
                raise GenerationError("Image prompt is empty.")
            image = self.client.generate_image(prompt, context.get("size_hint"))
            key = scene_image_key(job_id, scene_index, context.get("topic") or "topic")
            url = self.storage.upload(key, image, "image/png")
        except Exception as e:
            message = str(e) or e.__class__.__name__
            self.claims.mark_failed(job_id, scene_index, request_id, message)
            journal.bump(images_failed=1)
            journal.error("Scene image generation failed.", scene_index=scene_index, error=message)
            return self._result(context, IMAGE_FAILED, message=message)

        current = self.claims.mark_succeeded(
            job_id, scene_index, request_id, image_path=key, image_url=url, image_prompt=prompt,
        )
        if not current:
            journal.warn("Scene image finished after its claim was taken over; result not recorded.",
                         scene_index=scene_index, request_id=request_id)
            return self._result(context, IMAGE_SUCCEEDED, image_url=url,
                                message="Image generated, but a newer request owns this scene.")

        add_asset_best_effort(
            self.session_factory, journal,
            job_id=job_id, kind=ASSET_IMAGE, path=key, url=url,
            meta={
                "kind": "scene",
                "scene_index": scene_index,
                "prompt": prompt,
                "model": config.IMAGE_MODEL,
                "request_id": request_id,
                "force": force,
                "generated_at": utcnow().isoformat(),
            },
        )
        journal.bump(images_success=1)
        journal.info("Scene image generation finished.", scene_index=scene_index, image_url=url)
        return self._result(context, IMAGE_SUCCEEDED, image_url=url, message="Image generated.")

    # --- Speech ---

    def store_scene_audio(self, job_id: str, scene_index: int, narration: str, journal: JobJournal, **meta) -> str:
        """Synthesize, upload and record the narration audio of one scene; returns its URL."""
        audio = self.client.generate_speech(narration)
        key = scene_audio_key(job_id, scene_index)
        url = self.storage.upload(key, audio, "audio/mpeg")
        with self.session_factory() as db:
            db.execute(
                update(Scene)
                .where(Scene.job_id == job_id, Scene.scene_index == scene_index)
                .values(audio_path=key, audio_url=url)
            )
            db.commit()
        add_asset_best_effort(
            self.session_factory, journal,
            job_id=job_id, kind=ASSET_AUDIO, path=key, url=url,
            meta={
                "kind": "scene",
                "scene_index": scene_index,
                "provider": "openai",
                "model": config.TTS_MODEL,
                "voice": config.TTS_VOICE,
                **meta,
            },
        )
        return url


# --------------------------------------------------------------------------
# --- Bulk retries ---
# --------------------------------------------------------------------------

def build_image_retry_items(job_id: str, scene_ids: Optional[List[int]] = None, missing_only: bool = True,
                            session_factory=None) -> Tuple[List[Dict[str, Any]], int]:
    """Select the scenes to regenerate; returns (items, skipped)."""
    session_factory = session_factory or database.SessionLocal
    with session_factory() as db:
        job = db.get(Job, job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found.")
        package = job.script_package or {}
        topic = _text((job.input or {}).get("topic")) or "topic"
        wanted = set(scene_ids) if scene_ids else None
        prompts = {
            _as_int(r.get("scene_id")): _text(r.get("prompt"))
            for r in package.get("image_render_requests") or []
            if isinstance(r, dict)
        }

        items, skipped = [], 0
        for scene in job.scenes:
            if wanted is not None and scene.scene_index not in wanted:
                skipped += 1
                continue
            if missing_only and scene.image_url:
                skipped += 1
                continue
            prompt = (
                _text(scene.image_prompt)
                or prompts.get(scene.scene_index)
                or build_scene_prompt(
                    {"visual_brief": scene.visual_brief, "on_screen_text": scene.on_screen_text, "mood": scene.mood},
                    package.get("style_guide"),
                    topic,
                )
            )
            if not prompt:
                skipped += 1
                continue
            items.append({"scene_index": scene.scene_index, "prompt": prompt})
    return items, skipped


def run_image_retry(media: SceneMedia, job_id: str, items: List[Dict[str, Any]], depth: int,
                    requeue: Callable[[List[Any], int], None], **scheduler_kwargs) -> BatchReport:
    """Regenerate the images in `items` within one time slice."""
    with media.session_factory() as db:
        job = db.get(Job, job_id)
        if job is None:
            logging.warning(f"Image retry for unknown job {job_id} dropped.")
            return BatchReport(depth=depth, stop_reason="job_missing")
        trace_id, topic = job.trace_id, _text((job.input or {}).get("topic")) or "topic"
        package = job.script_package or {}

    journal = JobJournal(job_id, trace_id, media.session_factory)
    journal.info("Image retry batch started.", depth=depth, items=len(items))

    def process(item):
        scene_index = int(item["scene_index"])
        request_id = str(uuid.uuid4())
        if not media.claims.try_claim(job_id, scene_index, request_id):
            journal.info("Scene image is being generated elsewhere; skipped.", scene_index=scene_index)
            return SKIPPED
        context = {
            "job_id": job_id,
            "scene_index": scene_index,
            "trace_id": trace_id,
            "topic": topic,
            "prompt": _text(item.get("prompt")),
            "size_hint": _size_hint(package, scene_index),
        }
        result = media.render_claimed_image(context, request_id, force=True)
        return SUCCEEDED if result["status"] == IMAGE_SUCCEEDED else FAILED

    scheduler = BatchContinuationScheduler(requeue=requeue, journal=journal, **scheduler_kwargs)
    report = scheduler.run(items, process, depth=depth)
    if report.skipped:
        journal.bump(images_skipped=report.skipped)
    journal.info("Image retry batch finished.", **report.as_dict())
    return report


def build_audio_retry_items(job_id: str, scene_ids: Optional[List[int]] = None, force: bool = False,
                            session_factory=None) -> Tuple[List[Dict[str, Any]], int]:
    """Select the scenes whose narration audio should be (re)generated; returns (items, skipped)."""
    session_factory = session_factory or database.ServiceSessionLocal
    with session_factory() as db:
        job = db.get(Job, job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found.")
        wanted = set(scene_ids) if scene_ids else None
        items, skipped = [], 0
        for scene in job.scenes:
            narration = _text(scene.narration)
            if (wanted is not None and scene.scene_index not in wanted) or not narration:
                skipped += 1
                continue
            if scene.audio_url and not force:
                skipped += 1
                continue
            items.append({"scene_index": scene.scene_index, "narration": narration})
    return items, skipped


def _patch_final_package_audio(session_factory, job_id: str) -> None:
    with session_factory() as db:
        job = db.get(Job, job_id)
        if job is None or not isinstance(job.final_package, dict):
            return
        final_package = dict(job.final_package)
        audio = dict(final_package.get("audio") or {})
        audio["scene_audios"] = [
            {"scene_index": s.scene_index, "audio_url": s.audio_url} for s in job.scenes if s.audio_url
        ]
        audio["tts"] = {"provider": "openai", "model": config.TTS_MODEL, "voice": config.TTS_VOICE}
        final_package["audio"] = audio
        job.final_package = final_package
        db.commit()


def run_audio_retry(media: SceneMedia, job_id: str, items: List[Dict[str, Any]], depth: int,
                    requeue: Callable[[List[Any], int], None], **scheduler_kwargs) -> BatchReport:
    """Regenerate the narration audio in `items` within one time slice."""
    with media.session_factory() as db:
        job = db.get(Job, job_id)
        if job is None:
            logging.warning(f"Audio retry for unknown job {job_id} dropped.")
            return BatchReport(depth=depth, stop_reason="job_missing")
        trace_id = job.trace_id

    journal = JobJournal(job_id, trace_id, media.session_factory)
    journal.info("Audio retry batch started.", depth=depth, items=len(items))

    def process(item):
        scene_index = int(item["scene_index"])
        try:
            media.store_scene_audio(job_id, scene_index, _text(item.get("narration")), journal,
                                    retried_at=utcnow().isoformat())
        except Exception as e:
            journal.error("Scene audio regeneration failed.", scene_index=scene_index, error=str(e))
            return FAILED
        journal.info("Scene audio regenerated.", scene_index=scene_index)
        return SUCCEEDED

    scheduler = BatchContinuationScheduler(requeue=requeue, journal=journal, **scheduler_kwargs)
    report = scheduler.run(items, process, depth=depth)
    journal.bump(audio_success=report.succeeded, audio_failed=report.failed)

    try:
        _patch_final_package_audio(media.session_factory, job_id)
    except SQLAlchemyError as e:
        journal.warn("Could not refresh the final package audio list.", error=str(e))

    journal.info("Audio retry batch finished.", **report.as_dict())
    return report
