"""
Job pipeline: derive the configuration, package the script, validate and
repair it, narrate every scene and make the image prompts available. Each
stage persists its result before the next one starts.
"""

import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy import update

import config
import database
from journal import JobJournal
from models import ASSET_JSON, FAILED, QUEUED, RUNNING, SUCCEEDED, Job, Scene, utcnow
from scene_media import SceneMedia, add_asset_best_effort, normalize_image_requests
from services import AutoConfig, GenerationError, OutputFormatError, PackageValidator, SceneDraft
from storage import job_prefix

EMPTY_AFTER_REPAIR = "Package output is invalid: scenes is empty (after repair attempt)"


class PipelineFailure(Exception):
    """A fatal pipeline error; the message is persisted on the job."""


class PipelineOrchestrator:
    """Runs one job from QUEUED to a terminal status."""

    def __init__(self, client, storage, session_factory=None):
        self.client = client
        self.storage = storage
        self.session_factory = session_factory or database.ServiceSessionLocal
        self.media = SceneMedia(client, storage, self.session_factory)

    # --- Status ---

    def _claim_job(self, job_id: str) -> bool:
        runtime = {"started_at": utcnow().isoformat(), "autoconfig_status": "running", "packager_status": "waiting"}
        with self.session_factory() as db:
            result = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == QUEUED)
                .values(
                    status=RUNNING,
                    error=None,
                    runtime=runtime,
                    runtime_version=Job.runtime_version + 1,
                    updated_at=utcnow(),
                )
            )
            updated = result.rowcount
            db.commit()
        return updated == 1

    def _finish(self, job_id: str, status: str, **values) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == RUNNING)
                .values(status=status, updated_at=utcnow(), **values)
            )
            updated = result.rowcount
            db.commit()
        return updated == 1

    def _save(self, job_id: str, **values) -> None:
        with self.session_factory() as db:
            db.execute(update(Job).where(Job.id == job_id).values(updated_at=utcnow(), **values))
            db.commit()

    # --- Entry point ---

    def run(self, job_id: str) -> str:
        """Run the job; returns its final status, or None when the job was not QUEUED."""
        with self.session_factory() as db:
            job = db.get(Job, job_id)
            if job is None:
                logging.warning(f"Pipeline started for unknown job {job_id}, ignoring.")
                return None
            job_input = dict(job.input or {})
            trace_id = job.trace_id

        if not self._claim_job(job_id):
            logging.info(f"Job {job_id} is no longer QUEUED, skipping duplicate delivery.")
            return None

        journal = JobJournal(job_id, trace_id, self.session_factory)
        journal.info("Job started.", topic=job_input.get("topic"))

        try:
            autoconfig = self.derive_config(job_id, job_input, journal)
            package, scenes = self.build_package(job_id, job_input, autoconfig, journal)
            audios = self.narrate_scenes(job_id, scenes, journal)
            package = self.prepare_image_prompts(job_id, job_input, autoconfig, package, scenes, journal, trace_id)
            final_package = self.assemble(job_id, job_input, autoconfig, package, scenes, audios, trace_id)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            journal.error("Job failed.", error=message)
            self._finish(job_id, FAILED, error=message)
            logging.error(f"❌ Pipeline failed job {job_id}. Error: {message}")
            return FAILED

        if not self._finish(job_id, SUCCEEDED, final_package=final_package, error=None):
            journal.warn("Job was reset while running; result discarded.")
            return None
        journal.info("Job succeeded.", scenes=len(scenes))
        logging.info(f"✅ Pipeline finished job {job_id} with {len(scenes)} scenes.")
        return SUCCEEDED

    # --- Stage 1 ---

    def derive_config(self, job_id: str, job_input: Dict[str, Any], journal: JobJournal) -> Dict[str, Any]:
        payload = {
            "topic": job_input.get("topic"),
            "language": job_input.get("language"),
            "audience": job_input.get("audience"),
        }
        if job_input.get("hint"):
            payload["hint"] = job_input["hint"]

        journal.info("AutoConfig started.")
        raw = self.client.generate_text(config.AUTOCONFIG_PROMPT, payload, config.AUTOCONFIG_SCHEMA_HINT)
        autoconfig = AutoConfig.model_validate(raw).model_dump()
        self._save(job_id, autoconfig=autoconfig)
        journal.set_runtime(autoconfig_status="done", packager_status="running")
        journal.info("AutoConfig finished.", scene_count=autoconfig["scene_count"])
        return autoconfig

    # --- Stage 2 ---

    def _packager_input(self, job_input: Dict[str, Any], autoconfig: Dict[str, Any]) -> Dict[str, Any]:
        packager_input = {
            "topic": job_input.get("topic"),
            # Explicit user choices win over the derived ones
            "language": job_input.get("language") or autoconfig.get("language"),
            "audience": job_input.get("audience") or autoconfig.get("audience"),
            "scene_count": autoconfig["scene_count"],
            "scene_seeds": autoconfig.get("scene_seeds") or [],
        }
        for key in ("tone", "platform_target", "visual_style", "main_character_hint", "safety_level", "duration_min"):
            if autoconfig.get(key) is not None:
                packager_input[key] = autoconfig[key]
        if job_input.get("hint"):
            packager_input["hint"] = job_input["hint"]
        return packager_input

    def _request_package(self, packager_input: Dict[str, Any], journal: JobJournal) -> Dict[str, Any]:
        try:
            return self.client.generate_text(
                config.PACKAGER_PROMPT, packager_input, config.PACKAGER_SCHEMA_HINT, web_search=True,
            )
        except GenerationError as e:
            journal.warn("Packager with web search failed, retrying without it.", error=str(e))
            return self.client.generate_text(config.PACKAGER_PROMPT, packager_input, config.PACKAGER_SCHEMA_HINT)

    def _repair_package(self, packager_input: Dict[str, Any], target: int, journal: JobJournal) -> Tuple[Dict[str, Any], List[SceneDraft]]:
        journal.warn("Packager output invalid, sending one repair request.", target_count=target)
        instructions = config.PACKAGER_PROMPT + config.PACKAGER_REPAIR_SUFFIX.format(target_count=target)
        try:
            package = self.client.generate_text(instructions, packager_input, config.PACKAGER_SCHEMA_HINT)
            return package, PackageValidator(package, target).run(minimum=1)
        except OutputFormatError as e:
            journal.error("Repair attempt did not produce usable scenes.", error=str(e))
            raise PipelineFailure(EMPTY_AFTER_REPAIR)

    def build_package(self, job_id: str, job_input: Dict[str, Any], autoconfig: Dict[str, Any], journal: JobJournal):
        packager_input = self._packager_input(job_input, autoconfig)
        target = autoconfig["scene_count"]

        journal.info("Packager started.", scene_count=target)
        try:
            package = self._request_package(packager_input, journal)
            scenes = PackageValidator(package, target).run()
        except OutputFormatError as e:
            journal.warn("Packager output rejected.", error=str(e))
            package, scenes = self._repair_package(packager_input, target, journal)

        scene_dicts = [scene.model_dump() for scene in scenes]
        package = {**package, "scenes": scene_dicts}
        with self.session_factory() as db:
            db.execute(
                update(Job).where(Job.id == job_id).values(script_package=package, updated_at=utcnow())
            )
            db.add_all([
                Scene(
                    job_id=job_id,
                    scene_index=scene.scene_id,
                    narration=scene.narration,
                    on_screen_text=scene.on_screen_text or None,
                    visual_brief=scene.visual_brief or None,
                    mood=scene.mood or None,
                    duration_sec=scene.duration_sec,
                )
                for scene in scenes
            ])
            db.commit()

        journal.set_runtime(packager_status="done", tts_scenes_total=len(scenes))
        journal.info("Packager finished.", scenes=len(scenes))
        return package, scene_dicts

    # --- Stage 3 ---

    def narrate_scenes(self, job_id: str, scenes: List[Dict[str, Any]], journal: JobJournal) -> List[Dict[str, Any]]:
        """Synthesize narration per scene; a failed scene is counted and skipped, never fatal."""
        audios = []
        for scene in scenes:
            narration = (scene.get("narration") or "").strip()
            if not narration:
                continue
            scene_index = scene["scene_id"]
            try:
                url = self.media.store_scene_audio(job_id, scene_index, narration, journal)
            except Exception as e:
                # Narration is best-effort; a failed scene never fails the job
                journal.bump(tts_scenes_failed=1)
                journal.warn("Scene narration failed.", scene_index=scene_index, error=str(e))
                continue
            audios.append({"scene_index": scene_index, "audio_url": url})
            journal.bump(tts_scenes_done=1)
        journal.info("Narration finished.", done=len(audios), total=len(scenes))
        return audios

    # --- Image availability ---

    def prepare_image_prompts(self, job_id, job_input, autoconfig, package, scenes, journal, trace_id):
        topic = job_input.get("topic") or "topic"
        platform_target = (package.get("style_guide") or {}).get("platform_target") or autoconfig.get("platform_target")
        render_requests, generated = normalize_image_requests(package, scenes, platform_target, topic)
        prompts = {r["scene_id"]: r["prompt"] for r in render_requests}

        package = {**package, "image_render_requests": render_requests}
        with self.session_factory() as db:
            db.execute(update(Job).where(Job.id == job_id).values(script_package=package, updated_at=utcnow()))
            for scene_index, prompt in prompts.items():
                db.execute(
                    update(Scene)
                    .where(Scene.job_id == job_id, Scene.scene_index == scene_index)
                    .values(image_prompt=prompt)
                )
            db.commit()

        journal.set_runtime(
            image_render_requests_generated=generated,
            image_render_requests_count=len(render_requests),
        )
        add_asset_best_effort(
            self.session_factory, journal,
            job_id=job_id, kind=ASSET_JSON, path=None, url=None,
            meta={"kind": "image_prompts_ready", "trace_id": trace_id, "count": len(render_requests)},
        )
        journal.info("Image prompts ready.", count=len(render_requests), generated=generated)
        return package

    # --- Terminal ---

    def assemble(self, job_id, job_input, autoconfig, package, scenes, audios, trace_id) -> Dict[str, Any]:
        meta = {k: v for k, v in package.items() if k not in ("scenes", "image_prompts", "image_render_requests")}
        return {
            "job_id": job_id,
            "trace_id": trace_id,
            "input": job_input,
            "autoconfig": autoconfig,
            "package": meta,
            "scenes": scenes,
            "image_render_requests": package.get("image_render_requests") or [],
            "audio": {
                "scene_audios": audios,
                "tts": {"provider": "openai", "model": config.TTS_MODEL, "voice": config.TTS_VOICE},
            },
            "storage": {"backend": config.STORAGE_BACKEND, "prefix": job_prefix(job_id)},
            "generated_at": utcnow().isoformat(),
        }
