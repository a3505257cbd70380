import os

import pytest
import requests
from sqlalchemy import select

import config
import database
from models import (
    ASSET_AUDIO,
    ASSET_JSON,
    FAILED,
    QUEUED,
    RUNNING,
    SUCCEEDED,
    Asset,
    InvalidTransition,
    Job,
    check_transition,
    new_id,
)
from pipeline import EMPTY_AFTER_REPAIR, PipelineOrchestrator
from scene_media import normalize_image_requests
from services import GenerationClient, GenerationError, OutputFormatError
from conftest import FakeGenerationClient, ScriptedSession, load_job, make_package


def queue_job(topic="space travel", language="en", audience="teens"):
    job_id = new_id()
    with database.SessionLocal() as db:
        db.add(Job(id=job_id, status=QUEUED, input={"topic": topic, "language": language, "audience": audience},
                   trace_id=new_id(), runtime_version=0))
        db.commit()
    return job_id


def assets_of(job_id):
    with database.SessionLocal() as db:
        return list(db.execute(select(Asset).where(Asset.job_id == job_id)).scalars())


def test_pipeline_end_to_end_succeeds(local_storage):
    client = FakeGenerationClient(scene_count=6)
    job_id = queue_job()

    assert PipelineOrchestrator(client, local_storage).run(job_id) == SUCCEEDED

    job, scenes = load_job(job_id)
    assert job.status == SUCCEEDED
    assert job.error is None
    assert 1 <= len(scenes) <= 12
    assert all(scene.narration for scene in scenes)
    assert [scene.scene_index for scene in scenes] == list(range(1, 7))
    assert job.script_package["image_render_requests"]
    assert all(scene.image_prompt for scene in scenes)
    assert all(scene.audio_url for scene in scenes)
    assert os.path.exists(os.path.join(local_storage.root, "jobs", job_id, "tts", "scene-01.mp3"))

    assert job.final_package["trace_id"] == job.trace_id
    assert len(job.final_package["audio"]["scene_audios"]) == 6
    assert job.runtime["tts_scenes_done"] == 6
    assert job.runtime["packager_status"] == "done"
    assert job.runtime["image_render_requests_count"] == 6

    kinds = [asset.kind for asset in assets_of(job_id)]
    assert kinds.count(ASSET_AUDIO) == 6
    assert kinds.count(ASSET_JSON) == 1


def test_user_language_and_audience_override_autoconfig(local_storage):
    client = FakeGenerationClient(scene_count=3)
    client.autoconfig.update({"language": "ja", "audience": "kids"})
    job_id = queue_job(language="en", audience="teens")

    PipelineOrchestrator(client, local_storage).run(job_id)

    packager_call = client.text_calls[1]
    assert packager_call["payload"]["language"] == "en"
    assert packager_call["payload"]["audience"] == "teens"
    assert packager_call["payload"]["scene_count"] == 3


def test_empty_scenes_twice_fails_the_job(local_storage):
    client = FakeGenerationClient(scene_count=6, packages=[{"scenes": []}, {"scenes": []}])
    job_id = queue_job()

    assert PipelineOrchestrator(client, local_storage).run(job_id) == FAILED

    job, scenes = load_job(job_id)
    assert job.status == FAILED
    assert job.error == EMPTY_AFTER_REPAIR
    assert "scenes is empty" in job.error
    assert scenes == []
    assert assets_of(job_id) == []
    assert job.final_package is None


def test_short_package_is_repaired_once(local_storage):
    client = FakeGenerationClient(scene_count=6, packages=[make_package(2), make_package(3)])
    job_id = queue_job()

    assert PipelineOrchestrator(client, local_storage).run(job_id) == SUCCEEDED

    _, scenes = load_job(job_id)
    assert len(scenes) == 3
    repair_call = client.text_calls[-1]
    assert "repair mode" in repair_call["instructions"]
    assert "at least 6 items" in repair_call["instructions"]
    assert repair_call["web_search"] is False


def test_undecodable_package_goes_to_repair(local_storage):
    client = FakeGenerationClient(
        scene_count=4, packages=[OutputFormatError("not json"), OutputFormatError("still not json"), make_package(4)],
    )
    job_id = queue_job()

    assert PipelineOrchestrator(client, local_storage).run(job_id) == SUCCEEDED
    # web search attempt, plain retry, repair
    assert [call["web_search"] for call in client.text_calls[1:]] == [True, False, False]


def test_web_search_failure_falls_back_silently(local_storage):
    client = FakeGenerationClient(
        scene_count=2, packages=[GenerationError("tool unavailable", status_code=400), make_package(2)],
    )
    job_id = queue_job()

    assert PipelineOrchestrator(client, local_storage).run(job_id) == SUCCEEDED
    job, _ = load_job(job_id)
    assert job.error is None


def test_narration_failures_do_not_fail_the_job(local_storage):
    client = FakeGenerationClient(scene_count=3)
    client.failing_narrations = {"Narration for scene 2."}
    job_id = queue_job()

    assert PipelineOrchestrator(client, local_storage).run(job_id) == SUCCEEDED

    job, scenes = load_job(job_id)
    assert [bool(s.audio_url) for s in scenes] == [True, False, True]
    assert job.runtime["tts_scenes_failed"] == 1
    assert job.runtime["tts_scenes_done"] == 2


def test_speech_transport_errors_do_not_fail_the_job(local_storage, monkeypatch):
    monkeypatch.setattr(config, "TTS_MAX_ATTEMPTS", 1)

    def broken_body(url):
        raise requests.exceptions.ChunkedEncodingError("connection broken mid-body")

    speech = GenerationClient(api_key="test-key", base_url="https://provider.test/v1", session=ScriptedSession(broken_body))
    client = FakeGenerationClient(scene_count=2)
    client.generate_speech = speech.generate_speech
    job_id = queue_job()

    assert PipelineOrchestrator(client, local_storage).run(job_id) == SUCCEEDED

    job, scenes = load_job(job_id)
    assert not any(scene.audio_url for scene in scenes)
    assert job.runtime["tts_scenes_failed"] == 2
    assert job.final_package["audio"]["scene_audios"] == []


def test_autoconfig_failure_marks_job_failed(local_storage):
    client = FakeGenerationClient()
    client.autoconfig = None

    def broken(*args, **kwargs):
        raise GenerationError("text model error (500): upstream", status_code=500, retryable=True)

    client.generate_text = broken
    job_id = queue_job()

    assert PipelineOrchestrator(client, local_storage).run(job_id) == FAILED
    job, _ = load_job(job_id)
    assert "upstream" in job.error
    assert job.autoconfig is None


def test_duplicate_delivery_is_ignored(local_storage):
    client = FakeGenerationClient()
    job_id = queue_job()
    with database.SessionLocal() as db:
        db.get(Job, job_id).status = RUNNING
        db.commit()

    assert PipelineOrchestrator(client, local_storage).run(job_id) is None
    assert client.text_calls == []


def test_runtime_log_is_recorded(local_storage):
    job_id = queue_job()
    PipelineOrchestrator(FakeGenerationClient(scene_count=2), local_storage).run(job_id)

    with database.SessionLocal() as db:
        messages = [log.message for log in db.get(Job, job_id).logs]
    assert messages[0] == "Job started."
    assert messages[-1] == "Job succeeded."


# --- Image request normalization ---

def test_image_requests_prefer_render_requests_then_prompts_then_synthesis():
    scenes = [
        {"scene_id": 1, "visual_brief": "a rocket"},
        {"scene_id": 2, "visual_brief": "the moon"},
        {"scene_id": 3, "visual_brief": "", "on_screen_text": "Mars", "mood": "curious"},
    ]
    package = {
        "image_render_requests": [{"scene_id": 1, "prompt": "explicit rocket", "size": "1024x1024"}, {"scene_id": 9, "prompt": "x"}],
        "image_prompts": [{"scene_id": 1, "prompt": "ignored"}, {"scene_id": 2, "prompt": "moon prompt"}],
        "style_guide": {"visual_style": "watercolor"},
    }

    requests_out, generated = normalize_image_requests(package, scenes, "shorts_9_16", "space")

    assert generated is True
    assert [r["scene_id"] for r in requests_out] == [1, 2, 3]
    assert requests_out[0] == {"scene_id": 1, "prompt": "explicit rocket", "size": "1024x1024", "n": 1}
    assert requests_out[1]["prompt"] == "moon prompt"
    assert requests_out[1]["size"] == "1080x1920"
    assert requests_out[2]["prompt"].startswith("Mars, curious, watercolor")
    assert config.IMAGE_PROMPT_SUFFIX in requests_out[2]["prompt"]


def test_platform_sizes_default_to_square():
    scenes = [{"scene_id": 1, "visual_brief": "a rocket"}]
    requests_out, _ = normalize_image_requests({}, scenes, "youtube_16_9", "space")
    assert requests_out[0]["size"] == "1920x1080"
    requests_out, _ = normalize_image_requests({}, scenes, "unknown", "space")
    assert requests_out[0]["size"] == "1024x1024"


def test_job_lifecycle_is_monotonic():
    check_transition(QUEUED, RUNNING)
    check_transition(RUNNING, FAILED)
    check_transition(QUEUED, FAILED)
    check_transition(SUCCEEDED, QUEUED)
    with pytest.raises(InvalidTransition):
        check_transition(SUCCEEDED, RUNNING)
    with pytest.raises(InvalidTransition):
        check_transition(QUEUED, SUCCEEDED)
