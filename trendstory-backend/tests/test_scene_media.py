import requests
from sqlalchemy import select, update

import database
from claims import SceneClaimManager
from continuation import BatchReport
from models import ASSET_IMAGE, IMAGE_FAILED, IMAGE_GENERATING, IMAGE_SUCCEEDED, Asset, Job, Scene
from scene_media import (
    IMAGE_ALREADY_EXISTS,
    IMAGE_FAILED as RESULT_FAILED,
    IMAGE_IN_PROGRESS,
    IMAGE_QUEUED,
    IMAGE_SUCCEEDED as RESULT_SUCCEEDED,
    SceneMedia,
    build_audio_retry_items,
    build_image_retry_items,
    run_audio_retry,
    run_image_retry,
)
from services import GenerationClient, GenerationError
from conftest import FakeGenerationClient, ScriptedSession, load_job, raw_response


def scene_row(job_id, scene_index):
    _, scenes = load_job(job_id)
    return next(s for s in scenes if s.scene_index == scene_index)


def test_concurrent_requests_for_one_scene_generate_once(make_job, local_storage):
    job_id = make_job(scenes=2)
    client = FakeGenerationClient()
    media = SceneMedia(client, local_storage)
    competing = []

    # A second request arrives while the first one is still generating
    client.on_image = lambda prompt: competing.append(
        SceneMedia(client, local_storage).generate_scene_image(job_id, 1)
    ) if not competing else None

    result = media.generate_scene_image(job_id, 1)

    assert result["status"] == RESULT_SUCCEEDED
    assert competing[0]["status"] == IMAGE_IN_PROGRESS
    assert competing[0]["accepted"] is False
    assert len(client.image_calls) == 1

    scene = scene_row(job_id, 1)
    assert scene.image_gen_status == IMAGE_SUCCEEDED
    assert scene.image_url == result["image_url"]
    assert scene.image_path.startswith(f"jobs/{job_id}/scene-01-space-travel")


def test_existing_image_is_kept_unless_forced(make_job, local_storage):
    job_id = make_job(scenes=1, with_images=[1])
    client = FakeGenerationClient()
    media = SceneMedia(client, local_storage)

    assert media.generate_scene_image(job_id, 1)["status"] == IMAGE_ALREADY_EXISTS
    assert client.image_calls == []

    forced = media.generate_scene_image(job_id, 1, force=True)
    assert forced["status"] == RESULT_SUCCEEDED
    assert client.image_calls[0]["prompt"] == "Rocket illustration 1"


def test_failed_generation_is_recorded_on_the_scene(make_job, local_storage):
    job_id = make_job(scenes=1)
    client = FakeGenerationClient()
    client.image_error = GenerationError("image (size=1024x1024) error (500): boom", status_code=500, retryable=True)

    result = SceneMedia(client, local_storage).generate_scene_image(job_id, 1)

    assert result["status"] == RESULT_FAILED
    scene = scene_row(job_id, 1)
    assert scene.image_gen_status == IMAGE_FAILED
    assert "boom" in scene.image_gen_error
    assert scene.image_url is None
    job, _ = load_job(job_id)
    assert job.runtime["images_failed"] == 1
    # A failed scene can be requested again right away
    assert SceneClaimManager().try_claim(job_id, 1, "next-request")


def test_unreadable_provider_answer_releases_the_claim(make_job, local_storage):
    job_id = make_job(scenes=1)
    session = ScriptedSession(lambda url: raw_response(200, b"<html>gateway hiccup</html>"))
    client = GenerationClient(api_key="test-key", base_url="https://provider.test/v1", session=session, sleep=lambda s: None)
    media = SceneMedia(client, local_storage)

    first = media.generate_scene_image(job_id, 1)

    assert first["status"] == RESULT_FAILED
    assert scene_row(job_id, 1).image_gen_status == IMAGE_FAILED
    # The next request takes a fresh claim instead of waiting for the stale window
    assert media.generate_scene_image(job_id, 1)["status"] == RESULT_FAILED


def test_unexpected_client_error_marks_the_claim_failed(make_job, local_storage):
    job_id = make_job(scenes=1)
    client = FakeGenerationClient()
    client.image_error = KeyError("data")

    result = SceneMedia(client, local_storage).generate_scene_image(job_id, 1)

    assert result["status"] == RESULT_FAILED
    scene = scene_row(job_id, 1)
    assert scene.image_gen_status == IMAGE_FAILED
    assert "data" in scene.image_gen_error
    assert SceneClaimManager().try_claim(job_id, 1, "next-request")


def test_background_request_claims_and_hands_off(make_job, local_storage):
    job_id = make_job(scenes=1)
    dispatched = []
    media = SceneMedia(FakeGenerationClient(), local_storage)

    result = media.generate_scene_image(
        job_id, 1, dispatch_background=lambda *args: dispatched.append(args),
    )

    assert result["status"] == IMAGE_QUEUED
    assert dispatched[0][:2] == (job_id, 1)
    scene = scene_row(job_id, 1)
    assert scene.image_gen_status == IMAGE_GENERATING
    assert scene.image_gen_request_id == dispatched[0][2]


def test_result_of_superseded_request_is_not_recorded(make_job, local_storage):
    job_id = make_job(scenes=1)
    client = FakeGenerationClient()

    def take_over(prompt):
        with database.SessionLocal() as db:
            db.execute(
                update(Scene).where(Scene.job_id == job_id).values(image_gen_request_id="someone-else")
            )
            db.commit()

    client.on_image = take_over
    SceneMedia(client, local_storage).generate_scene_image(job_id, 1)

    scene = scene_row(job_id, 1)
    assert scene.image_url is None
    assert scene.image_gen_status == IMAGE_GENERATING
    with database.SessionLocal() as db:
        assert db.execute(select(Asset).where(Asset.kind == ASSET_IMAGE)).first() is None


def test_image_retry_selects_only_missing_images(make_job):
    job_id = make_job(scenes=6, with_images=[1, 2, 3])

    items, skipped = build_image_retry_items(job_id, missing_only=True)
    assert [item["scene_index"] for item in items] == [4, 5, 6]
    assert skipped == 3

    items, skipped = build_image_retry_items(job_id, scene_ids=[2, 5], missing_only=False)
    assert [item["scene_index"] for item in items] == [2, 5]
    assert skipped == 4


def test_image_retry_skips_scenes_claimed_elsewhere(make_job, local_storage):
    job_id = make_job(scenes=3)
    assert SceneClaimManager().try_claim(job_id, 2, "live-request")
    items, _ = build_image_retry_items(job_id)
    requeued = []

    report = run_image_retry(
        SceneMedia(FakeGenerationClient(), local_storage), job_id, items, 0,
        lambda remaining, depth: requeued.append(depth),
    )

    assert (report.attempted, report.succeeded, report.skipped) == (2, 2, 1)
    assert requeued == []
    assert scene_row(job_id, 2).image_gen_request_id == "live-request"
    job, _ = load_job(job_id)
    assert job.runtime["images_success"] == 2
    assert job.runtime["images_skipped"] == 1


def test_image_retry_for_deleted_job_is_dropped(local_storage):
    report = run_image_retry(SceneMedia(FakeGenerationClient(), local_storage), "missing", [], 0, lambda r, d: None)
    assert isinstance(report, BatchReport)
    assert report.stop_reason == "job_missing"


def test_audio_retry_regenerates_and_patches_final_package(make_job, local_storage):
    final_package = {"audio": {"scene_audios": [], "tts": {}}, "scenes": []}
    job_id = make_job(scenes=3, with_audio=[1], final_package=final_package)

    items, skipped = build_audio_retry_items(job_id)
    assert [item["scene_index"] for item in items] == [2, 3]
    assert skipped == 1

    client = FakeGenerationClient()
    report = run_audio_retry(SceneMedia(client, local_storage), job_id, items, 0, lambda r, d: None)

    assert report.succeeded == 2
    assert client.speech_calls == ["Narration for scene 2.", "Narration for scene 3."]
    job, scenes = load_job(job_id)
    assert all(scene.audio_url for scene in scenes)
    assert [a["scene_index"] for a in job.final_package["audio"]["scene_audios"]] == [1, 2, 3]
    assert job.runtime["audio_success"] == 2
    assert job.status == "SUCCEEDED"


def test_audio_retry_with_force_includes_existing_audio(make_job):
    job_id = make_job(scenes=2, with_audio=[1, 2])
    items, skipped = build_audio_retry_items(job_id, force=True)
    assert len(items) == 2
    assert skipped == 0


def test_audio_retry_counts_failures(make_job, local_storage):
    job_id = make_job(scenes=2)
    client = FakeGenerationClient()
    client.failing_narrations = {"Narration for scene 1."}
    items, _ = build_audio_retry_items(job_id)

    report = run_audio_retry(SceneMedia(client, local_storage), job_id, items, 0, lambda r, d: None)

    assert (report.succeeded, report.failed) == (1, 1)
    with database.SessionLocal() as db:
        assert db.get(Job, job_id).runtime["audio_failed"] == 1


def test_audio_retry_survives_transport_errors(make_job, local_storage):
    job_id = make_job(scenes=2)
    client = FakeGenerationClient()

    def broken_speech(text):
        if text == "Narration for scene 1.":
            raise requests.exceptions.ChunkedEncodingError("connection broken mid-body")
        return b"ID3 fake audio"

    client.generate_speech = broken_speech
    items, _ = build_audio_retry_items(job_id)

    report = run_audio_retry(SceneMedia(client, local_storage), job_id, items, 0, lambda r, d: None)

    assert (report.succeeded, report.failed) == (1, 1)
    assert [bool(s.audio_url) for s in load_job(job_id)[1]] == [False, True]
