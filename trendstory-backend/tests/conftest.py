# trendstory-backend/tests/conftest.py

import os
import sys
import tempfile

import pytest
import requests

# Point every setting at throwaway locations before any project module reads them
_TMP = tempfile.mkdtemp(prefix="trendstory-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'trendstory-test.db')}"
os.environ["SERVICE_DATABASE_URL"] = os.environ["DATABASE_URL"]
os.environ["MEDIA_DIR"] = os.path.join(_TMP, "media")
os.environ["STORAGE_BACKEND"] = "local"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "1"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["OPENAI_RETRY_BACKOFF_SECONDS"] = "0"

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
import database
import services
import storage
from database import Base, engine
from models import SUCCEEDED, Job, Scene, new_id
from services import GenerationError


def make_package(count, **extra):
    """A packaged script with `count` well-formed scenes."""
    package = {
        "trend_research": {"focus": "reusable rockets"},
        "story": {"title": "To the stars"},
        "scenes": [
            {
                "scene_id": i,
                "narration": f"Narration for scene {i}.",
                "on_screen_text": f"Scene {i}",
                "visual_brief": f"A rocket launch, shot {i}",
                "mood": "hopeful",
                "duration_sec": 8,
            }
            for i in range(1, count + 1)
        ],
        "style_guide": {"tone": "adventure", "visual_style": "warm illustration", "platform_target": "youtube_16_9"},
        "image_prompts": [{"scene_id": i, "prompt": f"Rocket illustration {i}"} for i in range(1, count + 1)],
        "tts": {"full_script": "..."},
        "youtube_meta": {"titles": ["Space travel"]},
        "video_package": {"timeline": []},
    }
    package.update(extra)
    return package


class FakeGenerationClient:
    """Stands in for the provider; records every call."""

    def __init__(self, scene_count=6, packages=None):
        self.autoconfig = {"scene_count": scene_count, "tone": "adventure", "scene_seeds": ["launch", "orbit"]}
        # Each packager call pops the next entry: a dict to return or an exception to raise
        self.packages = list(packages) if packages is not None else [make_package(scene_count)]
        self.text_calls = []
        self.image_calls = []
        self.speech_calls = []
        self.image_error = None
        self.on_image = None
        self.failing_narrations = set()

    def generate_text(self, instructions, payload, schema_hint=None, web_search=False, model=None):
        self.text_calls.append({"instructions": instructions, "payload": payload, "web_search": web_search})
        if instructions == config.AUTOCONFIG_PROMPT:
            return dict(self.autoconfig)
        response = self.packages.pop(0) if self.packages else make_package(self.autoconfig["scene_count"])
        if isinstance(response, Exception):
            raise response
        return response

    def generate_image(self, prompt, size_hint=None):
        self.image_calls.append({"prompt": prompt, "size_hint": size_hint})
        if self.on_image is not None:
            self.on_image(prompt)
        if self.image_error is not None:
            raise self.image_error
        return b"\x89PNG fake image"

    def generate_speech(self, text):
        self.speech_calls.append(text)
        if text in self.failing_narrations:
            raise GenerationError("speech error (500): upstream", status_code=500, retryable=True)
        return b"ID3 fake audio"


class ScriptedSession:
    """A requests-like session whose answers come from `handler(url)`."""

    def __init__(self, handler):
        self.handler = handler
        self.urls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.urls.append(url)
        return self.handler(url)

    def get(self, url, timeout=None):
        return self.post(url, timeout=timeout)


def raw_response(status_code, body):
    response = requests.Response()
    response.status_code = status_code
    response._content = body
    response.encoding = "utf-8"
    return response


@pytest.fixture(autouse=True)
def fresh_tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def local_storage(tmp_path):
    return storage.LocalStorage(root=str(tmp_path / "media"), public_base_url="/media")


@pytest.fixture
def fake_client():
    return FakeGenerationClient()


@pytest.fixture
def backends(monkeypatch, fake_client, local_storage):
    """Route the worker and the request handlers to the fake client and temp storage."""
    monkeypatch.setattr(services, "get_generation_client", lambda: fake_client)
    monkeypatch.setattr(storage, "get_storage", lambda: local_storage)
    return fake_client, local_storage


@pytest.fixture
def make_job():
    def _make(status=SUCCEEDED, scenes=6, with_images=(), with_audio=(), topic="space travel", final_package=None):
        job_id = new_id()
        with database.SessionLocal() as db:
            db.add(Job(
                id=job_id,
                status=status,
                input={"topic": topic, "language": "en", "audience": "teens"},
                trace_id=new_id(),
                script_package=make_package(scenes),
                final_package=final_package,
                runtime={},
                runtime_version=0,
            ))
            for i in range(1, scenes + 1):
                db.add(Scene(
                    job_id=job_id,
                    scene_index=i,
                    narration=f"Narration for scene {i}.",
                    visual_brief=f"A rocket launch, shot {i}",
                    mood="hopeful",
                    image_prompt=f"Rocket illustration {i}",
                    image_url=f"/media/jobs/{job_id}/scene-{i:02d}.png" if i in with_images else None,
                    audio_url=f"/media/jobs/{job_id}/tts/scene-{i:02d}.mp3" if i in with_audio else None,
                ))
            db.commit()
        return job_id

    return _make


def load_job(job_id):
    with database.SessionLocal() as db:
        job = db.get(Job, job_id)
        if job is None:
            return None, []
        return job, list(job.scenes)
