"""
Service classes for the TrendStory generation backend.
Contains the GenerationClient (text, image and speech calls against the
generation provider) and the PackageValidator for packaged scripts.
"""

import re
import json
import time
import base64
import logging
from typing import Any, Callable, Dict, List, Optional

import requests
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

import config


# --------------------------------------------------------------------------
# --- Errors ---
# --------------------------------------------------------------------------

class GenerationError(Exception):
    """A failed call to the generation provider."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ModelAccessError(GenerationError):
    """The account cannot use the requested model; the next candidate may work."""


class ParameterError(GenerationError):
    """The provider rejected a request parameter (e.g. an unsupported image size)."""


class OutputFormatError(GenerationError):
    """The provider answered, but not with the structured output we asked for."""


# --------------------------------------------------------------------------
# --- Structured output ---
# --------------------------------------------------------------------------

def parse_json_object(text: str) -> Dict[str, Any]:
    """Strictly decode model output into one JSON object (code fences are tolerated)."""
    cleaned = (text or "").strip()
    cleaned = re.sub(r"^```[a-zA-Z]*\s*", "", cleaned)
    cleaned = re.sub(r"\s*```$", "", cleaned).strip()
    if not cleaned:
        raise OutputFormatError("Model returned an empty response.")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise OutputFormatError(f"Model output is not valid JSON: {e}")
    if not isinstance(parsed, dict):
        raise OutputFormatError("Model output must be a JSON object.")
    return parsed


class SceneSeed(BaseModel):
    model_config = ConfigDict(extra="allow")

    scene_title: str = ""
    seed: str = ""


class AutoConfig(BaseModel):
    """Stage 1 output: the derived configuration for the packager."""

    model_config = ConfigDict(extra="allow")

    language: Optional[str] = None
    audience: Optional[str] = None
    tone: str = "adventure"
    duration_min: Optional[float] = None
    platform_target: str = "youtube_16_9"
    visual_style: str = "warm high quality illustration"
    main_character_hint: str = "one or two friendly students"
    safety_level: str = "strict"
    scene_count: int = config.DEFAULT_SCENE_COUNT
    scene_seeds: List[SceneSeed] = []

    @field_validator("scene_seeds", mode="before")
    @classmethod
    def _seed_objects(cls, value):
        if not isinstance(value, list):
            return []
        return [{"seed": item} if isinstance(item, str) else item for item in value if isinstance(item, (str, dict))]

    @field_validator("scene_count", mode="before")
    @classmethod
    def _clamp_scene_count(cls, value):
        try:
            count = int(value)
        except (TypeError, ValueError):
            count = config.DEFAULT_SCENE_COUNT
        if count <= 0:
            count = config.DEFAULT_SCENE_COUNT
        return max(1, min(count, config.MAX_SCENE_COUNT))


class SceneDraft(BaseModel):
    """One scene as produced by the packager."""

    model_config = ConfigDict(extra="allow")

    scene_id: Optional[int] = None
    narration: str = ""
    on_screen_text: str = ""
    visual_brief: str = ""
    mood: str = ""
    duration_sec: Optional[int] = None

    @field_validator("scene_id", "duration_sec", mode="before")
    @classmethod
    def _lenient_int(cls, value):
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None

    @field_validator("narration", "on_screen_text", "visual_brief", "mood", mode="before")
    @classmethod
    def _text(cls, value):
        return "" if value is None else str(value).strip()


class PackageValidator:
    """Validates and normalizes the scene list of a packaged script."""

    def __init__(self, package: Any, target_count: int):
        self.package = package if isinstance(package, dict) else {}
        self.target_count = max(1, min(int(target_count), config.MAX_SCENE_COUNT))
        self.fixes_applied = []
        self.scenes: List[SceneDraft] = []

    def _collect(self):
        raw = self.package.get("scenes")
        if not isinstance(raw, list):
            self.fixes_applied.append("scenes missing or not a list")
            return
        for position, item in enumerate(raw):
            if not isinstance(item, dict):
                self.fixes_applied.append(f"Dropped non-object scene at position {position}")
                continue
            try:
                draft = SceneDraft.model_validate(item)
            except ValidationError as e:
                self.fixes_applied.append(f"Dropped malformed scene at position {position}: {e.error_count()} errors")
                continue
            if not draft.narration:
                self.fixes_applied.append(f"Dropped scene without narration at position {position}")
                continue
            if draft.scene_id is None:
                draft.scene_id = position + 1
            self.scenes.append(draft)

    def _order_and_reindex(self):
        self.scenes.sort(key=lambda s: s.scene_id)
        if len(self.scenes) > self.target_count:
            self.fixes_applied.append(f"Truncated {len(self.scenes)} scenes to {self.target_count}")
            self.scenes = self.scenes[: self.target_count]
        expected = list(range(1, len(self.scenes) + 1))
        if [s.scene_id for s in self.scenes] != expected:
            for index, scene in enumerate(self.scenes, start=1):
                scene.scene_id = index
            self.fixes_applied.append("Re-indexed scenes 1..N")

    def run(self, minimum: Optional[int] = None) -> List[SceneDraft]:
        """Return the normalized scenes or raise OutputFormatError if fewer than `minimum` survive."""
        minimum = self.target_count if minimum is None else minimum
        self._collect()
        self._order_and_reindex()

        if self.fixes_applied:
            logging.warning(f"🔧 PACKAGE FIXES APPLIED: {', '.join(self.fixes_applied)}")

        if not self.scenes:
            raise OutputFormatError("Package output is invalid: scenes is empty")
        if len(self.scenes) < minimum:
            raise OutputFormatError(
                f"Package output is invalid: {len(self.scenes)} well-formed scenes, expected {minimum}"
            )
        return self.scenes


# --------------------------------------------------------------------------
# --- Generation provider client ---
# --------------------------------------------------------------------------

def _dedupe(values) -> List[str]:
    seen = []
    for value in values:
        value = (value or "").strip()
        if value and value not in seen:
            seen.append(value)
    return seen


def _is_model_access_error(body: str) -> bool:
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return False
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return False
    if error.get("code") == "model_not_found":
        return True
    return "does not have access to model" in str(error.get("message") or "")


def _extract_output_text(data: Dict[str, Any]) -> str:
    text = data.get("output_text")
    if isinstance(text, str) and text.strip():
        return text
    for item in data.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        parts = [c.get("text") for c in item.get("content") or [] if isinstance(c, dict)]
        joined = "".join(p for p in parts if isinstance(p, str))
        if joined.strip():
            return joined
    return ""


class GenerationClient:
    """Handles calls to the generation provider for text, images and speech."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        self.base_url = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.session = session or requests.Session()
        self.sleep = sleep

    # --- Transport ---

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise GenerationError("Missing required env: OPENAI_API_KEY")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _post(self, path: str, payload: Dict[str, Any], timeout: float) -> requests.Response:
        try:
            return self.session.post(f"{self.base_url}{path}", json=payload, headers=self._headers(), timeout=timeout)
        except requests.Timeout:
            raise GenerationError(f"timeout after {timeout:.0f}s", retryable=True)
        except requests.ConnectionError as e:
            raise GenerationError(f"connection failed: {e}", retryable=True)
        except requests.RequestException as e:
            raise GenerationError(f"request failed: {e}", retryable=isinstance(e, requests.exceptions.ChunkedEncodingError))

    def _raise_for_response(self, response: requests.Response, label: str):
        if response.ok:
            return
        status = response.status_code
        body = response.text[:500]
        message = f"{label} error ({status}): {body}"
        if status in (403, 404) and _is_model_access_error(response.text):
            raise ModelAccessError(message, status_code=status)
        if status == 429 or status >= 500:
            raise GenerationError(message, status_code=status, retryable=True)
        if status == 400:
            raise ParameterError(message, status_code=status)
        raise GenerationError(message, status_code=status)

    def _json(self, response: requests.Response, label: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise GenerationError(f"{label} returned a non-JSON body: {response.text[:200]}", retryable=True)
        if not isinstance(data, dict):
            raise GenerationError(f"{label} returned an unexpected JSON body.", retryable=True)
        return data

    def _with_retries(self, call: Callable[[], Any], attempts: int, label: str):
        """Run `call`, retrying transient failures with linear backoff (base x attempt)."""
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                return call()
            except GenerationError as e:
                last_error = e
                if not e.retryable:
                    raise
                logging.warning(f"{label} attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    self.sleep(config.RETRY_BACKOFF_SECONDS * attempt)
        raise last_error

    # --- Text ---

    def generate_text(
        self,
        instructions: str,
        payload: Dict[str, Any],
        schema_hint: Optional[str] = None,
        web_search: bool = False,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Generate one structured JSON object from the text model."""
        system = instructions
        if schema_hint:
            system = f"{instructions}\nRequired top-level keys: {schema_hint}"
        body = {
            "input": [
                {"role": "system", "content": system},
                {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
            ],
        }
        if web_search:
            body["tools"] = [{"type": "web_search_preview", "search_context_size": "medium"}]

        candidates = _dedupe([model, config.TEXT_MODEL, *config.TEXT_MODEL_FALLBACKS])
        last_error = None
        for candidate in candidates:
            def call():
                response = self._post("/responses", {**body, "model": candidate}, config.TEXT_TIMEOUT_SECONDS)
                self._raise_for_response(response, f"text model {candidate}")
                return self._json(response, f"text model {candidate}")

            try:
                data = self._with_retries(call, config.TEXT_MAX_ATTEMPTS, f"text[{candidate}]")
            except ModelAccessError as e:
                logging.warning(f"Model {candidate} is not available, trying the next candidate.")
                last_error = e
                continue
            text = _extract_output_text(data)
            if not text.strip():
                raise OutputFormatError(f"text model {candidate} returned empty output")
            return parse_json_object(text)

        raise last_error or GenerationError("No available text model.")

    # --- Images ---

    def _fetch_bytes(self, url: str, timeout: float) -> bytes:
        try:
            response = self.session.get(url, timeout=timeout)
        except requests.Timeout:
            raise GenerationError(f"image download timeout after {timeout:.0f}s", retryable=True)
        except requests.ConnectionError as e:
            raise GenerationError(f"image download failed: {e}", retryable=True)
        except requests.RequestException as e:
            raise GenerationError(f"image download failed: {e}")
        if not response.ok:
            raise GenerationError(
                f"Failed to fetch image URL ({response.status_code})",
                status_code=response.status_code,
                retryable=response.status_code == 429 or response.status_code >= 500,
            )
        return response.content

    def generate_image(self, prompt: str, size_hint: Optional[str] = None) -> bytes:
        """Generate one image, walking the candidate sizes until one works."""
        sizes = _dedupe([size_hint, config.IMAGE_SIZE, *config.IMAGE_FALLBACK_SIZES])
        timeout = config.IMAGE_TIMEOUT_SECONDS
        last_error = None

        for size in sizes:
            def call():
                response = self._post(
                    "/images/generations",
                    {"model": config.IMAGE_MODEL, "prompt": prompt, "size": size},
                    timeout,
                )
                self._raise_for_response(response, f"image (size={size})")
                data = self._json(response, f"image (size={size})").get("data")
                first = data[0] if isinstance(data, list) and data and isinstance(data[0], dict) else {}
                if first.get("b64_json"):
                    try:
                        return base64.b64decode(first["b64_json"], validate=True)
                    except (TypeError, ValueError) as e:
                        raise GenerationError(f"image response had invalid base64: {e}")
                if first.get("url"):
                    return self._fetch_bytes(first["url"], timeout)
                raise GenerationError("image response had neither b64_json nor url", retryable=True)

            try:
                return self._with_retries(call, config.IMAGE_MAX_ATTEMPTS, f"image[{size}]")
            except ParameterError as e:
                logging.warning(f"Image size {size} rejected, trying the next size: {e}")
                last_error = e
                continue
            except GenerationError as e:
                if not e.retryable:
                    raise
                last_error = e
                continue

        raise last_error or GenerationError("No valid image size worked.")

    # --- Speech ---

    def generate_speech(self, text: str) -> bytes:
        """Synthesize speech for `text` and return the mp3 bytes."""
        payload = {"model": config.TTS_MODEL, "voice": config.TTS_VOICE, "format": "mp3", "input": text}

        def call():
            response = self._post("/audio/speech", payload, config.TTS_TIMEOUT_SECONDS)
            self._raise_for_response(response, "speech")
            return response.content

        return self._with_retries(call, config.TTS_MAX_ATTEMPTS, "speech")


def get_generation_client() -> GenerationClient:
    return GenerationClient()
