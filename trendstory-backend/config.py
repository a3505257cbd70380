"""
Configuration file for the TrendStory generation backend.
Contains all global constants, tunable limits and prompt engineering templates.
"""

import os


def _env_str(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip() or default


def _env_number(name: str, default: float, low: float, high: float) -> float:
    """Read a numeric override, falling back to the default on junk and clamping to [low, high]."""
    try:
        value = float(os.getenv(name, default))
    except (TypeError, ValueError):
        value = default
    if value != value:  # NaN
        value = default
    return max(low, min(value, high))


def _env_int(name: str, default: int, low: int, high: int) -> int:
    return int(_env_number(name, default, low, high))


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# --- Paths ---
PROJECT_ROOT = os.getcwd()
MEDIA_DIR = _env_str("MEDIA_DIR", os.path.join(PROJECT_ROOT, "media"))

# --- Durable store ---
# DATABASE_URL is the restricted "client" credential used by request handlers.
# SERVICE_DATABASE_URL is the privileged credential used only by background and
# continuation work; it defaults to the client URL for single-database setups.
DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./trendstory.db")
SERVICE_DATABASE_URL = os.getenv("SERVICE_DATABASE_URL", DATABASE_URL).strip()

# --- Background worker ---
CELERY_BROKER_URL = _env_str("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = _env_str("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
CELERY_TASK_ALWAYS_EAGER = _env_flag("CELERY_TASK_ALWAYS_EAGER")

# --- Generation provider ---
OPENAI_API_KEY = _env_str("OPENAI_API_KEY")
OPENAI_BASE_URL = _env_str("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")

TEXT_MODEL = _env_str("OPENAI_TEXT_MODEL", "gpt-4o-mini")
TEXT_MODEL_FALLBACKS = [m.strip() for m in _env_str("OPENAI_TEXT_MODEL_FALLBACKS", "gpt-4o-mini,gpt-4o").split(",") if m.strip()]
IMAGE_MODEL = _env_str("OPENAI_IMAGE_MODEL", "gpt-image-1-mini")
IMAGE_SIZE = _env_str("OPENAI_IMAGE_SIZE")
IMAGE_FALLBACK_SIZES = ["1792x1024", "1024x1024"]
TTS_MODEL = _env_str("OPENAI_TTS_MODEL", "gpt-4o-mini-tts")
TTS_VOICE = _env_str("OPENAI_TTS_VOICE", "alloy")

TEXT_TIMEOUT_SECONDS = _env_number("OPENAI_TEXT_TIMEOUT_SECONDS", 180, 10, 600)
IMAGE_TIMEOUT_SECONDS = _env_number("OPENAI_IMAGE_TIMEOUT_SECONDS", 120, 10, 600)
TTS_TIMEOUT_SECONDS = _env_number("OPENAI_TTS_TIMEOUT_SECONDS", 60, 10, 180)

TEXT_MAX_ATTEMPTS = _env_int("OPENAI_TEXT_MAX_ATTEMPTS", 2, 1, 5)
IMAGE_MAX_ATTEMPTS = _env_int("OPENAI_IMAGE_MAX_ATTEMPTS", 2, 1, 5)
TTS_MAX_ATTEMPTS = _env_int("OPENAI_TTS_MAX_ATTEMPTS", 2, 1, 5)
RETRY_BACKOFF_SECONDS = _env_number("OPENAI_RETRY_BACKOFF_SECONDS", 0.8, 0, 30)

# --- Storage ---
STORAGE_BACKEND = _env_str("STORAGE_BACKEND", "local").lower()
STORAGE_PUBLIC_BASE_URL = _env_str("STORAGE_PUBLIC_BASE_URL", "/media")
S3_BUCKET = _env_str("S3_BUCKET")
S3_REGION = _env_str("S3_REGION")
S3_ENDPOINT = _env_str("S3_ENDPOINT")
S3_PUBLIC_BASE_URL = _env_str("S3_PUBLIC_BASE_URL")

# --- Pipeline limits ---
DEFAULT_SCENE_COUNT = 6
MAX_SCENE_COUNT = 12
SCENE_IMAGE_LOCK_STALE_SECONDS = _env_int("SCENE_IMAGE_LOCK_STALE_SECONDS", 300, 60, 3600)
BATCH_MAX_RUNTIME_SECONDS = _env_number("BATCH_MAX_RUNTIME_SECONDS", 50, 5, 110)
BATCH_MAX_DEPTH = _env_int("BATCH_MAX_DEPTH", 10, 0, 30)
RUNTIME_CAS_ATTEMPTS = 5
JOB_LIST_DEFAULT_LIMIT = 20
JOB_LIST_MAX_LIMIT = 50

# --- CORS ---
ALLOWED_ORIGINS = [o.strip() for o in _env_str("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

# --- Prompt Engineering Section ---

AUTOCONFIG_PROMPT = """You are the AutoConfig agent of a short educational video generator.
The input is one JSON object with the keys topic, language, audience and an optional hint.

Produce the configuration the story packager will use:
- Respect the given topic, language and audience.
- Pick scene_count between 6 and 12 to fit the topic.
- Create exactly scene_count scene_seeds, each {scene_title, seed}, that tie naturally to the topic.
- Exclude hateful, sexual or excessively violent material; prioritise the safety of young viewers.
- If a hint is present, reflect it in visual_style, tone, main_character_hint and scene_seeds
  without drifting away from the topic.
- Write scene_seeds in the requested language.

Defaults when a value cannot be inferred:
tone "adventure", platform_target "youtube_16_9", visual_style "warm high quality illustration",
main_character_hint "one or two friendly students", safety_level "strict".

Output ONLY one JSON object. No explanations, no markdown, no code fences.
"""

AUTOCONFIG_SCHEMA_HINT = (
    "language, audience, tone, duration_min, platform_target, visual_style, "
    "main_character_hint, safety_level, scene_count, scene_seeds"
)

PACKAGER_PROMPT = """You are the TrendStory Packager agent.
The input is one JSON object with topic, language, audience, scene_count, scene_seeds and
optional tone, platform_target, visual_style, main_character_hint, safety_level, duration_min, hint.

Tasks:
1. Summarise current trends for the topic and select one focus (trend_research).
2. Build the overall story from the scene seeds (story).
3. Produce scenes[1..scene_count], each with scene_id, narration, on_screen_text, visual_brief, mood, duration_sec.
4. Fix the style_guide (tone, platform_target, visual_style, main_character_hint, safety_level).
5. Write one image prompt per scene in image_prompts [{scene_id, prompt}].
6. Write image_render_requests [{scene_id, prompt, size, n}] with size 1920x1080 for youtube_16_9,
   1080x1920 for shorts_9_16 and 1024x1024 otherwise, n = 1.
7. Write the full narration for text-to-speech in tts.full_script.
8. Write youtube_meta (titles, hook_lines, thumbnail_texts, thumbnail_image_prompts, hashtags).
9. Write a simple video_package.timeline with start/end per scene.

Output ONLY one JSON object with the top-level keys
trend_research, story, scenes, style_guide, image_prompts, image_render_requests, tts, video_package, youtube_meta.
Do not wrap it in another key.
"""

PACKAGER_SCHEMA_HINT = (
    "trend_research, story, scenes, style_guide, image_prompts, "
    "image_render_requests, tts, video_package, youtube_meta"
)

PACKAGER_REPAIR_SUFFIX = """
IMPORTANT (repair mode):
- The previous output was incomplete and its scenes list was empty or malformed.
- The scenes array MUST contain at least {target_count} items, each with the keys
  scene_id, narration, on_screen_text, visual_brief, mood, duration_sec.
- Output ONLY JSON.
"""

IMAGE_PROMPT_SUFFIX = "no text, no logo, no watermark, clean composition, high quality, 16:9"

PLATFORM_IMAGE_SIZES = {
    "youtube_16_9": "1920x1080",
    "shorts_9_16": "1080x1920",
}
DEFAULT_IMAGE_REQUEST_SIZE = "1024x1024"
