import os
from pathlib import Path


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


BASE_DIR = Path(__file__).resolve().parent
GENERATED_DIR = Path(os.getenv("GENERATED_DIR", str(BASE_DIR.parent / "generated")))
PROJECTS_DIR = Path(os.getenv("PROJECTS_DIR", str(BASE_DIR.parent / "data" / "projects")))
PUBLIC_MEDIA_PREFIX = os.getenv("PUBLIC_MEDIA_PREFIX", "/generated")

LLM_API_KEY = os.getenv("LLM_API_KEY")
LLM_MODEL = os.getenv("LLM_MODEL", "gemini-3-pro")
LLM_FILTER_MODEL = os.getenv("LLM_FILTER_MODEL", "gemini-3-flash-preview")
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://new.12ai.org/v1")
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "180"))

RESEARCH_MODEL = os.getenv("RESEARCH_MODEL", "o4-mini-deep-research")
RESEARCH_MAX_ATTEMPTS = int(os.getenv("RESEARCH_MAX_ATTEMPTS", "1"))
RESEARCH_BUDGET_LOW = float(os.getenv("RESEARCH_BUDGET_LOW", "300"))
RESEARCH_BUDGET_MEDIUM = float(os.getenv("RESEARCH_BUDGET_MEDIUM", "600"))
RESEARCH_BUDGET_HIGH = float(os.getenv("RESEARCH_BUDGET_HIGH", "1200"))
DEFAULT_MAX_DIMENSIONS = int(os.getenv("DEFAULT_MAX_DIMENSIONS", "4"))

TTS_API_KEY = os.getenv("TTS_API_KEY")
TTS_API_URL = os.getenv("TTS_API_URL", "https://api.coze.cn/v1/audio/speech")
TTS_DEFAULT_VOICE_ID = os.getenv("TTS_DEFAULT_VOICE_ID", "7540911707150008374")
TTS_AUDIO_FORMAT = os.getenv("TTS_AUDIO_FORMAT", "mp3")
TTS_SAMPLE_RATE = int(os.getenv("TTS_SAMPLE_RATE", "24000"))
TTS_TARGET_DBFS = float(os.getenv("TTS_TARGET_DBFS", "-16"))
TTS_CONCURRENCY = int(os.getenv("TTS_CONCURRENCY", "3"))

IMG_API_KEY = os.getenv("IMG_API_KEY")
IMG_CREATE_URL = os.getenv("IMG_CREATE_URL", "https://api.wuyinkeji.com/api/img/nanoBanana-pro")
IMG_POLL_URL = os.getenv("IMG_POLL_URL", "https://api.wuyinkeji.com/api/img/drawDetail")
IMG_POLL_INTERVAL = float(os.getenv("IMG_POLL_INTERVAL", "2.5"))
IMG_POLL_TIMEOUT = float(os.getenv("IMG_POLL_TIMEOUT", "90"))
IMAGE_CONCURRENCY = int(os.getenv("IMAGE_CONCURRENCY", "10"))
IMAGE_MAX_PER_SEGMENT = int(os.getenv("IMAGE_MAX_PER_SEGMENT", "3"))
DEFAULT_IMAGE_MODEL = os.getenv("DEFAULT_IMAGE_MODEL", "nano-banana-pro")

SYNTHESIS_TIMEOUT = float(os.getenv("SYNTHESIS_TIMEOUT", "120"))
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "30"))
REQUIRE_FULL_BATCH_SUCCESS = _env_bool("REQUIRE_FULL_BATCH_SUCCESS")

CHARS_PER_SECOND = float(os.getenv("CHARS_PER_SECOND", "4.5"))
CONTENT_FILTER_MIN_CHARS = int(os.getenv("CONTENT_FILTER_MIN_CHARS", "2000"))

HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", "5"))

CLIP_BUFFER_SECONDS = float(os.getenv("CLIP_BUFFER_SECONDS", "0.5"))
COMPOSE_CONCURRENCY = int(os.getenv("COMPOSE_CONCURRENCY", "4"))
VIDEO_FPS = int(os.getenv("VIDEO_FPS", "24"))
VIDEO_FILL_COLOR = os.getenv("VIDEO_FILL_COLOR", "#000000")
TRANSITION_SECONDS = float(os.getenv("TRANSITION_SECONDS", "0.5"))
FFMPEG_TIMEOUT = float(os.getenv("FFMPEG_TIMEOUT", "600"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _env_bool("LOG_JSON")
LOG_FILE = os.getenv("LOG_FILE")

DEBUG_SAVE_LLM_RAW = _env_bool("DEBUG_SAVE_LLM_RAW")

GENERATED_DIR.mkdir(parents=True, exist_ok=True)
PROJECTS_DIR.mkdir(parents=True, exist_ok=True)
