import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .services.retry import RetryPolicy

MIB = 1024 * 1024

# (tries, base delay in ms) per channel
DEFAULT_RETRY_TUNING = {
    "DIRECT": (4, 600),
    "DOCUMENT": (3, 400),
    "FALLBACK": (3, 500),
    "VIDEO": (3, 500),
    "TRANSCRIBE": (5, 700),
    "QUIZ": (4, 600),
}


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _str(env: Mapping[str, str], name: str) -> Optional[str]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


@dataclass(frozen=True)
class Settings:
    """
    Process-wide configuration. Built once at startup and handed to every
    component constructor; nothing below this reads the environment.
    """
    port: int = 10000
    log_level: str = "INFO"

    transcription_api_key: Optional[str] = None
    quiz_api_key: Optional[str] = None
    transcription_model: str = "gemini-2.0-flash"
    quiz_model: str = "gemini-2.0-flash"
    quiz_language: str = "English"
    max_source_chars: int = 60000

    max_payload_bytes: int = 25 * MIB
    max_video_bytes: int = 20 * MIB
    allow_unsniffed_mp3: bool = False

    video_fallback_url: Optional[str] = None
    video_fallback_token: Optional[str] = None

    http_timeout: float = 60.0
    user_agent: str = "Mozilla/5.0"

    retry: Mapping[str, RetryPolicy] = field(default_factory=lambda: {
        name: RetryPolicy(tries=tries, base_delay=base_ms / 1000.0)
        for name, (tries, base_ms) in DEFAULT_RETRY_TUNING.items()
    })

    def retry_policy(self, channel: str) -> RetryPolicy:
        return self.retry[channel.upper()]

    @property
    def fallback_configured(self) -> bool:
        return bool(self.video_fallback_url)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        shared_key = _str(env, "GEMINI_API_KEY")
        retry = {}
        for name, (tries, base_ms) in DEFAULT_RETRY_TUNING.items():
            retry[name] = RetryPolicy(
                tries=_int(env, f"{name}_RETRY_TRIES", tries),
                base_delay=_int(env, f"{name}_RETRY_BASE_MS", base_ms) / 1000.0,
            )

        return cls(
            port=_int(env, "PORT", 10000),
            log_level=(_str(env, "LOG_LEVEL") or "INFO").upper(),
            transcription_api_key=_str(env, "TRANSCRIPTION_API_KEY") or shared_key,
            quiz_api_key=_str(env, "QUIZ_API_KEY") or shared_key,
            transcription_model=_str(env, "GEMINI_TRANSCRIBE_MODEL") or "gemini-2.0-flash",
            quiz_model=_str(env, "GEMINI_MODEL") or "gemini-2.0-flash",
            quiz_language=_str(env, "QUIZ_LANGUAGE") or "English",
            max_source_chars=_int(env, "MAX_SOURCE_CHARS", 60000),
            max_payload_bytes=_int(env, "MAX_PAYLOAD_MB", 25) * MIB,
            max_video_bytes=_int(env, "VIDEO_MAX_MB", 20) * MIB,
            allow_unsniffed_mp3=_flag(env, "ALLOW_UNSNIFFED_MP3"),
            video_fallback_url=_str(env, "VIDEO_FALLBACK_URL"),
            video_fallback_token=_str(env, "VIDEO_FALLBACK_TOKEN"),
            http_timeout=float(_int(env, "HTTP_TIMEOUT_SECONDS", 60)),
            user_agent=_str(env, "FETCH_USER_AGENT") or "Mozilla/5.0",
            retry=retry,
        )
