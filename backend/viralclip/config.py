from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Transcription (Deepgram)
    deepgram_api_key: str = ""  # Set via DEEPGRAM_API_KEY env var
    deepgram_base_url: str = "https://api.deepgram.com/v1"
    transcription_model: str = "nova-2"
    transcription_fallback_model: str = "nova"
    transcription_timeout: float = 60.0

    # Viral moment detection (OpenAI-compatible chat completions gateway)
    ai_api_key: str = ""  # Set via AI_API_KEY env var
    ai_base_url: str = "https://api.openai.com/v1"
    ai_model: str = "gpt-4o-mini"
    ai_timeout: float = 60.0

    # External clipping worker, blank disables clipping and audio extraction
    clipper_url: str = ""  # Set via CLIPPER_URL env var
    clipper_timeout: float = 300.0

    # Caption grouping
    caption_policy: str = "punchy"
    caption_max_words: Optional[int] = None
    caption_max_duration: Optional[float] = None
    caption_min_words: Optional[int] = None

    # Playback
    crossfade_ms: int = 150

    # Pipeline
    detect_min_words: int = 20
    default_clip_length: float = 60.0

    # Database
    database_url: str = "sqlite+aiosqlite:///./viralclip.db"  # Set via DATABASE_URL env var
    database_echo: bool = False

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
