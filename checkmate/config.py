"""
Configuration settings for the Checkmate grading pipeline.
Loads settings from environment variables and .env file.
"""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Capability (vision / language model) settings
    capability_provider: str = "openai"  # "openai" or "google"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"  # For answer scoring
    openai_vision_model: str = "gpt-4o"  # For OCR / segment extraction
    google_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"  # For OCR / segment extraction
    gemini_scoring_model: str = "gemini-2.0-flash"  # For answer scoring
    max_tokens_per_request: int = 4000

    # Retry / timeout around every capability call
    capability_max_attempts: int = 3
    capability_backoff_seconds: float = 1.0  # 1s, 2s, 4s...
    capability_timeout_seconds: float = 120.0

    # Pipeline settings
    auto_learn_threshold: float = 80
    memory_lookup_limit: int = 5
    max_concurrent_files: int = 3
    max_exam_files: int = 10
    max_upload_size_mb: int = 25

    # Vision processing settings
    vision_max_image_size: int = 2000  # Max dimension for images sent to the model
    vision_enhance_images: bool = True

    # Application settings
    app_env: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    # LangSmith settings
    langchain_tracing_v2: Optional[str] = "false"
    langchain_endpoint: Optional[str] = "https://api.smith.langchain.com"
    langchain_api_key: Optional[str] = None
    langchain_project: Optional[str] = "Checkmate-Grader"

    # Teacher memory store (local embedded SQLite by default, PostgreSQL via asyncpg)
    database_url: str = "sqlite+aiosqlite:///./data/checkmate.db"

    # Per-request upload spooling
    upload_temp_dir: str = "/tmp/checkmate_uploads"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"


settings = Settings()
