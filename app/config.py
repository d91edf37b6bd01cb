"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    app_name: str = "TrainAI Job Service"
    log_level: str = "INFO"

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Job store: "supabase" or "memory"
    job_store_backend: str = "supabase"
    jobs_table: str = "background_jobs"

    # Processing trigger (shared secret for the scheduler)
    background_job_token: Optional[str] = None

    # Job processing
    job_batch_size: int = 20
    job_retry_delay_minutes: int = 5
    job_default_max_retries: int = 3
    job_retention_days: int = 30

    # Per-type executor ceilings (seconds)
    transcription_timeout_seconds: float = 300.0
    document_generation_timeout_seconds: float = 180.0
    media_upload_timeout_seconds: float = 150.0
    speech_synthesis_timeout_seconds: float = 60.0
    answer_evaluation_timeout_seconds: float = 60.0

    # Providers
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    mux_token_id: Optional[str] = None
    mux_token_secret: Optional[str] = None
    mux_base_url: str = "https://api.mux.com"

    # Uploads
    upload_bucket: str = "training-videos"
    upload_max_bytes: int = 100 * 1024 * 1024
    upload_chunk_size: int = 1024 * 1024

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
