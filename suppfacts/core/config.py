from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "Supplement Facts Extraction"
    debug: bool = False
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    log_dir: str = "./logs"  # failed-extraction artifacts land here

    # Database
    database_url: str = "sqlite+aiosqlite:///./products.db"

    # Input
    products_root: str = "./products"

    # Batch processing
    concurrency: int = 5
    max_retries: int = 3
    retry_base_delay: float = 1.0  # seconds
    retry_max_delay: float = 10.0
    retry_multiplier: float = 2.0

    # Primary extraction (provider: anthropic | openai | google | grok)
    extraction_provider: str = "anthropic"
    extraction_model: str = ""  # auto-defaults per provider if empty
    rate_limit_per_minute: int = 50
    ai_max_tokens: int = 4096
    ai_temperature: float = 0.0
    hybrid_extraction_enabled: bool = False
    strict_normalization: bool = False

    # Provider credentials
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    google_ai_api_key: str = ""
    grok_api_key: str = ""
    grok_base_url: str = "https://api.x.ai/v1"

    # Cross-model verification
    verification_enabled: bool = False
    verification_provider: str = "grok"
    verification_model: str = ""
    verification_rate_limit_per_minute: int = 30
    similarity_threshold: float = 85.0

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
