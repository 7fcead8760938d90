from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Model API settings
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-5-mini"
    reasoning_effort: str = "low"
    request_timeout_seconds: float = 600.0
    theses_timeout_seconds: float = 300.0

    # Prompt budgets
    claims_max_text_length: int = 30000
    contacts_max_text_length: int = 6000
    research_group_batch_size: int = 2
    max_similar_papers_for_contacts: int = 5
    max_researchers: int = 10

    # Stage cache settings
    cache_backend: str = "sqlite"  # or 's3'
    database_path: str = "./evidentia.db"
    cache_bucket: str = "papers"
    cache_prefix: str = ""

    # Application settings
    max_file_size_mb: int = 25
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    # Server settings
    host: str = "127.0.0.1"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )

    @property
    def has_api_key(self) -> bool:
        """Whether a model API credential is configured"""
        return bool(self.openai_api_key.strip())

    @property
    def max_file_size_bytes(self) -> int:
        """Upload size limit in bytes"""
        return self.max_file_size_mb * 1024 * 1024


settings = Settings()
