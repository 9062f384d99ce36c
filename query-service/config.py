from typing import Optional
from pydantic import ConfigDict
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # MongoDB Configuration
    default_database: str = "test"
    connection_timeout_ms: int = 10_000
    connect_max_retries: int = 2
    connect_backoff_ms: int = 1_000
    max_pool_size: int = 10
    min_pool_size: int = 2

    # Query Execution
    query_timeout_ms: int = 30_000
    max_result_size: int = 10_000
    parse_embedded_json: bool = False  # Re-parse string fields that look like JSON
    schema_sample_size: int = 5

    # LLM Provider Selection
    llm_provider: str = "openrouter"  # Options: openai, openrouter, gemini, local, huggingface

    # OpenAI Configuration
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # OpenRouter Configuration (OpenAI-compatible API)
    openrouter_api_key: Optional[str] = None
    openrouter_model: str = "openai/gpt-4o-mini"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # Google Gemini Configuration
    google_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash-lite"

    # Hugging Face Configuration
    huggingface_api_key: Optional[str] = None
    huggingface_model: str = "openai/gpt-oss-120b"

    # Local LLM Configuration
    local_llm_base_url: str = "http://localhost:1234/v1"
    local_llm_model: str = "google/gemma-3-27b"

    # Prompt Configuration
    max_schema_length: int = 50_000
    max_request_length: int = 1_000
    prompt_cache_size: int = 50
    default_timezone: str = "UTC"

    # Result Cache
    cache_ttl_seconds: float = 300
    cache_max_entries: int = 100
    cache_key_schema_prefix: int = 100

    # Rate Limiting
    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: float = 60

    # Service Configuration
    port: int = 8000
    log_level: str = "INFO"

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=False
    )

# Global settings instance
settings = Settings()
