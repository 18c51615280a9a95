"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Chat service configuration. All values come from environment variables."""

    # Inference (OpenAI-compatible endpoint)
    llm_api_key: str = Field(default="")
    llm_base_url: str = Field(default="https://api.deepseek.com/v1")
    default_chat_model: str = Field(default="deepseek-chat")
    allowed_chat_models: str = Field(default="")
    default_temperature: float = Field(default=0.5)
    max_output_tokens: int = Field(default=8192)
    presence_penalty: float = Field(default=0.1)
    frequency_penalty: float = Field(default=0.15)

    # Anthropic (titles, memory extraction)
    anthropic_api_key: str = Field(default="")
    memory_extraction_model: str = Field(default="claude-haiku-4-5-20251001")
    memory_extraction_enabled: bool = Field(default=True)
    title_generation_enabled: bool = Field(default=True)

    # Primary store (libsql). Turso URL overrides the local database_path.
    database_path: Path = Field(default=Path("data/chat.db"))
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")
    primary_store_enabled: bool = Field(default=True)
    primary_reprobe_seconds: float = Field(default=0.0)
    fallback_mirror_max_records: int = Field(default=5000)

    # Web search, in priority order
    search_backends: str = Field(default="tavily,google,brave")
    tavily_api_key: str = Field(default="")
    google_api_key: str = Field(default="")
    google_search_engine_id: str = Field(default="")
    brave_search_api_key: str = Field(default="")
    web_max_results: int = Field(default=5)
    web_prewarm_results: int = Field(default=3)
    web_snippet_chars: int = Field(default=200)
    web_context_ttl_seconds: float = Field(default=600.0)

    # Memory recall
    memory_recall_limit: int = Field(default=3)
    memory_recall_ttl_seconds: float = Field(default=300.0)

    # Lookup guards
    lookup_timeout_seconds: float = Field(default=10.0)
    cache_max_entries: int = Field(default=2000)

    # Prompt
    default_locale: str = Field(default="en")
    timezone: str = Field(default="UTC")

    # HTTP server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080)
    user_id_header: str = Field(default="X-User-Id")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_search_backends(self) -> list[str]:
        """Parse SEARCH_BACKENDS into an ordered, de-duplicated list of names."""
        names: list[str] = []
        for name in self.search_backends.split(","):
            name = name.strip().lower()
            if name and name not in names:
                names.append(name)
        return names

    def get_allowed_chat_models(self) -> set[str]:
        """Parse ALLOWED_CHAT_MODELS into a set. Empty means any model is accepted."""
        if not self.allowed_chat_models.strip():
            return set()
        return {m.strip() for m in self.allowed_chat_models.split(",") if m.strip()}


settings = Settings()
