"""OrgScope — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class OrgScopeSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (hierarchy store) ───────────────────────────
    postgres_user: str = "orgscope"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "membership"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url: str = ""

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Sector mirroring ───────────────────────────────────────
    sector_label_language: str = "ar"
    sector_name_fallback: bool = True

    # ── Access policy ──────────────────────────────────────────
    conceal_out_of_scope: bool = True

    # ── Hierarchy defaults ─────────────────────────────────────
    default_national_level_name: str = "المستوى القومي"
    default_national_level_code: str = "NATIONAL"

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = OrgScopeSettings()
