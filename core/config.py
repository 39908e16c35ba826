"""
Pydantic-based configuration for the recon / attack / vuln pipeline.

All knobs are exposed via environment variables (field names, case
insensitive) so the same codebase runs from the CLI, the API or a cron
entry by swapping the env file.
"""

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False, env_file=".env", extra="ignore")

    # Program scope
    allowed_program_prefixes: List[str] = Field(
        default_factory=lambda: ["bugcrowd:", "hackerone:", "intigriti:"],
        description="targets whose program does not start with one of these are skipped",
    )

    # Scheduler: outer concurrency and start stagger per stage
    recon_concurrency: int = Field(15, ge=1)
    recon_stagger_ms: int = Field(200, ge=0)
    recon_batch_limit: int = Field(100, ge=1)
    attack_concurrency: int = Field(20, ge=1)
    attack_stagger_ms: int = Field(100, ge=0)
    attack_batch_limit: int = Field(100, ge=1)
    vuln_concurrency: int = Field(5, ge=1)
    vuln_stagger_ms: int = Field(100, ge=0)
    vuln_batch_limit: int = Field(20, ge=1)

    # Tool adapter
    tool_bin_dir: Optional[str] = None
    max_tool_processes: int = Field(24, ge=1, description="process-wide cap on running scanners")
    tool_timeout_s: Optional[float] = Field(900.0, description="per-attempt wall clock limit")
    tool_max_attempts: int = Field(2, ge=1)
    tool_backoff_base_s: float = Field(1.0, ge=0)
    enable_amass: bool = False
    enable_nmap: bool = False
    nuclei_templates_dir: str = "nuclei-templates/"
    nuclei_timeout_s: int = Field(60, ge=1, description="per-request timeout inside nuclei")
    nuclei_rate_limit: int = Field(100, ge=1, description="max requests per second per nuclei process")
    nuclei_bulk_size: int = Field(50, ge=1)
    nuclei_retries: int = Field(2, ge=0)
    raw_dir: str = "data/raw"

    # Vulnerability feed
    nvd_feed_path: Optional[str] = "config/nvd.json"

    # Elasticsearch
    elasticsearch_url: Optional[str] = None
    elasticsearch_user: Optional[str] = None
    elasticsearch_pass: Optional[str] = None
    elasticsearch_api_key: Optional[str] = None
    elasticsearch_verify_certs: bool = True
    elasticsearch_ca_cert: Optional[str] = None
    index_prefix: str = "bounty-"
    bulk_batch_size: int = Field(500, ge=1)

    # Local state/cache
    json_cache_path: Optional[str] = Field(
        "data/state.json", description="single-node store snapshot; unset to keep state in memory only"
    )

    # Notifications
    discord_webhook_url: Optional[str] = None
    discord_tier_webhooks: Dict[str, str] = Field(
        default_factory=dict, description="severity tier -> webhook url, falls back to discord_webhook_url"
    )
    notify_timeout_s: float = 10.0

    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("log_level must be a standard logging level name")
        return level


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
