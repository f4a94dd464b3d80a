"""Coverline configuration — loaded from environment variables and .env file."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parent.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Carrier network
    carrier_mode: str = "simulated"  # simulated | live
    carrier_directory_path: str = ""  # empty -> built-in directory
    carrier_api_keys: dict[str, str] = Field(default_factory=dict)
    carrier_default_api_key: str = "coverline-sandbox-token"
    carrier_timeout_seconds: float = 5.0
    carrier_retry_attempts: int = 1
    carrier_rate_limit_max: int = 0  # per carrier per window; 0 disables
    carrier_rate_limit_window: float = 60.0
    pipeline_timeout_seconds: float = 15.0

    # Underwriting thresholds
    auto_approve_max_risk: float = 30.0
    auto_approve_max_fraud: float = 10.0
    approve_max_risk: float = 70.0
    approve_max_fraud: float = 30.0
    decline_min_risk: float = 85.0
    decline_min_fraud: float = 50.0
    claim_fraud_flag_threshold: float = 8.0

    # Business rules
    premium_min: float = 50.0
    premium_max: float = 2000.0
    min_coverage_score: float = 60.0
    min_candidates: int = 3
    max_candidates: int = 5
    assumed_commission_rate: float = 0.12
    quote_validity_days: int = 30
    high_premium_threshold: float = 400.0

    # Ids
    id_seed: int | None = None

    # API
    coverline_api_key: str = "coverline-dev-key-change-me"
    coverline_api_port: int = 8010

    # Logging
    log_level: str = "INFO"


settings = Settings()
