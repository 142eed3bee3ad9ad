from pydantic import ConfigDict, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Database
    database_url: str = "sqlite:///./gatekeeper.db"

    # VDF group
    vdf_modulus_hex: str = ""  # empty: generate a fresh modulus at startup
    vdf_security_bits: int = 112  # 2048-bit modulus
    vdf_seed_bytes: int = 32

    # Difficulty (sequential squarings)
    base_difficulty: int = 100_000
    max_difficulty: int = 10_000_000
    difficulty_window_seconds: float = 60.0
    difficulty_recalibrate_seconds: int = 5
    attempt_rate_ceiling: float = 200.0  # challenges/second at max difficulty
    failure_rate_ceiling: float = 0.5  # failed fraction at max difficulty
    downstream_load_url: str = ""
    downstream_probe_seconds: int = 10

    # Challenges
    challenge_ttl_seconds: float = 30.0
    honest_squarings_per_second: int = 50_000

    # Verification
    verifier_workers: int = 4
    verifier_max_pending: int = 64
    verify_timeout_seconds: float = 10.0

    # Sessions
    session_lock_stripes: int = 64
    session_retention_seconds: float = 60.0
    session_sweep_seconds: int = 5
    ledger_cleanup_minutes: int = 10

    # Rate Limiting
    rate_limit_unlock: str = "120/minute"

    # CORS
    cors_origins: list[str] | str = ["http://localhost:5173", "http://127.0.0.1:5173"]

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # "console" | "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @model_validator(mode="after")
    def check_difficulty_bounds(self) -> "Settings":
        if not 1 <= self.base_difficulty <= self.max_difficulty:
            raise ValueError("Require 1 <= base_difficulty <= max_difficulty")
        return self


settings = Settings()
