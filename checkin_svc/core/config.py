from __future__ import annotations
from pydantic_settings import BaseSettings
from pydantic import Field
import secrets

class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")

    auth_jwks_url: str = Field("http://localhost:8001/.well-known/jwks.json", alias="AUTH_JWKS_URL")
    token_issuer: str = Field("authentication-svc", alias="TOKEN_ISSUER")

    # Check-in token: validity window and host redisplay cadence are independent
    token_ttl_ms: int = Field(default=10_000, alias="TOKEN_TTL_MS")
    token_refresh_ms: int = Field(default=7_000, alias="TOKEN_REFRESH_MS")
    count_refresh_seconds: float = Field(default=3.0, alias="COUNT_REFRESH_SECONDS")

    # calendar day + daily window are evaluated in this zone
    session_timezone: str = Field(default="UTC", alias="SESSION_TIMEZONE")

    ticket_secret: str | None = Field(default=None, alias="CHECKIN_TICKET_SECRET")
    ticket_ttl_seconds: int = Field(default=600, alias="CHECKIN_TICKET_TTL_SECONDS")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=60, alias="RL_MAX_REQS")

    # NATS
    nats_enabled: bool = Field(default=True, alias="NATS_ENABLED")
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_checkin: str = Field("checkins.recorded", alias="NATS_SUBJECT_CHECKIN")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False

    @property
    def ticket_secret_effective(self) -> str:
        # generated once per process when unset; tickets then die with the process
        if self.ticket_secret is None:
            self.ticket_secret = secrets.token_urlsafe(48)
        return self.ticket_secret

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
