# checkin/core/config.py
import json
from pathlib import Path
from typing import List, Optional, Tuple, Union
from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator

def _env_file_candidates() -> Tuple[Union[str, Path], ...]:
    """Build a prioritized list of .env files for cross-platform support."""
    base_dir = Path(__file__).resolve().parent.parent
    project_root = base_dir.parent
    candidates: List[Union[str, Path]] = [
        base_dir / ".env",
        base_dir / ".env.local",
        project_root / ".env",
        project_root / ".env.local",
        ".env",
    ]

    # Preserve order while removing duplicates
    unique_candidates: List[Union[str, Path]] = []
    seen = set()
    for candidate in candidates:
        key = str(candidate)
        if key in seen:
            continue
        seen.add(key)
        unique_candidates.append(candidate)
    return tuple(unique_candidates)


_PLACEHOLDER_PASSWORDS = {"", "change-me", "password", "admin"}


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Checkin Relay"
    APP_ENV: str = "dev"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 10000
    RELOAD: bool = False
    LOG_LEVEL: str = "info"
    LOG_FILE: Optional[str] = None
    PROXY_HEADERS: bool = True
    FORWARDED_ALLOW_IPS: str = "127.0.0.1"
    SSL_KEYFILE: Optional[str] = None
    SSL_CERTFILE: Optional[str] = None
    STATIC_DIR: Optional[str] = None

    # Security
    # Shared passphrase required to delete an identity
    DELETE_PASSWORD: str = "change-me"
    DELETE_RATE_LIMIT: int = 5
    DELETE_RATE_WINDOW: int = 60
    MAX_REQUEST_SIZE: int = 1 * 1024 * 1024  # 1MB for JSON bodies

    # Database
    DATABASE_URL: str = "sqlite:///checkin.db"
    SQL_LOG_LEVEL: str = "WARNING"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:10000", "http://127.0.0.1:10000"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_MAX_AGE: int = 600
    CORS_EXPOSE_HEADERS: List[str] = ["X-Request-ID"]
    CORS_METHODS: List[str] = ["GET", "POST", "DELETE", "OPTIONS"]
    CORS_HEADERS: List[str] = ["Content-Type", "Accept", "Origin", "X-Requested-With"]

    # External platform
    PLATFORM_BASE_URL: str = "https://www.yuketang.cn"
    PLATFORM_WS_URL: str = "wss://www.yuketang.cn/wsapp/"
    PLATFORM_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    )
    PLATFORM_CONNECT_TIMEOUT: float = 30.0

    # Login orchestration
    LOGIN_CHALLENGE_TIMEOUT: float = 180.0

    # Dispatch
    DISPATCH_REQUEST_TIMEOUT: float = 15.0
    DISPATCH_MAX_REDIRECTS: int = 5
    DISPATCH_CONCURRENCY_LIMIT: int = 0  # 0 = unlimited fan-out
    BODY_EXCERPT_LIMIT: int = 1000

    # Status verification
    VERIFY_REQUEST_TIMEOUT: float = 10.0
    VERIFY_CONCURRENCY: int = 5
    VERIFY_BATCH_DELAY: float = 0.5

    @field_validator("CORS_ORIGINS", "CORS_EXPOSE_HEADERS", "CORS_METHODS", "CORS_HEADERS", mode="before")
    @classmethod
    def parse_cors_list(cls, v):
        """Parse CORS-related list fields from string or list"""
        if v is None or v == "":
            return []
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):         # JSON array
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    return []
            return [p.strip() for p in s.split(",") if p.strip()]  # comma-separated
        return v or []

    @field_validator("DISPATCH_CONCURRENCY_LIMIT", "VERIFY_CONCURRENCY")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("concurrency limits cannot be negative")
        return v

    @model_validator(mode="after")
    def enforce_production_security(self):
        env = (self.APP_ENV or "").lower()
        if env in {"prod", "production", "staging"}:
            if self.DELETE_PASSWORD.strip().lower() in _PLACEHOLDER_PASSWORDS:
                raise ValueError("DELETE_PASSWORD must be set for production/staging.")
            if (self.FORWARDED_ALLOW_IPS or "").strip() == "*":
                raise ValueError("FORWARDED_ALLOW_IPS cannot be '*' in production/staging.")
        if self.VERIFY_CONCURRENCY == 0:
            raise ValueError("VERIFY_CONCURRENCY must be at least 1.")
        return self

    model_config = {
        "env_file": _env_file_candidates(),
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }

settings = Settings()
__all__ = ["settings", "Settings"]
