from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache
import re


class Settings(BaseSettings):
    pachka_api_url: str = "https://api.pachca.com/api/shared/v1"
    api_root_path: str = ""
    host: str = "0.0.0.0"
    port: int = 8000

    # Pachka API paging (per-page maximums accepted by the API)
    messages_page_size: int = 50
    readers_page_size: int = 300
    reactions_page_size: int = 50
    users_page_size: int = 50
    chats_page_size: int = 50

    # Outgoing HTTP
    http_timeout: float = 10.0
    max_concurrent_requests: int = 10

    # Analytics
    top_users_limit: int = 10
    # Platform notices excluded from analytics (video call started / ended)
    system_message_patterns: list[str] = [
        r"^Начался видеочат$",
        r"^Видеочат заверш[её]н( \(.+\))?$",
    ]

    # CORS Configuration
    cors_origins: str = "*"  # Comma-separated list of origins, or "*" for all

    # Security Configuration
    health_check_token: str = ""  # Optional token for health endpoint protection
    max_request_size: int = 1048576  # 1MB max request size
    enable_security_headers: bool = True

    # Logging
    log_security_events: bool = True

    @field_validator("pachka_api_url")
    @classmethod
    def validate_pachka_api_url(cls, v: str) -> str:
        """Validate Pachka API base URL format"""
        pattern = r"^https?:\/\/"
        if not re.match(pattern, v):
            raise ValueError("Invalid Pachka API URL format")
        return v.rstrip("/")

    @field_validator("max_concurrent_requests")
    @classmethod
    def validate_max_concurrent_requests(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrent_requests must be at least 1")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
