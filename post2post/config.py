# post2post/config.py
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Server and round-trip configuration, read from POST2POST_* env vars or .env."""

    network: str = "tcp4"
    interface: str = ""
    port: int = 0

    post_url: str = ""
    public_url: str = ""

    default_timeout: float = 30.0
    send_timeout: float = 30.0
    trust_env: bool = True

    processor: str = ""
    processor_required_fields: List[str] = []
    service_name: str = "post2post"

    tailnet_proxy_url: str = ""

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="POST2POST_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("network")
    @classmethod
    def _known_network(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("tcp4", "tcp6"):
            raise ValueError("network must be 'tcp4' or 'tcp6'")
        return v

    @field_validator("default_timeout", "send_timeout")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v
