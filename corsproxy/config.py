"""
Application configuration from environment variables.
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class AppConfig(BaseSettings):
    corsproxy_host: str = "0.0.0.0"
    corsproxy_port: int = 4444
    corsproxy_connect_timeout: float = 10.0
    # Seconds between upstream reads/writes. None disables the timeout.
    corsproxy_read_timeout: Optional[float] = 60.0
    # Max inbound body size in bytes. None streams bodies of any size.
    corsproxy_max_body_size: Optional[int] = None
    corsproxy_forward_client_address: bool = True
    corsproxy_internal_prefix: str = "/_corsproxy"
    corsproxy_max_connections: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_parse_none_str="none"
    )


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()
