from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_CACHE_TTL_SECONDS


class RedisConfig(BaseModel):
    """Connection settings for the Redis cache backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class CacheConfig(BaseModel):
    """Cache backend and entry lifetime."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    ttl_seconds: int = Field(default=DEFAULT_CACHE_TTL_SECONDS, gt=0)
    namespace: Optional[str] = None
    redis: RedisConfig = RedisConfig()


class AuditConfig(BaseModel):
    enabled: bool = True


class BulkConfig(BaseModel):
    max_concurrency: Optional[int] = Field(default=None, gt=0)


class TallyguardConfig(BaseModel):
    """Top-level configuration model."""

    cache: CacheConfig = CacheConfig()
    audit: AuditConfig = AuditConfig()
    bulk: BulkConfig = BulkConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> TallyguardConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to TALLYGUARD_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("TALLYGUARD_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = TallyguardConfig(**data)
    else:
        config = TallyguardConfig()

    env_db_url = os.getenv("TALLYGUARD_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_cache = os.getenv("TALLYGUARD_CACHE")
    if env_cache:
        config.cache.backend = env_cache.lower()
    return config
