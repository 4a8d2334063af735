"""Arq worker settings."""

from arq.connections import RedisSettings

from app.config import get_settings

settings = get_settings()

# Handles redis://[:password@]host[:port][/db] and rediss:// for TLS
redis_settings = RedisSettings.from_dsn(settings.redis_url)
