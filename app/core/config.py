import os
from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()

redis_host = os.getenv("REDIS_HOST", "localhost")
redis_port = int(os.getenv("REDIS_PORT", 6379))
redis_db = int(os.getenv("REDIS_DB", 0))
redis_password = os.getenv("REDIS_PASSWORD", None)


def _default_redis_url() -> str:
    auth = f":{redis_password}@" if redis_password else ""
    return f"redis://{auth}{redis_host}:{redis_port}/{redis_db}"


class Settings(BaseSettings):
    """Authorization engine configuration with environment variable support"""
    app_name: str = "Permguard Authorization Engine"

    cache_backend: str = "redis"  # "redis" or "memory" for single-process deployments
    redis_url: str = _default_redis_url()
    mongo_url: str = os.getenv("MONGO_URI", "mongodb://localhost:27017/permguard")
    mongo_db: str = "permguard"

    # Cache lifetimes (seconds)
    permission_ttl: int = 300  # 5 minutes
    listing_ttl: int = 900  # 15 minutes
    version_ttl: int = 604800  # 7 days

    # Timeouts (seconds)
    cache_timeout: float = 5.0
    authority_timeout: float = 10.0

    bulk_max_batch: int = 50
    max_permission_name_length: int = 100

    retry_attempts: int = 3
    retry_min_wait: int = 1
    retry_max_wait: int = 5

    # List caches whose rows embed role or systemadmin fields
    derived_list_patterns: List[str] = ["users:list:*"]

    log_level: str = "INFO"
    log_json: bool = True

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def validate_required_vars(self):
        """Validate that timeouts and lifetimes make sense"""
        if self.cache_timeout <= 0 or self.authority_timeout <= 0:
            raise ValueError("Timeouts must be positive")
        if self.permission_ttl <= 0 or self.listing_ttl <= 0 or self.version_ttl <= 0:
            raise ValueError("Cache TTLs must be positive")
        if self.bulk_max_batch < 1:
            raise ValueError("bulk_max_batch must be at least 1")
        if self.cache_backend not in ("redis", "memory"):
            raise ValueError(f"Unknown cache_backend: {self.cache_backend}")


settings = Settings()
