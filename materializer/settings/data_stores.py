import os

import dj_database_url

from materializer.settings.base_variables import BASE_DIR, DEBUG, TEST
from materializer.settings.utils import get_from_env, str_to_bool

DEFAULT_AUTO_FIELD: str = "django.db.models.AutoField"

# State store for candidates and backfill jobs
# https://docs.djangoproject.com/en/4.2/ref/settings/#databases
DATABASE_URL: str = get_from_env("DATABASE_URL", f"sqlite:///{os.path.join(BASE_DIR, 'materializer.sqlite3')}")
DATABASES: dict[str, dict] = {"default": dj_database_url.config(default=DATABASE_URL, conn_max_age=0)}

# ClickHouse
CLICKHOUSE_TEST_DB: str = "materializer_test"
CLICKHOUSE_HOST: str = os.getenv("CLICKHOUSE_HOST", "localhost")
CLICKHOUSE_PORT: int | None = get_from_env("CLICKHOUSE_PORT", optional=True, type_cast=int)
CLICKHOUSE_USER: str = os.getenv("CLICKHOUSE_USER", "default")
CLICKHOUSE_PASSWORD: str = os.getenv("CLICKHOUSE_PASSWORD", "")
CLICKHOUSE_DATABASE: str = CLICKHOUSE_TEST_DB if TEST else os.getenv("CLICKHOUSE_DATABASE", "default")
# When set, the query log is read from every replica of this cluster
CLICKHOUSE_CLUSTER: str | None = get_from_env("CLICKHOUSE_CLUSTER", optional=True)
CLICKHOUSE_CA: str | None = os.getenv("CLICKHOUSE_CA", None)
CLICKHOUSE_SECURE: bool = get_from_env("CLICKHOUSE_SECURE", not TEST and not DEBUG, type_cast=str_to_bool)
CLICKHOUSE_VERIFY: bool = get_from_env("CLICKHOUSE_VERIFY", True, type_cast=str_to_bool)
CLICKHOUSE_CONN_POOL_MIN: int = get_from_env("CLICKHOUSE_CONN_POOL_MIN", 2, type_cast=int)
CLICKHOUSE_CONN_POOL_MAX: int = get_from_env("CLICKHOUSE_CONN_POOL_MAX", 20, type_cast=int)
# Per-call timeout for every statement issued against ClickHouse, in seconds
CLICKHOUSE_CALL_TIMEOUT_SECONDS: int = get_from_env("CLICKHOUSE_CALL_TIMEOUT_SECONDS", 15 * 60, type_cast=int)

# Redis backs the cycle lease and abort flag
REDIS_URL: str = get_from_env("REDIS_URL", "redis://localhost:6379/")

CACHES = {
    "default": {
        "BACKEND": "django_redis.cache.RedisCache",
        "LOCATION": REDIS_URL,
        "OPTIONS": {
            "CLIENT_CLASS": "django_redis.client.DefaultClient",
        },
        "KEY_PREFIX": "materializer",
    }
}

if TEST:
    CACHES["default"] = {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}
