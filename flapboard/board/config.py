"""Service limits, thresholds, store selection."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass
class ServerConfig:
    # Versions
    server_version: str = "0.1.0"

    # Network
    host: str = "0.0.0.0"
    port: int = 8787
    cors_allow_all: bool = True
    cors_allowed_origins: list[str] = field(default_factory=list)

    # Persistence: memory | sqlite | redis
    store: str = "sqlite"
    sqlite_path: str = "flapboard.sqlite3"
    redis_url: str | None = None

    # Admin. None means the deployment is misconfigured.
    admin_password: str | None = None

    # Deadlines (seconds)
    request_timeout: float = 8.0
    store_timeout: float = 3.0

    # Leaderboard
    top_n: int = 20
    default_page_size: int = 10
    max_page_size: int = 100
    max_name_len: int = 24
    submit_retries: int = 5

    # Anti-cheat
    auto_block_threshold: int = 50

    # Keyspace scans
    scan_count: int = 200
    scan_max_iterations: int = 10

    log_level: str = "INFO"

    @staticmethod
    def _parse_bool(v: str | None, default: bool) -> bool:
        if v is None:
            return default
        return v.strip().lower() in ("1", "true", "yes", "on")

    @staticmethod
    def _parse_num(v: str | None, default, cast=int):
        if v is None or not v.strip():
            return default
        try:
            return cast(v)
        except ValueError:
            return default

    @classmethod
    def from_env(cls, environ=None) -> "ServerConfig":
        env = os.environ if environ is None else environ
        cfg = cls()
        cfg.host = env.get("FLAP_HOST", cfg.host)
        cfg.port = cls._parse_num(env.get("FLAP_PORT"), cfg.port)
        cfg.cors_allow_all = cls._parse_bool(env.get("FLAP_CORS_ALLOW_ALL"), cfg.cors_allow_all)
        origins = env.get("FLAP_CORS_ORIGINS")
        if origins:
            cfg.cors_allowed_origins = [o.strip() for o in origins.split(",") if o.strip()]

        cfg.redis_url = env.get("REDIS_URL") or None
        cfg.store = env.get("FLAP_STORE", "redis" if cfg.redis_url else cfg.store).strip().lower()
        cfg.sqlite_path = env.get("FLAP_SQLITE_PATH", cfg.sqlite_path)

        cfg.admin_password = env.get("ADMIN_PASSWORD") or None

        cfg.request_timeout = cls._parse_num(env.get("FLAP_REQUEST_TIMEOUT"), cfg.request_timeout, float)
        cfg.store_timeout = cls._parse_num(env.get("FLAP_STORE_TIMEOUT"), cfg.store_timeout, float)
        cfg.auto_block_threshold = cls._parse_num(env.get("FLAP_AUTO_BLOCK_THRESHOLD"), cfg.auto_block_threshold)
        cfg.top_n = cls._parse_num(env.get("FLAP_TOP_N"), cfg.top_n)
        cfg.max_page_size = cls._parse_num(env.get("FLAP_MAX_PAGE_SIZE"), cfg.max_page_size)
        cfg.scan_count = cls._parse_num(env.get("FLAP_SCAN_COUNT"), cfg.scan_count)
        cfg.scan_max_iterations = cls._parse_num(env.get("FLAP_SCAN_MAX_ITERATIONS"), cfg.scan_max_iterations)
        cfg.log_level = env.get("FLAP_LOG_LEVEL", cfg.log_level).upper()
        return cfg
