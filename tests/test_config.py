from flapboard.board.config import ServerConfig


def test_defaults_without_env():
    cfg = ServerConfig.from_env({})
    assert cfg.port == 8787
    assert cfg.store == "sqlite"
    assert cfg.admin_password is None
    assert cfg.auto_block_threshold == 50
    assert cfg.top_n == 20


def test_redis_url_selects_redis_store():
    cfg = ServerConfig.from_env({"REDIS_URL": "redis://cache:6379/0"})
    assert cfg.store == "redis"
    assert cfg.redis_url == "redis://cache:6379/0"

    forced = ServerConfig.from_env({"REDIS_URL": "redis://cache:6379/0", "FLAP_STORE": "Memory"})
    assert forced.store == "memory"


def test_numbers_and_flags():
    cfg = ServerConfig.from_env(
        {
            "FLAP_PORT": "9000",
            "FLAP_REQUEST_TIMEOUT": "2.5",
            "FLAP_AUTO_BLOCK_THRESHOLD": "not-a-number",
            "FLAP_CORS_ALLOW_ALL": "no",
            "FLAP_CORS_ORIGINS": "https://a.example, https://b.example,",
            "FLAP_LOG_LEVEL": "debug",
            "ADMIN_PASSWORD": "",
        }
    )
    assert cfg.port == 9000
    assert cfg.request_timeout == 2.5
    assert cfg.auto_block_threshold == 50
    assert cfg.cors_allow_all is False
    assert cfg.cors_allowed_origins == ["https://a.example", "https://b.example"]
    assert cfg.log_level == "DEBUG"
    # Empty secret counts as unset.
    assert cfg.admin_password is None
