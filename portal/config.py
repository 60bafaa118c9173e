from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    portal_db_url: str = "sqlite+aiosqlite:///data/portal.db"

    # Deployment environment name; selects environment-specific config values
    portal_env: str = "production"

    # Logging
    portal_log_level: str = "info"

    # CORS
    portal_cors_origins: str = "http://localhost:3000"

    # JWT
    jwt_secret: str = "portal-secret-key-change-in-production"
    jwt_refresh_secret: str = "portal-refresh-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration: str = "1h"
    jwt_refresh_expiration: str = "7d"
    jwt_refresh_rotation: bool = False

    # Built-in administrator (bcrypt hash, see `portal-admin hash-password`)
    admin_username: str | None = None
    admin_password_hash: str | None = None

    # LDAP client timeouts (seconds)
    ldap_connect_timeout: int = 10
    ldap_receive_timeout: int = 10

    # Permission cache
    permission_cache_ttl: int = 3600

    # Directory sync scheduler
    sync_scheduler_enabled: bool = True
    sync_poll_interval: int = 60  # seconds

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
