from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "Cuddly Auth API"
    app_version: str = "0.1.0"
    environment: str = "local"

    database_url: str = "sqlite+aiosqlite:///./cuddly_auth.db"
    database_create_tables: bool = True
    database_echo: bool = False

    session_password: str = "dev-session-password-change-me-please"
    session_cookie_name: str = "cuddly_session"
    session_max_age_seconds: int = 7 * 24 * 60 * 60
    secure_cookies: bool = False
    cookie_samesite: str = "lax"

    bcrypt_rounds: int = 12

    frontend_origin: str = "http://localhost:3000"
    webauthn_rp_id: str | None = None
    webauthn_rp_name: str = "Cuddly Nuxt App"
    webauthn_allowed_origins: list[str] = []
    webauthn_challenge_ttl_seconds: int = 300
    webauthn_timeout_ms: int = 60000
    # Off: any caller may add passkeys to any userID, as in the plain 400/404 contract.
    webauthn_registration_requires_session: bool = True

    auth_rate_limit_login: int = 20
    auth_rate_limit_register: int = 10

    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
