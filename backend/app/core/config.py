from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Reel Social Publishing"
    app_env: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "social_publishing"
    postgres_user: str = "social_publishing"
    postgres_password: str = "social_publishing"

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_socket_timeout_seconds: float = 5.0

    database_url: str | None = None
    redis_url: str | None = None
    frontend_origin: str = "http://localhost:5173"
    additional_frontend_origins: str = ""

    jwt_secret_key: str = "change_this_in_production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60
    token_encryption_key: str | None = None

    oauth_state_secret: str | None = None
    oauth_state_ttl_seconds: int = 600

    public_app_url: str = "http://localhost:5173"
    api_base_url: str = "http://localhost:8000"
    settings_redirect_path: str = "/app/settings"

    tiktok_client_key: str | None = None
    tiktok_client_secret: str | None = None
    tiktok_oauth_scope: str = "user.info.basic,video.publish,video.upload"
    tiktok_privacy_level: str = "SELF_ONLY"

    instagram_client_id: str | None = None
    instagram_client_secret: str | None = None
    instagram_oauth_scope: str = (
        "instagram_basic,instagram_content_publish,pages_show_list,pages_read_engagement"
    )
    meta_graph_api_base_url: str = "https://graph.facebook.com/v21.0"
    meta_oauth_dialog_url: str = "https://www.facebook.com/v21.0/dialog/oauth"

    provider_timeout_seconds: float = 20.0
    provider_max_attempts: int = 3
    provider_retry_base_delay_seconds: float = 0.5

    token_refresh_margin_seconds: int = 300

    instagram_readiness_timeout_seconds: int = 600
    instagram_readiness_max_polls: int = 30
    instagram_inline_poll_attempts: int = 3
    instagram_poll_base_delay_seconds: float = 2.0
    instagram_poll_max_delay_seconds: float = 60.0

    publish_job_lock_ttl_seconds: int = 300

    worker_heartbeat_key: str = "workers:heartbeat"
    worker_heartbeat_ttl_seconds: int = 45

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_allowed_origins(self) -> list[str]:
        origins = [self.frontend_origin.strip(), self.public_app_url.strip()]
        if self.additional_frontend_origins.strip():
            origins.extend(
                [value.strip() for value in self.additional_frontend_origins.split(",") if value.strip()]
            )
        unique: list[str] = []
        for origin in origins:
            if origin and origin not in unique:
                unique.append(origin)
        return unique

    @property
    def oauth_callback_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/social/callback"

    @property
    def oauth_state_signing_key(self) -> str:
        return self.oauth_state_secret or self.jwt_secret_key

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cache_redis_url(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/0"


settings = Settings()
