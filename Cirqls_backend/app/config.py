from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    CORS_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_PATH: str = "cirqls.db"
    DATABASE_URL: str = ""
    DATABASE_ECHO: bool = False

    # Credentials
    AUTH_JWT_SECRET: str = "cirqls-dev-secret"
    AUTH_JWT_ALGORITHM: str = "HS256"
    AUTH_TOKEN_HEADERS: str = "authorization,x-auth-token"
    AUTH_VERIFY_URL: str = ""  # remote credential service, takes precedence over local JWT
    AUTH_VERIFY_TIMEOUT: float = 5.0

    # Feeds
    FEED_PAGE_SIZE: int = 50
    FEED_FETCH_WINDOW: int = 500

    # Push channel
    WS_HANDSHAKE_TIMEOUT: float = 10.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL or f"sqlite+aiosqlite:///{self.DATABASE_PATH}"

    @property
    def cors_origins(self) -> list[str]:
        return [item.strip() for item in (self.CORS_ORIGINS or "").split(",") if item.strip()]


settings = Settings()
