from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Hetzner Cloud
    HETZNER_API_TOKEN: str = ""
    HETZNER_SSH_KEY_ID: str = ""
    HETZNER_API_BASE: str = "https://api.hetzner.cloud/v1"
    HETZNER_IMAGE: str = "ubuntu-24.04"

    # Cloudflare DNS
    CF_API_TOKEN: str = ""
    CF_ZONE_ID: str = ""
    CF_MC_RECORD_ID: str = ""
    CF_API_BASE: str = "https://api.cloudflare.com/client/v4"
    MC_RECORD_NAME: str = "mc"

    # Identity lookup (whitelist UUIDs)
    MOJANG_API_BASE: str = "https://api.mojang.com"

    # Secrets
    WEBHOOK_SECRET: str = ""
    ADMIN_AUTH_SECRET: str = ""
    WEBHOOK_URL: str = "https://mc-control.grove.place/api/mc/webhook"

    # RCON
    RCON_PORT: int = 25575
    RCON_TIMEOUT_SECONDS: float = 5.0

    # Lifecycle timings
    SHUTDOWN_GRACE_SECONDS: float = 30.0
    READY_ESTIMATE_SECONDS: int = 180
    IDLE_TIMEOUT_SECONDS: int = 15 * 60
    SUSPEND_TIMEOUT_SECONDS: int = 45 * 60
    HEALTH_CHECK_INTERVAL_SECONDS: int = 300
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # Game server
    MC_MAX_PLAYERS: int = 20
    MC_VERSION: str = "1.20.1"

    # DB
    DB_HOST: str = "db"
    DB_PORT: int = 5432
    DB_USER: str = "grovemc"
    DB_PASSWORD: str = "grovemc_password"
    DB_NAME: str = "grovemc"
    DATABASE_URL: str = ""

    # App
    APP_ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

settings = Settings()
