from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    APP_NAME: str = "STOCKFLOW"
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    DATABASE_URL: str = "sqlite+pysqlite:///./stockflow.db"
    DEFAULT_TENANT_NAME: str = "Default Tenant"
    DEFAULT_BRANCH_NAME: str = "Main Warehouse"
    SUPERADMIN_USERNAME: str = "superadmin"
    SUPERADMIN_EMAIL: str = "superadmin@example.com"
    SUPERADMIN_PASSWORD: str = "change-me"
    TRANSFER_NUMBER_PREFIX: str = "TRF"
    TRANSFER_NUMBER_MAX_RETRIES: int = 3
    ORDER_NOTES_MAX_LENGTH: int = 2000
    REQUEST_NOTES_MAX_LENGTH: int = 1000
    LIST_DEFAULT_PAGE_SIZE: int = 20
    LIST_MAX_PAGE_SIZE: int = 100
    OPS_ENABLE_INTEGRITY_SCAN: bool = True
    METRICS_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"
    SLOW_REQUEST_MS: int = 1000


settings = Settings()
