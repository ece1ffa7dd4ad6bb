import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    jwt_issuer: str = os.getenv("JWT_ISSUER", "marketplace-escrow")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "escrow")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))
    database_url: str = os.getenv("DATABASE_URL", "")

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    deposit_dedupe_ttl_seconds: int = int(os.getenv("DEPOSIT_DEDUPE_TTL_SECONDS", "86400"))
    deposit_retry_backoff_seconds: float = float(os.getenv("DEPOSIT_RETRY_BACKOFF_SECONDS", "5"))

    # Escrow policy
    default_commission_percentage: float = float(os.getenv("DEFAULT_COMMISSION_PERCENTAGE", "10"))
    digital_auto_finalize_hours: int = int(os.getenv("DIGITAL_AUTO_FINALIZE_HOURS", "24"))
    physical_auto_finalize_hours: int = int(os.getenv("PHYSICAL_AUTO_FINALIZE_HOURS", "120"))
    escrow_extension_hours: int = int(os.getenv("ESCROW_EXTENSION_HOURS", "48"))
    max_escrow_extensions: int = int(os.getenv("MAX_ESCROW_EXTENSIONS", "5"))

    sweep_interval_seconds: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))
    outbox_poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+mysqldb://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

settings = Settings()
