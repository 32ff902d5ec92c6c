import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "apparel_store"
    jwt_secret: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    seed_demo_data: bool = False
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            app_env=os.getenv("APP_ENV", "development"),
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "apparel_store"),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            jwt_expire_hours=int(os.getenv("JWT_EXPIRE_HOURS", "24")),
            cors_origins=origins or ["*"],
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            seed_demo_data=_flag("SEED_DEMO_DATA"),
            admin_email=os.getenv("ADMIN_EMAIL"),
            admin_password=os.getenv("ADMIN_PASSWORD"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
