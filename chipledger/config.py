import logging
import os
from dataclasses import dataclass, field

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    jwt_secret: str = "devsecret"
    jwt_algorithm: str = "HS256"
    daily_mint_amount: int = 10_000
    daily_mint_window_hours: int = 24
    idempotency_ttl_hours: int = 24
    idempotency_wait_seconds: float = 10.0
    seed_demo_data: bool = True
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            jwt_secret=os.getenv("JWT_SECRET", "devsecret"),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            daily_mint_amount=int(os.getenv("DAILY_MINT_AMOUNT", "10000")),
            daily_mint_window_hours=int(os.getenv("DAILY_MINT_WINDOW_HOURS", "24")),
            idempotency_ttl_hours=int(os.getenv("IDEMPOTENCY_TTL_HOURS", "24")),
            idempotency_wait_seconds=float(os.getenv("IDEMPOTENCY_WAIT_SECONDS", "10")),
            seed_demo_data=_env_bool("SEED_DEMO_DATA", True),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
