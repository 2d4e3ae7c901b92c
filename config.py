import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "ballots"
    storage_backend: str = "mongo"  # "mongo" | "memory"
    mongo_transactions: bool = False  # requires a replica set
    jwt_secret: str = "CHANGE_THIS_SECRET"
    jwt_algorithm: str = "HS256"
    receipt_bytes: int = 24
    publish_requires_tally: bool = True
    reconcile_grace_seconds: int = 300
    audit_sink: str = "storage"  # "storage" | "log"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        load_dotenv(dotenv_path)
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            storage_backend=os.getenv("STORAGE_BACKEND", cls.storage_backend).lower(),
            mongo_transactions=_env_bool("MONGO_TRANSACTIONS", cls.mongo_transactions),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", cls.jwt_algorithm),
            receipt_bytes=_env_int("RECEIPT_BYTES", cls.receipt_bytes),
            publish_requires_tally=_env_bool("PUBLISH_REQUIRES_TALLY", cls.publish_requires_tally),
            reconcile_grace_seconds=_env_int("RECONCILE_GRACE_SECONDS", cls.reconcile_grace_seconds),
            audit_sink=os.getenv("AUDIT_SINK", cls.audit_sink).lower(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        root.addHandler(handler)
    root.setLevel(level)
