import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    database_url: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    webhook_secret: Optional[str] = None
    proof_storage_dir: Path = BASE_DIR / "payment-proofs"
    max_proof_bytes: int = 5 * 1024 * 1024
    upload_timeout: float = 10.0
    push_timeout: float = 10.0
    push_concurrency: int = 10
    push_on_order_create: bool = True
    firebase_credentials: Optional[str] = None
    public_base_url: str = ""
    staff_orders_url: str = "/profile"
    push_icon: str = "/icon-192.png"
    realtime_queue_size: int = 100
    log_level: str = "INFO"

    @classmethod
    def load(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
        jwt_secret = os.getenv("JWT_SECRET")
        if not jwt_secret:
            raise RuntimeError("JWT_SECRET is not set. Check your .env file.")

        return cls(
            database_url=database_url,
            jwt_secret=jwt_secret,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
            proof_storage_dir=Path(os.getenv("PROOF_STORAGE_DIR", str(BASE_DIR / "payment-proofs"))),
            max_proof_bytes=int(os.getenv("MAX_PROOF_BYTES", str(5 * 1024 * 1024))),
            upload_timeout=float(os.getenv("UPLOAD_TIMEOUT_SECONDS", "10")),
            push_timeout=float(os.getenv("PUSH_TIMEOUT_SECONDS", "10")),
            push_concurrency=int(os.getenv("PUSH_CONCURRENCY", "10")),
            push_on_order_create=_flag("PUSH_ON_ORDER_CREATE", True),
            firebase_credentials=os.getenv("FIREBASE_CREDENTIALS") or None,
            public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
            staff_orders_url=os.getenv("STAFF_ORDERS_URL", "/profile"),
            push_icon=os.getenv("PUSH_ICON", "/icon-192.png"),
            realtime_queue_size=int(os.getenv("REALTIME_QUEUE_SIZE", "100")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
