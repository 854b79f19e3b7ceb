"""
Agent Ledger - Configuration
Escrow settlement + hybrid agent trust.

All settings load from environment variables with safe defaults for development.
In production, set AGL_ENV=production to enforce required values.
"""
import os
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


class Settings:
    def __init__(self):
        self.ENVIRONMENT = os.getenv("AGL_ENV", "development")

        # === Service ===
        self.HOST = os.getenv("AGL_HOST", "0.0.0.0")
        self.PORT = _int("AGL_PORT", "8000")

        # === Storage ===
        # "memory" keeps directory/keys/interactions in-process, "redis" shares them.
        self.STORE_BACKEND = os.getenv("AGL_STORE_BACKEND", "memory")
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.STORE_LOCK_TTL = _int("AGL_STORE_LOCK_TTL", "30")
        # An in-flight idempotency key older than this is treated as unknown and reconciled.
        self.IDEMPOTENCY_STALE_SECONDS = _int("IDEMPOTENCY_STALE_SECONDS", "120")
        # Completed idempotency records are forgotten after this window.
        self.IDEMPOTENCY_RETENTION_SECONDS = _int("IDEMPOTENCY_RETENTION_SECONDS", "86400")

        # === Ledger ===
        self.LEDGER_BACKEND = os.getenv("AGL_LEDGER_BACKEND", "memory")
        self.LEDGER_RPC_URL = os.getenv("LEDGER_RPC_URL", "http://localhost:8545")
        self.LEDGER_TIMEOUT_SECONDS = _float("LEDGER_TIMEOUT_SECONDS", "10")
        # Operator wallet that registers externally-owned agents without their own address.
        self.BACKEND_ADDRESS = os.getenv(
            "AGL_BACKEND_ADDRESS", "0x00000000000000000000000000000000000b4c3d"
        ).lower()

        # === Audit log collaborator ===
        self.AUDIT_LOG_URL = os.getenv("AUDIT_LOG_URL", "")
        self.AUDIT_TIMEOUT_SECONDS = _float("AUDIT_TIMEOUT_SECONDS", "3")

        # === Escrow ===
        self.ESCROW_DEFAULT_EXPIRATION_DAYS = _int("ESCROW_DEFAULT_EXPIRATION_DAYS", "30")
        self.ESCROW_MIN_EXPIRATION_DAYS = _int("ESCROW_MIN_EXPIRATION_DAYS", "1")
        self.ESCROW_MAX_EXPIRATION_DAYS = _int("ESCROW_MAX_EXPIRATION_DAYS", "365")
        self.ESCROW_DESCRIPTION_MAX_LENGTH = _int("ESCROW_DESCRIPTION_MAX_LENGTH", "500")
        self.DISPUTE_REASON_MAX_LENGTH = _int("DISPUTE_REASON_MAX_LENGTH", "500")

        # === Trust ===
        self.MIN_INTERACTION_TRUST = _int("MIN_INTERACTION_TRUST", "40")
        self.LOCAL_SCORE_BASE = _int("LOCAL_SCORE_BASE", "50")
        self.PAYMENT_TRUST_BOOST = _int("PAYMENT_TRUST_BOOST", "2")
        self.INTERACTION_TRUST_BOOST = _int("INTERACTION_TRUST_BOOST", "1")

        # === Operator ===
        self.OPERATOR_KEY = os.getenv("AGL_OPERATOR_KEY", "")
        if not self.OPERATOR_KEY:
            if self.ENVIRONMENT == "production":
                raise RuntimeError("AGL_OPERATOR_KEY must be set in production. Add it to .env")
            self.OPERATOR_KEY = "operator_dev_key"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
