"""
Unified Configuration Module for the Review Report Worker

All configuration settings are centralized here.
Import from this module: from api.config import config
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AppConfig:
    """Unified application configuration."""

    # === Server Settings ===
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    DEBUG: bool = _env_bool("DEBUG", "false")

    # === CORS Settings ===
    CORS_ORIGINS: List[str] = field(default_factory=lambda: [
        origin.strip() for origin in
        os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ])
    CORS_ALLOW_CREDENTIALS: bool = True

    # === Worker ===
    # Start polling as soon as the API process boots.
    AUTO_START_WORKER: bool = _env_bool("AUTO_START_WORKER", "false")

    # === Browser Automation ===
    HEADLESS: bool = _env_bool("HEADLESS", "true")
    BROWSER_TIMEOUT_MS: int = int(os.getenv("BROWSER_TIMEOUT_MS", "60000"))
    BROWSER_EXECUTABLE_PATH: Optional[str] = os.getenv("BROWSER_EXECUTABLE_PATH")
    EGRESS_IP_PROBE_URL: str = os.getenv("EGRESS_IP_PROBE_URL", "https://api.ipify.org?format=json")

    # === Credential Verification (OAuth token check) ===
    CREDENTIAL_VERIFICATION_ENABLED: bool = _env_bool("CREDENTIAL_VERIFICATION_ENABLED", "true")
    TOKENINFO_URL: str = os.getenv("TOKENINFO_URL", "https://www.googleapis.com/oauth2/v1/tokeninfo")
    REQUIRED_TOKEN_SCOPES: List[str] = field(default_factory=lambda: [
        scope.strip() for scope in
        os.getenv("REQUIRED_TOKEN_SCOPES", "gmail.readonly,gmail.modify,mail.google.com").split(",")
        if scope.strip()
    ])

    # === Proof Storage ===
    # "local" writes screenshots under PROOF_DIR, "http" uploads to an object store.
    PROOF_STORAGE: str = os.getenv("PROOF_STORAGE", "local")
    PROOF_DIR: str = os.getenv("PROOF_DIR", "./data/proofs")
    PROOF_PUBLIC_BASE_URL: Optional[str] = os.getenv("PROOF_PUBLIC_BASE_URL")
    STORAGE_URL: Optional[str] = os.getenv("STORAGE_URL")
    STORAGE_API_KEY: Optional[str] = os.getenv("STORAGE_API_KEY")
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "report-screenshots")

    # === Paths ===
    DATA_DIR: str = os.getenv("DATA_DIR", "./data")
    DATABASE_PATH: Optional[str] = os.getenv("DATABASE_PATH")
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    def validate(self) -> List[str]:
        """Validate configuration and return list of missing required settings."""
        missing = []

        if self.PROOF_STORAGE == "http":
            if not self.STORAGE_URL:
                missing.append("STORAGE_URL")
            if not self.STORAGE_API_KEY:
                missing.append("STORAGE_API_KEY")

        return missing


# Global config instance
config = AppConfig()
