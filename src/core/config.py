"""
Cancellation Engine Configuration

Centralized configuration for the API, the state machine and the sweeper.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class EngineConfig:
    """Configuration for the order-cancellation engine."""

    # Persistence
    STATE_DB: Path = Path(os.getenv("CANCELLATIONS_STATE_DB", "./data/cancellations.db"))

    # Workflow policy
    MAX_CANCEL_ATTEMPTS: int = int(os.getenv("CANCELLATIONS_MAX_CANCEL_ATTEMPTS", "3"))
    RETRY_BASE_SECONDS: int = int(os.getenv("CANCELLATIONS_RETRY_BASE_SECONDS", "30"))
    RETRY_MAX_SECONDS: int = int(os.getenv("CANCELLATIONS_RETRY_MAX_SECONDS", "900"))
    STALL_SECONDS: int = int(os.getenv("CANCELLATIONS_STALL_SECONDS", "600"))
    LOCK_SECONDS: int = int(os.getenv("CANCELLATIONS_LOCK_SECONDS", "120"))
    MAX_REQUESTS_PER_CUSTOMER_PER_DAY: int = int(os.getenv("CANCELLATIONS_MAX_REQUESTS_PER_CUSTOMER_PER_DAY", "5"))

    # Collaborator services
    EMAIL_ROUTING_URL: str = os.getenv("EMAIL_ROUTING_URL", "")
    EMAIL_ROUTING_API_KEY: str = os.getenv("EMAIL_ROUTING_API_KEY", "")
    COMMERCE_API_URL: str = os.getenv("COMMERCE_API_URL", "")
    COMMERCE_API_KEY: str = os.getenv("COMMERCE_API_KEY", "")
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("CANCELLATIONS_HTTP_TIMEOUT_SECONDS", "30"))

    # API
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "9300"))
    CORS_ORIGINS: List[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    # Sweeper
    SWEEPER_RUNNER_NAME: str = os.getenv("SWEEPER_RUNNER_NAME", "cancellation_sweeper")
    SWEEPER_LEASE_SECONDS: int = int(os.getenv("SWEEPER_LEASE_SECONDS", "60"))
    SWEEP_INTERVAL_SECONDS: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
    SWEEP_BATCH_SIZE: int = int(os.getenv("SWEEP_BATCH_SIZE", "100"))

    # Observability
    SERVICE_NAME: str = os.getenv("OTEL_SERVICE_NAME", "order-cancellations")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_STRUCTURED: bool = _env_bool("LOG_STRUCTURED", "true")
    OTLP_ENDPOINT: Optional[str] = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None
    OTEL_ENABLED: bool = _env_bool("OTEL_ENABLED")
    OTEL_CONSOLE_EXPORT: bool = _env_bool("OTEL_CONSOLE_EXPORT")
    APP_VERSION: str = os.getenv("APP_VERSION", "1.0.0")

    def validate(self) -> List[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.EMAIL_ROUTING_URL:
            issues.append("ERROR: No email routing service configured (EMAIL_ROUTING_URL)")

        if not self.COMMERCE_API_URL:
            issues.append("ERROR: No commerce platform configured (COMMERCE_API_URL)")

        if self.MAX_CANCEL_ATTEMPTS < 1:
            issues.append("ERROR: CANCELLATIONS_MAX_CANCEL_ATTEMPTS must be at least 1")

        if self.LOCK_SECONDS < 10:
            issues.append("WARNING: CANCELLATIONS_LOCK_SECONDS below 10s is raised to 10s")

        return issues


# Global config instance
config = EngineConfig()
