"""Scanner client configuration, read from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class ScannerSettings:
    # Discovery
    discovery_timeout: float = 5.0
    discovery_poll_interval: float = 0.1

    # HTTP
    request_timeout: float = 10.0
    document_timeout: float = 30.0
    chunk_size: int = 1024
    verify_tls: bool = False

    # NextDocument answers 503 while the page is still being scanned
    not_ready_retries: int = 10
    not_ready_delay: float = 1.0

    # Output
    output_dir: Path = field(default_factory=lambda: Path("scans"))

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ScannerSettings":
        """Load settings from environment variables."""
        settings = cls()

        settings.discovery_timeout = float(os.getenv("ESCL_DISCOVERY_TIMEOUT", settings.discovery_timeout))
        settings.request_timeout = float(os.getenv("ESCL_REQUEST_TIMEOUT", settings.request_timeout))
        settings.document_timeout = float(os.getenv("ESCL_DOCUMENT_TIMEOUT", settings.document_timeout))
        settings.chunk_size = int(os.getenv("ESCL_CHUNK_SIZE", settings.chunk_size))
        settings.not_ready_retries = int(os.getenv("ESCL_NOT_READY_RETRIES", settings.not_ready_retries))
        settings.not_ready_delay = float(os.getenv("ESCL_NOT_READY_DELAY", settings.not_ready_delay))
        settings.verify_tls = os.getenv("ESCL_VERIFY_TLS", "false").strip().lower() in TRUE_VALUES

        if output_dir := os.getenv("SCAN_OUTPUT_DIR"):
            settings.output_dir = Path(output_dir)

        settings.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        for problem in settings.validate():
            logger.warning(f"Invalid scanner setting: {problem}")

        return settings

    def validate(self) -> list[str]:
        """Validate settings, returning a list of problems."""
        errors = []

        if self.discovery_timeout <= 0:
            errors.append(f"discovery_timeout must be > 0, got {self.discovery_timeout}")
        if self.discovery_poll_interval <= 0:
            errors.append(f"discovery_poll_interval must be > 0, got {self.discovery_poll_interval}")
        if self.request_timeout <= 0 or self.document_timeout <= 0:
            errors.append("HTTP timeouts must be > 0")
        if self.chunk_size < 1:
            errors.append(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.not_ready_retries < 0:
            errors.append(f"not_ready_retries must be >= 0, got {self.not_ready_retries}")
        if not isinstance(logging.getLevelName(self.log_level), int):
            errors.append(f"Unknown log level: {self.log_level}")

        return errors
