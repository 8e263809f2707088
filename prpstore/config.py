"""Configuration loading for prpstore.

Config sources (in priority order):
1. Explicit arguments passed to functions
2. Environment variables (PRPSTORE_DB_PATH, etc.)
3. .env file in current directory
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv


def _load_env_file() -> None:
    """Load .env from the working directory (or its parents), not the install location."""
    load_dotenv(find_dotenv(usecwd=True))


_load_env_file()

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("prpstore.db")
DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_POOL_SIZE = 5
DEFAULT_POOL_TIMEOUT = 5.0  # seconds
DEFAULT_OPERATION_TIMEOUT = 120.0  # seconds
DEFAULT_MAX_DOCUMENT_CHARS = 100_000
DEFAULT_MAX_RETRIES = 2


def _parse_handles(raw: str) -> frozenset[str]:
    """Parse a comma-separated list of account handles."""
    return frozenset(h.strip() for h in raw.split(",") if h.strip())


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default
    if value < minimum:
        logger.warning(f"Ignoring {name}={raw!r} below {minimum}, using {default}")
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={raw!r}, using {default}")
        return default
    return value


@dataclass
class Config:
    anthropic_api_key: str = ""
    model: str = DEFAULT_MODEL
    db_path: Path = DEFAULT_DB_PATH
    privileged_users: frozenset[str] = field(default_factory=frozenset)
    user_handle: str = ""
    user_display_name: str = ""
    pool_size: int = DEFAULT_POOL_SIZE
    pool_timeout: float = DEFAULT_POOL_TIMEOUT
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT
    max_document_chars: int = DEFAULT_MAX_DOCUMENT_CHARS
    max_retries: int = DEFAULT_MAX_RETRIES
    log_level: str = "INFO"

    @classmethod
    def load(cls) -> Config:
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            model=os.getenv("PRPSTORE_MODEL", "") or DEFAULT_MODEL,
            db_path=Path(os.getenv("PRPSTORE_DB_PATH", str(DEFAULT_DB_PATH))),
            privileged_users=_parse_handles(os.getenv("PRPSTORE_PRIVILEGED_USERS", "")),
            user_handle=os.getenv("PRPSTORE_USER", "").strip(),
            user_display_name=os.getenv("PRPSTORE_USER_NAME", "").strip(),
            pool_size=_env_int("PRPSTORE_POOL_SIZE", DEFAULT_POOL_SIZE),
            pool_timeout=_env_float("PRPSTORE_POOL_TIMEOUT", DEFAULT_POOL_TIMEOUT),
            operation_timeout=_env_float(
                "PRPSTORE_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT
            ),
            max_document_chars=_env_int(
                "PRPSTORE_MAX_DOCUMENT_CHARS", DEFAULT_MAX_DOCUMENT_CHARS
            ),
            max_retries=_env_int("PRPSTORE_MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=0),
            log_level=os.getenv("PRPSTORE_LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> list[str]:
        """Return a list of missing config issues."""
        issues = []
        if not self.anthropic_api_key:
            issues.append("Anthropic API key not set (ANTHROPIC_API_KEY)")
        if not self.user_handle:
            issues.append("Caller handle not set (PRPSTORE_USER)")
        if not self.privileged_users:
            issues.append(
                "No privileged users configured (PRPSTORE_PRIVILEGED_USERS); "
                "all write tools will be denied"
            )
        return issues
