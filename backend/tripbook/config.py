import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "tripbook.sqlite3")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Ignoring out-of-range %s=%r; using %s", name, raw, default)
        return default
    return value


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default
    return value if value > 0 else default


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class TrustThresholds:
    min_score: int
    allowed_levels: Tuple[str, ...]


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    guide_trust: TrustThresholds = field(
        default_factory=lambda: TrustThresholds(65, ("trusted", "verified", "ambassador", "leader"))
    )
    stay_trust: TrustThresholds = field(
        default_factory=lambda: TrustThresholds(70, ("trusted", "verified", "ambassador"))
    )
    guide_requires_payment_option: bool = True
    notification_timeout_seconds: float = 5.0
    firebase_credentials_path: str = ""
    cors_origins: Tuple[str, ...] = ("*",)
    trusted_hosts: Tuple[str, ...] = ("*",)
    auth_required: bool = False
    auth_token_ttl_hours: int = 24
    auth_secret: str = "dev-insecure-secret-change-me"
    participants_seed_path: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("TRIPBOOK_DB_PATH", DEFAULT_DB_PATH),
            guide_trust=TrustThresholds(
                _parse_int_env("GUIDE_MIN_TRUST_SCORE", 65),
                tuple(_parse_csv_env("GUIDE_TRUST_LEVELS", "trusted,verified,ambassador,leader")),
            ),
            stay_trust=TrustThresholds(
                _parse_int_env("STAY_MIN_TRUST_SCORE", 70),
                tuple(_parse_csv_env("STAY_TRUST_LEVELS", "trusted,verified,ambassador")),
            ),
            guide_requires_payment_option=_parse_bool_env("GUIDE_REQUIRES_PAYMENT_OPTION", True),
            notification_timeout_seconds=_parse_float_env("NOTIFICATION_TIMEOUT_SECONDS", 5.0),
            firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip(),
            cors_origins=tuple(_parse_csv_env("CORS_ORIGINS", "*")),
            trusted_hosts=tuple(_parse_csv_env("TRUSTED_HOSTS", "*")),
            auth_required=_parse_bool_env("AUTH_REQUIRED", False),
            auth_token_ttl_hours=_parse_int_env("AUTH_TOKEN_TTL_HOURS", 24, minimum=1),
            auth_secret=os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me"),
            participants_seed_path=os.getenv("PARTICIPANTS_SEED_PATH", "").strip(),
        )
