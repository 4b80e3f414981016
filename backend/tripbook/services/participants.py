"""Participant reputation and login credentials.

Reputation is computed elsewhere and fed in here, either through
``set_reputation`` or a JSON seed file named by ``PARTICIPANTS_SEED_PATH``::

    [{"user_id": "u1", "trust_score": 80, "trust_level": "trusted", "password": "..."}]
"""

import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from tripbook.models import ParticipantSeed, Reputation
from tripbook.services.booking_store import BookingStore
from tripbook.services.clock import Clock, utcnow
from tripbook.services.errors import BookingValidationError

logger = logging.getLogger(__name__)

_HASH_ITERATIONS = 200_000
_SEED_ADAPTER = TypeAdapter(list[ParticipantSeed])


def hash_password(password: str, *, salt: Optional[str] = None, iterations: int = _HASH_ITERATIONS) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    try:
        scheme, iterations, salt, _ = stored.split("$", 3)
        if scheme != "pbkdf2_sha256":
            return False
        candidate = hash_password(password, salt=salt, iterations=int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(candidate, stored)


@dataclass
class ParticipantDirectory:
    store: BookingStore
    clock: Clock = utcnow

    def get_reputation(self, user_id: str) -> Reputation:
        return self.store.get_reputation(user_id)

    def set_reputation(self, user_id: str, trust_score: int, trust_level: str) -> Reputation:
        if trust_score < 0:
            raise BookingValidationError("trust_score cannot be negative")
        return self.store.set_reputation(user_id, trust_score, trust_level, now=self.clock())

    def set_password(self, user_id: str, password: str) -> None:
        if len(password) < 8:
            raise BookingValidationError("Password must be at least 8 characters")
        self.store.set_password_hash(user_id, hash_password(password), now=self.clock())

    def check_credentials(self, user_id: str, password: str) -> bool:
        return verify_password(password, self.store.get_password_hash(user_id))

    def load_seed(self, path: str) -> int:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
            entries = _SEED_ADAPTER.validate_python(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise BookingValidationError(f"Invalid participants seed {path}: {exc}") from exc
        for entry in entries:
            self.set_reputation(entry.user_id, entry.trust_score, entry.trust_level)
            if entry.password:
                self.set_password(entry.user_id, entry.password)
        logger.info("Loaded %s participants from %s", len(entries), path)
        return len(entries)
