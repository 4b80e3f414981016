import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from tripbook.config import Settings, TrustThresholds
from tripbook.models import Reputation
from tripbook.services.policy import build_policies
from tripbook.services.trust_gate import TrustGate


def test_guide_gate_defaults():
    gate = build_policies(Settings(db_path=":memory:"))["guide"].gate
    assert gate.can_operate(65, "trusted")
    assert gate.can_operate(90, "leader")
    assert not gate.can_operate(64, "trusted")
    assert not gate.can_operate(99, "starter")


def test_stay_gate_is_stricter_than_guide():
    policies = build_policies(Settings(db_path=":memory:"))
    assert policies["guide"].gate.can_operate(68, "trusted")
    assert not policies["stay"].gate.can_operate(68, "trusted")
    assert not policies["stay"].gate.can_operate(80, "leader")
    assert policies["stay"].gate.can_operate(70, "ambassador")


def test_gate_requirement_reports_current_standing():
    gate = TrustGate.of(70, ["trusted"])
    requirement = gate.requirement(Reputation(user_id="u1", trust_score=50, trust_level="trusted"))
    assert requirement.min_score == 70
    assert requirement.current_score == 50
    assert requirement.meets_requirement is False


def test_settings_read_thresholds_from_env(monkeypatch):
    monkeypatch.setenv("STAY_MIN_TRUST_SCORE", "40")
    monkeypatch.setenv("STAY_TRUST_LEVELS", "starter, trusted")
    settings = Settings.from_env()
    assert settings.stay_trust == TrustThresholds(40, ("starter", "trusted"))
    assert TrustGate.from_thresholds(settings.stay_trust).can_operate(40, "starter")


def test_settings_invalid_threshold_falls_back(monkeypatch):
    monkeypatch.setenv("GUIDE_MIN_TRUST_SCORE", "lots")
    monkeypatch.setenv("NOTIFICATION_TIMEOUT_SECONDS", "-3")
    settings = Settings.from_env()
    assert settings.guide_trust.min_score == 65
    assert settings.notification_timeout_seconds == 5.0


def test_auth_settings_read_from_env(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "0")
    monkeypatch.setenv("AUTH_REQUIRED", "true")
    monkeypatch.setenv("AUTH_SECRET", "s3cret")
    monkeypatch.setenv("PARTICIPANTS_SEED_PATH", " seed.json ")
    settings = Settings.from_env()
    assert settings.auth_token_ttl_hours == 24
    assert settings.auth_required is True
    assert settings.auth_secret == "s3cret"
    assert settings.participants_seed_path == "seed.json"
