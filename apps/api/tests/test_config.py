import pytest
from pydantic import ValidationError

from meshroom.core.config import Settings


def test_list_settings_accept_comma_separated_env(monkeypatch):
    monkeypatch.setenv("ICE_SERVERS", "stun:stun.example.org:3478, turn:turn.example.org:3478")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com,https://b.example.com")

    config = Settings(_env_file=None)

    assert config.ice_servers == ["stun:stun.example.org:3478", "turn:turn.example.org:3478"]
    assert config.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]


def test_defaults_use_public_stun_servers():
    config = Settings(_env_file=None)

    assert config.ice_servers == ["stun:stun1.l.google.com:19302", "stun:stun2.l.google.com:19302"]
    assert config.capture_mode == "device"


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, capture_mode="webcam")

    with pytest.raises(ValidationError):
        Settings(_env_file=None, store_request_timeout=0)
