import pytest
from pydantic import ValidationError

from keeper.config import KeeperSettings, load_settings

PRIVATE_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def test_defaults(monkeypatch):
    monkeypatch.delenv("KEEPER_PRIVATE_KEY", raising=False)
    settings = KeeperSettings(_env_file=None)
    assert settings.tick_interval_seconds == 60
    assert settings.health_interval_seconds == 300
    assert settings.fee_bps == 179
    assert settings.pro_fee_bps == 156
    assert settings.recurring_interval_seconds == 2_592_000
    assert settings.keeper_dry_run is True
    assert not settings.has_operator_key


def test_env_aliases(monkeypatch):
    monkeypatch.setenv("KEEPER_PRIVATE_KEY", PRIVATE_KEY)
    monkeypatch.setenv("LEDGER_URL", "https://example.supabase.co/")
    monkeypatch.setenv("KEEPER_NETWORK", "  ")
    monkeypatch.setenv("PORT", "8080")
    settings = load_settings(_env_file=None)
    assert settings.keeper_private_key == "0x" + PRIVATE_KEY
    assert settings.ledger_url == "https://example.supabase.co"
    assert settings.network is None
    assert settings.api_port == 8080
    assert settings.has_operator_key


def test_overrides_by_field_name():
    settings = load_settings(_env_file=None, tick_interval_seconds=5, network="base_sepolia")
    assert settings.tick_interval_seconds == 5
    assert settings.network == "base_sepolia"


@pytest.mark.parametrize(
    "overrides",
    [
        {"tick_interval_seconds": 0},
        {"fee_bps": 10_001},
        {"pro_fee_bps": 200},
        {"keeper_private_key": "0x1234"},
        {"expected_operator_address": "not-an-address"},
        {"failure_grace_seconds": -1},
    ],
)
def test_invalid_values(overrides):
    with pytest.raises(ValidationError):
        load_settings(_env_file=None, **overrides)
