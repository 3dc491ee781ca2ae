import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from config_loader import DEFAULTS, load_matching_config, load_runtime_settings, merge_config, tolerance

REPO_CONFIG = os.path.join(os.path.dirname(__file__), '..', 'config', 'matching.yml')


def test_repo_config_matches_defaults():
    assert load_matching_config(REPO_CONFIG) == merge_config({})


def test_partial_override_keeps_other_defaults(tmp_path):
    path = tmp_path / "matching.yml"
    path.write_text("gate:\n  min_margin: 0.3\nrecent_order_days: 7\n", encoding="utf-8")

    cfg = load_matching_config(str(path))
    assert cfg["gate"]["min_margin"] == 0.3
    assert cfg["gate"]["min_confidence"] == 0.92
    assert cfg["recent_order_days"] == 7
    assert cfg["tolerances"] == DEFAULTS["tolerances"]


def test_env_path_and_missing_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.yml"
    path.write_text("audit:\n  success_above: 0.8\n", encoding="utf-8")
    monkeypatch.setenv("RECON_MATCHING_CONFIG", str(path))
    assert load_matching_config()["audit"]["success_above"] == 0.8

    monkeypatch.setenv("RECON_MATCHING_CONFIG", str(tmp_path / "missing.yml"))
    assert load_matching_config() == merge_config({})


def test_tolerance_is_decimal():
    cfg = merge_config({})
    assert tolerance(cfg, "order_amount") == Decimal("2")
    assert tolerance(cfg, "provider_amount") == Decimal("1")


def test_runtime_settings_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("RECON_STATE_DB", str(tmp_path / "state.db"))
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")
    monkeypatch.setenv("SLACK_CHANNEL_ID", "C123")
    monkeypatch.setenv("RECON_NOTIFY_TTL", "60")

    settings = load_runtime_settings()
    assert settings["db_path"] == str(tmp_path / "state.db")
    assert settings["slack_bot_token"] == "xoxb-test"
    assert settings["slack_channel_id"] == "C123"
    assert settings["notify_ttl_seconds"] == 60
