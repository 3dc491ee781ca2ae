import os
from decimal import Decimal

import yaml
from dotenv import load_dotenv


# 信頼度・許容差・ゲート閾値は業務上合意済みの値。変更時はmatching.ymlで明示する
DEFAULTS = {
    "confidence": {
        "tax_id_match": 1.0,
        "amount_exact": 0.9,
        "amount_tolerance_floor": 0.8,
        "name_match": 0.6,
        "recent_order": 0.5,
        "order_exact": 0.9,
        "order_tolerance_floor": 0.7,
        "order_tolerance_slope": 0.1,
    },
    "tolerances": {
        "provider_amount": 1,
        "provider_amount_wide": 1,
        "order_amount": 2,
    },
    "gate": {
        "tax_id_min": 0.95,
        "min_confidence": 0.92,
        "min_margin": 0.2,
    },
    "audit": {"success_above": 0.7},
    "recent_order_days": 30,
    "open_order_statuses": ["awaiting_payment", "sent"],
    "extraction": {"window": 10, "address_lookahead": 5},
}


def _config_path() -> str:
    default = os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "matching.yml")
    return os.getenv("RECON_MATCHING_CONFIG", default)


def load_matching_config(path: str = None) -> dict:
    path = path or _config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return merge_config({})
    return merge_config(cfg)


def merge_config(cfg: dict) -> dict:
    # shallow merge defaults
    merged = dict(DEFAULTS)
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def tolerance(cfg: dict, key: str) -> Decimal:
    return Decimal(str(cfg["tolerances"][key]))


def load_runtime_settings() -> dict:
    """.env / 環境変数から実行時設定を取得"""
    load_dotenv()
    return {
        "db_path": os.getenv("RECON_STATE_DB", "recon_state.db"),
        "slack_bot_token": os.getenv("SLACK_BOT_TOKEN"),
        "slack_channel_id": os.getenv("SLACK_CHANNEL_ID"),
        "notify_ttl_seconds": int(os.getenv("RECON_NOTIFY_TTL", "300")),
    }
