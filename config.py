import json
from pathlib import Path

CONFIG_FILE = Path("config.json")

DEFAULTS = {
    "db_file": "decision_engine.db",
    "anthropic_model": "claude-sonnet-4-6",
    "conversation_ttl_days": 14,
    "default_cooldown_minutes": 60,
    "message_timeout_seconds": 60,
    "cleanup_interval_minutes": 60,
    "audit_retention_days": 365,
    "scoring_params_file": "scoring_params.json",
}

def load_config() -> dict:
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE) as f:
            data = json.load(f)
        return {**DEFAULTS, **data}
    return DEFAULTS.copy()

def save_config(updates: dict) -> dict:
    config = load_config()
    config.update(updates)
    with open(CONFIG_FILE, "w") as f:
        json.dump(config, f, indent=2)
    return config
