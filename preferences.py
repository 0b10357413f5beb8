"""
Per-principal automation preferences: automation toggle, confidence
threshold, allow/deny lists and circuit-breaker settings.

Stored as JSON in user_configs, merged over database.CONFIG_DEFAULTS.
"""

import logging

import database as db
from models import Policy

logger = logging.getLogger(__name__)

MIN_THRESHOLD = 0.70
MAX_THRESHOLD = 0.95

_LIST_FIELDS = ("allow_list", "deny_list")


def clamp_threshold(value: float) -> float:
    return max(MIN_THRESHOLD, min(MAX_THRESHOLD, float(value)))


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class PreferenceStore:
    """The policy collaborator: get(principal_id) -> Policy."""

    def get(self, principal_id: str) -> Policy:
        config = db.load_user_config(principal_id)
        return Policy(
            principal_id=principal_id,
            automation_enabled=bool(config["automation_enabled"]),
            confidence_threshold=clamp_threshold(config["confidence_threshold"]),
            allow_list=tuple(config["allow_list"]),
            deny_list=tuple(config["deny_list"]),
            cooldown_minutes=int(config["cooldown_minutes"]),
            max_consecutive_low_confidence=int(config["max_consecutive_low_confidence"]),
            response_tone=config["response_tone"],
            user_timezone=config["user_timezone"],
            working_hours_start=int(config["working_hours_start"]),
            working_hours_end=int(config["working_hours_end"]),
            default_meeting_minutes=int(config["default_meeting_minutes"]),
        )

    def update(self, principal_id: str, updates: dict) -> Policy:
        current = db.load_user_config(principal_id)
        updates = {k: v for k, v in updates.items() if k in db.CONFIG_DEFAULTS and v is not None}
        if "confidence_threshold" in updates:
            updates["confidence_threshold"] = clamp_threshold(updates["confidence_threshold"])
        for key in _LIST_FIELDS:
            if key in updates:
                updates[key] = sorted({_normalize_email(e) for e in updates[key]})
        merged = {**current, **updates}
        db.save_user_config(principal_id, merged)
        logger.info(f"[{principal_id}] Preferences updated: {sorted(updates)}")
        return self.get(principal_id)

    def add_to_allow_list(self, principal_id: str, email: str) -> Policy:
        return self._edit_list(principal_id, "allow_list", email, add=True)

    def remove_from_allow_list(self, principal_id: str, email: str) -> Policy:
        return self._edit_list(principal_id, "allow_list", email, add=False)

    def add_to_deny_list(self, principal_id: str, email: str) -> Policy:
        return self._edit_list(principal_id, "deny_list", email, add=True)

    def remove_from_deny_list(self, principal_id: str, email: str) -> Policy:
        return self._edit_list(principal_id, "deny_list", email, add=False)

    def _edit_list(self, principal_id: str, key: str, email: str, add: bool) -> Policy:
        config = db.load_user_config(principal_id)
        entries = {_normalize_email(e) for e in config[key]}
        if add:
            entries.add(_normalize_email(email))
        else:
            entries.discard(_normalize_email(email))
        config[key] = sorted(entries)
        db.save_user_config(principal_id, config)
        logger.info(f"[{principal_id}] {'Added' if add else 'Removed'} {email} {'to' if add else 'from'} {key}")
        return self.get(principal_id)
