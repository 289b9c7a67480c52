"""Static configuration for chatrelay.

All user-editable settings (routing, channels, rules, providers, logging)
live in a single JSON file for quick edits without touching Python. Secrets
come from the environment via python-dotenv.
"""

import json
import os

from dotenv import load_dotenv

from core.config import routing_config_from_dict

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

load_dotenv()

# CHATRELAY_CONFIG lets deployments point at a config outside the checkout.
CONFIG_PATH = os.getenv("CHATRELAY_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Routing switches: feature flag, acting identity, delivery timeout, tagging.
ROUTING = routing_config_from_dict(_CONFIG.get("routing", {}))

# Where channel error state, rules and thread refs are persisted.
DB_PATH = _project_path(_CONFIG.get("db_path", "chatrelay.db"))

# Forum export consumed by the snapshot content store.
_content = _CONFIG.get("content", {})
CONTENT_SNAPSHOT_PATH = _project_path(_content.get("snapshot_path", "content.json"))
CONTENT_BASE_URL = _content.get("base_url", "")
EXCERPT_CHARS = int(_content.get("excerpt_chars", 400))

# Channels and rules, validated by core.rules_engine before use.
CHANNELS_CONFIG = _CONFIG.get("channels", [])
RULES_CONFIG = _CONFIG.get("rules", [])

# Provider switches; a channel whose provider is disabled is skipped.
PROVIDERS = _CONFIG.get("providers", {})

# Secrets stay in the environment.
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
